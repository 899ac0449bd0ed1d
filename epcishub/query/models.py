"""Pydantic models for query parameters and named query definitions."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from epcishub.capture.models import Action, EventType
from epcishub.core.clock import utc_now
from epcishub.core.exceptions import ValidationException

QUERY_NAME_PATTERN = r"^[A-Za-z0-9_.\-]{1,128}$"


class QueryParams(BaseModel):
    """
    EPCIS query parameters.

    Field aliases are the EPCIS parameter names (``GE_eventTime``,
    ``EQ_action``, ``MATCH_epc`` ...). Unknown parameters are rejected rather
    than silently ignored.
    """

    model_config = ConfigDict(populate_by_name=True, extra="forbid", frozen=True)

    event_types: list[EventType] | None = Field(None, alias="eventTypes")

    ge_event_time: AwareDatetime | None = Field(None, alias="GE_eventTime")
    lt_event_time: AwareDatetime | None = Field(None, alias="LT_eventTime")
    ge_record_time: AwareDatetime | None = Field(None, alias="GE_recordTime")
    lt_record_time: AwareDatetime | None = Field(None, alias="LT_recordTime")
    ge_error_declaration_time: AwareDatetime | None = Field(
        None, alias="GE_errorDeclarationTime"
    )
    lt_error_declaration_time: AwareDatetime | None = Field(
        None, alias="LT_errorDeclarationTime"
    )

    eq_event_id: list[str] | None = Field(None, alias="EQ_eventID")
    eq_action: list[Action] | None = Field(None, alias="EQ_action")
    eq_biz_step: list[str] | None = Field(None, alias="EQ_bizStep")
    eq_disposition: list[str] | None = Field(None, alias="EQ_disposition")
    eq_read_point: list[str] | None = Field(None, alias="EQ_readPoint")
    eq_biz_location: list[str] | None = Field(None, alias="EQ_bizLocation")
    eq_tenant_id: list[str] | None = Field(None, alias="EQ_tenantId")
    eq_transformation_id: list[str] | None = Field(None, alias="EQ_transformationID")
    eq_error_reason: list[str] | None = Field(None, alias="EQ_errorReason")
    eq_device_id: list[str] | None = Field(None, alias="EQ_deviceID")
    eq_data_processing_method: list[str] | None = Field(None, alias="EQ_dataProcessingMethod")

    match_epc: list[str] | None = Field(None, alias="MATCH_epc")
    match_parent_id: list[str] | None = Field(None, alias="MATCH_parentID")
    match_input_epc: list[str] | None = Field(None, alias="MATCH_inputEPC")
    match_output_epc: list[str] | None = Field(None, alias="MATCH_outputEPC")
    match_any_epc: list[str] | None = Field(None, alias="MATCH_anyEPC")
    match_epc_class: list[str] | None = Field(None, alias="MATCH_epcClass")
    match_any_epc_class: list[str] | None = Field(None, alias="MATCH_anyEPCClass")

    exists_error_declaration: bool | None = Field(None, alias="EXISTS_errorDeclaration")

    order_by: Literal["eventTime", "recordTime"] | None = Field(None, alias="orderBy")
    order_direction: Literal["ASC", "DESC"] | None = Field(None, alias="orderDirection")
    event_count_limit: int | None = Field(None, alias="eventCountLimit", gt=0)
    max_event_count: int | None = Field(None, alias="maxEventCount", gt=0)
    per_page: int | None = Field(None, alias="perPage", gt=0)
    next_page_token: str | None = Field(None, alias="nextPageToken")

    @classmethod
    def parse(cls, raw: Any) -> QueryParams:
        """
        Validate raw parameters, converting pydantic errors to ValidationException.

        Raises:
            ValidationException: On unknown or malformed parameters
        """
        if isinstance(raw, QueryParams):
            return raw
        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise ValidationException("query parameters must be a JSON object")
        try:
            return cls.model_validate(raw)
        except PydanticValidationError as e:
            raise ValidationException.from_pydantic(e, title="Invalid query parameters") from e

    def to_params(self) -> dict[str, Any]:
        """Wire form: EPCIS parameter names, unset parameters omitted."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")

    def merged(self, overrides: dict[str, Any] | None) -> QueryParams:
        """Copy with ``overrides`` (wire names) taking precedence."""
        if not overrides:
            return self
        return QueryParams.parse({**self.to_params(), **overrides})


class QueryDefinition(BaseModel):
    """A named, reusable query."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    name: str = Field(..., pattern=QUERY_NAME_PATTERN)
    query: QueryParams = Field(default_factory=QueryParams)
    created_at: datetime = Field(default_factory=utc_now, alias="createdAt")

    @classmethod
    def parse(cls, raw: Any) -> QueryDefinition:
        if not isinstance(raw, dict):
            raise ValidationException("query definition must be a JSON object")
        try:
            return cls.model_validate(raw)
        except PydanticValidationError as e:
            raise ValidationException.from_pydantic(e, title="Invalid query definition") from e

    def to_response(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "query": self.query.to_params(),
            "createdAt": self.created_at.isoformat(),
        }
