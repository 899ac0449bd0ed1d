"""Pydantic models for subscriptions."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import (
    AnyHttpUrl,
    AwareDatetime,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)
from pydantic import ValidationError as PydanticValidationError

from epcishub.core.clock import utc_now
from epcishub.core.exceptions import ValidationException
from epcishub.subscription.schedule import ScheduleError, validate_schedule

_URL_ADAPTER = TypeAdapter(AnyHttpUrl)


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ERROR = "error"


class SubscriptionRequest(BaseModel):
    """Body of a subscribe request."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    destination: str | None = None
    schedule: str | None = None
    signature_token: str | None = Field(None, alias="signatureToken", min_length=1)
    report_if_empty: bool = Field(False, alias="reportIfEmpty")
    initial_record_time: AwareDatetime | None = Field(None, alias="initialRecordTime")
    stream: bool = False

    @field_validator("schedule")
    @classmethod
    def check_schedule(cls, v: str | None) -> str | None:
        if v is None:
            return v
        try:
            return validate_schedule(v)
        except ScheduleError as e:
            raise ValueError(str(e)) from e

    @field_validator("destination")
    @classmethod
    def check_destination(cls, v: str | None) -> str | None:
        if v is None:
            return v
        try:
            _URL_ADAPTER.validate_python(v)
        except PydanticValidationError as e:
            raise ValueError(f"not an absolute http(s) URL: {v}") from e
        return v

    @model_validator(mode="after")
    def check_delivery_mode(self) -> SubscriptionRequest:
        """Scheduled subscriptions need somewhere to deliver and a schedule."""
        if self.stream:
            return self
        if not self.destination:
            raise ValueError("destination is required unless stream is true")
        if not self.schedule:
            raise ValueError("schedule is required unless stream is true")
        return self

    @classmethod
    def parse(cls, raw: Any) -> SubscriptionRequest:
        if not isinstance(raw, dict):
            raise ValidationException("subscription request must be a JSON object")
        try:
            return cls.model_validate(raw)
        except PydanticValidationError as e:
            raise ValidationException.from_pydantic(
                e, title="Invalid subscription parameters"
            ) from e


class Subscription(BaseModel):
    """
    A standing request for query results.

    Mutated only by the scheduler (status, last execution), an explicit status
    change, or deletion.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    query_name: str = Field(..., alias="queryName")
    destination: str | None = None
    schedule: str | None = None
    signature_token: str | None = Field(None, alias="signatureToken")
    report_if_empty: bool = Field(False, alias="reportIfEmpty")
    initial_record_time: datetime | None = Field(None, alias="initialRecordTime")
    stream: bool = False
    created_at: datetime = Field(default_factory=utc_now, alias="createdAt")
    last_executed_at: datetime | None = Field(None, alias="lastExecutedAt")
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    error_message: str | None = Field(None, alias="errorMessage")

    @classmethod
    def from_request(cls, query_name: str, request: SubscriptionRequest) -> Subscription:
        return cls(
            query_name=query_name,
            destination=request.destination,
            schedule=None if request.stream else request.schedule,
            signature_token=request.signature_token,
            report_if_empty=request.report_if_empty,
            initial_record_time=request.initial_record_time,
            stream=request.stream,
        )

    @property
    def window_start(self) -> datetime:
        """Lower recordTime bound for the next scheduled execution."""
        return self.last_executed_at or self.initial_record_time or self.created_at

    def to_record(self) -> dict[str, Any]:
        """Full persisted form, including the signature token."""
        return self.model_dump(by_alias=True, mode="json")

    def to_response(self) -> dict[str, Any]:
        """Client-facing form; the signature token is write-only."""
        data = self.model_dump(by_alias=True, mode="json", exclude={"signature_token"})
        data["signed"] = self.signature_token is not None
        return data
