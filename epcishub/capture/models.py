"""Pydantic models for EPCIS events and capture jobs."""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal
from uuid import uuid4

from pydantic import (
    AwareDatetime,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from epcishub.core.clock import to_iso, utc_now

TIMEZONE_OFFSET_PATTERN = r"^[+-](0\d|1[0-4]):[0-5]\d$"

EPCIS_CONTEXT = "https://ref.gs1.org/standards/epcis/epcis-context.jsonld"
EPCIS_CONTEXT_URLS: tuple[str, ...] = (
    EPCIS_CONTEXT,
    "https://ref.gs1.org/standards/epcis/2.0.0/epcis-context.jsonld",
)


class Action(str, Enum):
    """EPCIS event actions."""

    ADD = "ADD"
    OBSERVE = "OBSERVE"
    DELETE = "DELETE"


class EventType(str, Enum):
    """The closed set of EPCIS event type tags."""

    OBJECT = "ObjectEvent"
    AGGREGATION = "AggregationEvent"
    TRANSACTION = "TransactionEvent"
    TRANSFORMATION = "TransformationEvent"
    ASSOCIATION = "AssociationEvent"


EVENT_TYPES: tuple[str, ...] = tuple(t.value for t in EventType)


class EPCISModel(BaseModel):
    """Base for wire models: camelCase aliases, extension fields preserved."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class LocationRef(EPCISModel):
    """Read point or business location reference."""

    id: str = Field(..., min_length=1)


class QuantityElement(EPCISModel):
    epc_class: str = Field(..., alias="epcClass", min_length=1)
    quantity: float | None = None
    uom: str | None = None


class BizTransaction(EPCISModel):
    type: str | None = None
    biz_transaction: str = Field(..., alias="bizTransaction", min_length=1)


class SourceElement(EPCISModel):
    type: str
    source: str


class DestinationElement(EPCISModel):
    type: str
    destination: str


class SensorReport(EPCISModel):
    """Single sensor reading. Only the identifying fields are typed."""

    type: str | None = None
    device_id: str | None = Field(None, alias="deviceID")
    data_processing_method: str | None = Field(None, alias="dataProcessingMethod")
    value: float | None = None
    uom: str | None = None


class SensorElement(EPCISModel):
    sensor_metadata: dict[str, Any] | None = Field(None, alias="sensorMetadata")
    sensor_report: list[SensorReport] = Field(..., alias="sensorReport", min_length=1)


class ErrorDeclaration(EPCISModel):
    """Declares an earlier event erroneous, optionally naming corrective events."""

    declaration_time: AwareDatetime = Field(..., alias="declarationTime")
    reason: str | None = None
    corrective_event_ids: list[str] = Field(default_factory=list, alias="correctiveEventIDs")


class BaseEvent(EPCISModel):
    """
    Fields shared by every EPCIS event type.

    ``record_time`` and ``capture_id`` are assigned by the server on capture;
    everything else is immutable once stored.
    """

    event_id: str = Field(..., alias="eventID", min_length=1)
    event_time: AwareDatetime = Field(..., alias="eventTime")
    event_time_zone_offset: str = Field(
        ..., alias="eventTimeZoneOffset", pattern=TIMEZONE_OFFSET_PATTERN
    )
    record_time: AwareDatetime | None = Field(None, alias="recordTime")
    action: Action
    tenant_id: str = Field(..., alias="tenantId", min_length=1)

    biz_step: str | None = Field(None, alias="bizStep")
    disposition: str | None = None
    read_point: LocationRef | None = Field(None, alias="readPoint")
    biz_location: LocationRef | None = Field(None, alias="bizLocation")
    biz_transaction_list: list[BizTransaction] | None = Field(None, alias="bizTransactionList")
    source_list: list[SourceElement] | None = Field(None, alias="sourceList")
    destination_list: list[DestinationElement] | None = Field(None, alias="destinationList")
    sensor_element_list: list[SensorElement] | None = Field(None, alias="sensorElementList")
    error_declaration: ErrorDeclaration | None = Field(None, alias="errorDeclaration")
    capture_id: str | None = Field(None, alias="captureID")

    @field_validator("event_time", "record_time", mode="before")
    @classmethod
    def require_iso_string(cls, v: Any) -> Any:
        """Numbers would be read as epoch seconds; EPCIS only allows ISO 8601 text."""
        if v is not None and not isinstance(v, (str, datetime)):
            raise ValueError("must be an ISO 8601 date-time string")
        return v

    def to_document(self) -> dict[str, Any]:
        """JSON-LD form of the event, as stored and returned by queries."""
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)

    def stamped(self, capture_id: str, record_time: datetime | None = None) -> dict[str, Any]:
        """Document form with the server-assigned capture fields applied."""
        document = self.to_document()
        document["captureID"] = capture_id
        document["recordTime"] = to_iso(record_time or utc_now())
        return document


class ObjectEvent(BaseEvent):
    type: Literal["ObjectEvent"]
    epc_list: list[str] | None = Field(None, alias="epcList")
    quantity_list: list[QuantityElement] | None = Field(None, alias="quantityList")
    ilmd: dict[str, Any] | None = None


class AggregationEvent(BaseEvent):
    type: Literal["AggregationEvent"]
    parent_id: str | None = Field(None, alias="parentID")
    child_epcs: list[str] | None = Field(None, alias="childEPCs")
    child_quantity_list: list[QuantityElement] | None = Field(None, alias="childQuantityList")

    @model_validator(mode="after")
    def require_parent(self) -> "AggregationEvent":
        if self.action is not Action.OBSERVE and not self.parent_id:
            raise ValueError("parentID is required unless action is OBSERVE")
        return self


class TransactionEvent(BaseEvent):
    type: Literal["TransactionEvent"]
    biz_transaction_list: list[BizTransaction] = Field(
        ..., alias="bizTransactionList", min_length=1
    )
    parent_id: str | None = Field(None, alias="parentID")
    epc_list: list[str] | None = Field(None, alias="epcList")
    quantity_list: list[QuantityElement] | None = Field(None, alias="quantityList")


class TransformationEvent(BaseEvent):
    """Transformations have no action in EPCIS 2.0."""

    type: Literal["TransformationEvent"]
    action: Action | None = None
    input_epc_list: list[str] | None = Field(None, alias="inputEPCList")
    input_quantity_list: list[QuantityElement] | None = Field(None, alias="inputQuantityList")
    output_epc_list: list[str] | None = Field(None, alias="outputEPCList")
    output_quantity_list: list[QuantityElement] | None = Field(None, alias="outputQuantityList")
    transformation_id: str | None = Field(None, alias="transformationID")
    ilmd: dict[str, Any] | None = None


class AssociationEvent(BaseEvent):
    type: Literal["AssociationEvent"]
    parent_id: str = Field(..., alias="parentID", min_length=1)
    child_epcs: list[str] | None = Field(None, alias="childEPCs")
    child_quantity_list: list[QuantityElement] | None = Field(None, alias="childQuantityList")


EPCISEvent = Annotated[
    ObjectEvent | AggregationEvent | TransactionEvent | TransformationEvent | AssociationEvent,
    Field(discriminator="type"),
]


class ErrorBehaviour(str, Enum):
    """What a capture job does when one event fails."""

    ROLLBACK = "rollback"
    PROCEED = "proceed"


class JobState(str, Enum):
    """Capture job lifecycle states."""

    CREATED = "created"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    PARTIALLY_FAILED = "partially_failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.PARTIALLY_FAILED, JobState.ABORTED)


class CaptureJob(BaseModel):
    """
    One accepted capture document tracked as an asynchronous unit of work.

    Mutated only by the task processing it.
    """

    model_config = ConfigDict(populate_by_name=True)

    capture_id: str = Field(default_factory=lambda: str(uuid4()), alias="captureID")
    created_at: datetime = Field(default_factory=utc_now, alias="createdAt")
    finished_at: datetime | None = Field(None, alias="finishedAt")
    running: bool = True
    success: bool = True
    capture_error_behaviour: ErrorBehaviour = Field(
        ErrorBehaviour.ROLLBACK, alias="captureErrorBehaviour"
    )
    state: JobState = JobState.CREATED
    event_count: int = Field(0, alias="eventCount")
    captured_count: int = Field(0, alias="capturedCount")
    errors: list[dict[str, Any]] = Field(default_factory=list)

    def record_error(self, problem: dict[str, Any]) -> None:
        self.success = False
        self.errors.append(problem)

    def finish(self, state: JobState, finished_at: datetime | None = None) -> None:
        self.state = state
        self.running = False
        self.finished_at = finished_at or utc_now()

    def to_response(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")
