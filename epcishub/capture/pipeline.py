"""
Capture Pipeline - validates and stores an event batch as one capture job.

Job lifecycle: created -> running -> succeeded | partially_failed | aborted.

Error behaviours:
- rollback: the first failing event deletes everything already stored under
  the job and aborts it
- proceed: failing events are skipped and recorded; the rest are stored
"""

import asyncio
import logging
from typing import Any

from epcishub.capture.jobs import CaptureJobRegistry
from epcishub.capture.models import (
    EPCIS_CONTEXT_URLS,
    CaptureJob,
    ErrorBehaviour,
    JobState,
)
from epcishub.capture.validator import event_reference, validate_event
from epcishub.core.clock import Clock, utc_now
from epcishub.core.events import CaptureJobFinishedEvent, EventBus
from epcishub.core.exceptions import (
    CaptureLimitExceededException,
    EPCISException,
    ImplementationException,
    StoreError,
    ValidationException,
)
from epcishub.core.store import EventStore

logger = logging.getLogger(__name__)

DEFAULT_CAPTURE_LIMIT = 1000


def parse_error_behaviour(value: str | ErrorBehaviour | None) -> ErrorBehaviour:
    """
    Read the ``GS1-Capture-Error-Behaviour`` value; absent means rollback.

    Raises:
        ValidationException: If the value is neither rollback nor proceed
    """
    if value is None or value == "":
        return ErrorBehaviour.ROLLBACK
    try:
        return ErrorBehaviour(value)
    except ValueError as e:
        raise ValidationException(
            'GS1-Capture-Error-Behaviour must be either "rollback" or "proceed"',
            title="Invalid GS1-Capture-Error-Behaviour header",
        ) from e


def _event_list(document: Any) -> list[Any] | None:
    if not isinstance(document, dict):
        return None
    body = document.get("epcisBody")
    if not isinstance(body, dict):
        return None
    events = body.get("eventList")
    return events if isinstance(events, list) else None


def _has_epcis_context(document: dict[str, Any]) -> bool:
    context = document.get("@context")
    if isinstance(context, str):
        return context in EPCIS_CONTEXT_URLS
    if isinstance(context, list):
        return any(isinstance(c, str) and c in EPCIS_CONTEXT_URLS for c in context)
    return False


def check_envelope(document: Any) -> list[Any]:
    """
    Check the capture document envelope and return its event list.

    Raises:
        ValidationException: If epcisBody.eventList or @context is missing or invalid
    """
    events = _event_list(document)
    if events is None:
        raise ValidationException(
            "Invalid EPCIS document: epcisBody.eventList must be a list",
            title="Error validating EPCIS document",
        )
    if not _has_epcis_context(document):
        raise ValidationException(
            f"Invalid EPCIS document: missing or invalid @context. Must include {EPCIS_CONTEXT_URLS[0]}",
            title="Error validating EPCIS document",
        )
    return events


class CapturePipeline:
    """
    Orchestrates validation and insertion of capture documents.

    ``submit`` returns as soon as the job is registered; processing runs in a
    detached task held by the pipeline until it completes. Jobs are independent
    of each other; inside one job events are stored strictly in list order.

    Example:
        >>> pipeline = CapturePipeline(store, CaptureJobRegistry())
        >>> job = await pipeline.submit(document, "proceed")
        >>> await pipeline.wait(job.capture_id)
        >>> job.state
        <JobState.SUCCEEDED: 'succeeded'>
    """

    def __init__(
        self,
        store: EventStore,
        registry: CaptureJobRegistry,
        bus: EventBus | None = None,
        capture_limit: int = DEFAULT_CAPTURE_LIMIT,
        clock: Clock = utc_now,
    ):
        """
        Initialize the pipeline.

        Args:
            store: Event store receiving inserts and rollback deletes
            registry: Job registry shared with the HTTP layer
            bus: Optional event bus for job lifecycle events
            capture_limit: Maximum events per capture document
            clock: Source of createdAt/recordTime/finishedAt instants
        """
        self.store = store
        self.registry = registry
        self.bus = bus
        self.capture_limit = capture_limit
        self._clock = clock
        self._tasks: dict[str, asyncio.Task[None]] = {}

    async def submit(
        self, document: Any, error_behaviour: str | ErrorBehaviour | None = None
    ) -> CaptureJob:
        """
        Accept a capture document and start processing it in the background.

        Envelope problems do not raise here: the job is created and aborted so
        the client finds the reason on the job resource.

        Raises:
            ValidationException: Invalid error behaviour value
            CaptureLimitExceededException: More events than the capture limit
        """
        behaviour = parse_error_behaviour(error_behaviour)

        events = _event_list(document)
        if events is not None and len(events) > self.capture_limit:
            raise CaptureLimitExceededException(
                f"Capture document contains {len(events)} events; the limit is {self.capture_limit}"
            )

        job = CaptureJob(
            created_at=self._clock(),
            capture_error_behaviour=behaviour,
            event_count=len(events) if events is not None else 0,
        )
        await self.registry.add(job)

        task = asyncio.create_task(self.process(job, document), name=f"capture-{job.capture_id}")
        self._tasks[job.capture_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job.capture_id, None))

        logger.info(
            f"Accepted capture job {job.capture_id} "
            f"({job.event_count} events, {behaviour.value})"
        )
        return job

    async def process(self, job: CaptureJob, document: Any) -> None:
        """Run one job to a terminal state. Never raises."""
        job.state = JobState.RUNNING
        instance = f"/capture/{job.capture_id}"
        try:
            try:
                events = check_envelope(document)
            except ValidationException as e:
                job.record_error(e.to_problem(instance))
                job.finish(JobState.ABORTED, self._clock())
                return

            for index, raw in enumerate(events):
                failure = await self._capture_one(job, raw, index)
                if failure is None:
                    continue

                problem = failure.to_problem(instance)
                problem["eventID"] = event_reference(raw, index)
                problem["index"] = index
                job.record_error(problem)

                if job.capture_error_behaviour is ErrorBehaviour.ROLLBACK:
                    await self._rollback(job, instance)
                    job.finish(JobState.ABORTED, self._clock())
                    return

            state = JobState.SUCCEEDED if job.success else JobState.PARTIALLY_FAILED
            job.finish(state, self._clock())

        except Exception as e:
            logger.exception(f"Capture job {job.capture_id} failed unexpectedly")
            job.record_error(ImplementationException(str(e)).to_problem(instance))
            if job.capture_error_behaviour is ErrorBehaviour.ROLLBACK and job.captured_count:
                await self._rollback(job, instance)
            job.finish(JobState.ABORTED, self._clock())

        finally:
            await self._publish(job)

    async def _capture_one(self, job: CaptureJob, raw: Any, index: int) -> EPCISException | None:
        """Validate and store one event; return the failure instead of raising."""
        try:
            event = validate_event(raw)
        except ValidationException as e:
            logger.debug(f"Job {job.capture_id}: event {index} rejected: {e.detail}")
            return e

        document = event.stamped(job.capture_id, self._clock())
        try:
            await self.store.insert_event(document)
        except StoreError as e:
            logger.warning(f"Job {job.capture_id}: insert of event {index} failed: {e}")
            return ImplementationException(str(e), title="Event could not be stored")

        job.captured_count += 1
        return None

    async def _rollback(self, job: CaptureJob, instance: str) -> None:
        try:
            await self.store.delete_by_capture_id(job.capture_id)
            logger.info(f"Rolled back {job.captured_count} events of capture job {job.capture_id}")
            job.captured_count = 0
        except StoreError as e:
            logger.exception(f"Rollback of capture job {job.capture_id} failed")
            job.record_error(
                ImplementationException(
                    f"Rollback failed: {e}", title="Capture rollback failed"
                ).to_problem(instance)
            )

    async def _publish(self, job: CaptureJob) -> None:
        if self.bus is None:
            return
        await self.bus.emit(
            CaptureJobFinishedEvent(
                correlation_id=job.capture_id,
                capture_id=job.capture_id,
                state=job.state.value,
                success=job.success,
                event_count=job.event_count,
                captured_count=job.captured_count,
                error_count=len(job.errors),
            )
        )

    def get_job(self, capture_id: str) -> CaptureJob | None:
        return self.registry.get(capture_id)

    async def wait(self, capture_id: str) -> CaptureJob | None:
        """Wait until a job has finished processing and return it."""
        task = self._tasks.get(capture_id)
        if task is not None:
            await asyncio.shield(task)
        return self.registry.get(capture_id)

    async def drain(self) -> None:
        """Wait for every in-flight job."""
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)
