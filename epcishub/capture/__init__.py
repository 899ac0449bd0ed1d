"""Capture interface: event models, validation and capture jobs."""

from epcishub.capture.jobs import CaptureJobRegistry
from epcishub.capture.models import CaptureJob, ErrorBehaviour, JobState
from epcishub.capture.pipeline import CapturePipeline
from epcishub.capture.validator import validate_event

__all__ = [
    "CaptureJob",
    "CaptureJobRegistry",
    "CapturePipeline",
    "ErrorBehaviour",
    "JobState",
    "validate_event",
]
