from typing import Optional


class TranscodeWorkerError(Exception):
    pass


class ConfigurationError(TranscodeWorkerError):
    """Startup cannot continue: missing settings or an unreachable broker."""


class DecodeError(TranscodeWorkerError):
    """Inbound message is not valid JSON or fails validation."""


class PipelineError(TranscodeWorkerError):
    """A job failed at one of its stages."""

    stage = "pipeline"

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        if stage:
            self.stage = stage


class ConversionError(PipelineError):
    stage = "conversion"


class GenerationError(PipelineError):
    stage = "derivatives"


class MetadataError(PipelineError):
    stage = "metadata"


class UploadError(PipelineError):
    stage = "upload"


class JobCancelledError(PipelineError):
    stage = "cancelled"


class PublishError(TranscodeWorkerError):
    """Result could not be serialized or handed to the outbound queue."""
