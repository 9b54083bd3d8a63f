"""Engine exceptions returned to callers of the orchestrator."""

from typing import Optional


class ConversionEngineError(Exception):
    """Base class for errors raised synchronously to callers."""

    code = "ENGINE_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class JobValidationError(ConversionEngineError):
    """Submission rejected before any job was created."""

    code = "VALIDATION_ERROR"

    INPUT_NOT_FOUND = "INPUT_NOT_FOUND"
    OUTPUT_DIR_UNAVAILABLE = "OUTPUT_DIR_UNAVAILABLE"
    DESTINATION_EXISTS = "DESTINATION_EXISTS"
    INVALID_SETTINGS = "INVALID_SETTINGS"


class JobNotFoundError(ConversionEngineError):
    code = "JOB_NOT_FOUND"

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class JobNotCancellableError(ConversionEngineError):
    code = "JOB_NOT_CANCELLABLE"


class JobNotRetryableError(ConversionEngineError):
    code = "JOB_NOT_RETRYABLE"


class InspectError(ConversionEngineError):
    """Media metadata could not be read."""

    code = "INSPECT_FAILED"
