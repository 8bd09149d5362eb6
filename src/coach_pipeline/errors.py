from __future__ import annotations


class PipelineError(Exception):
    """Base class for analysis pipeline failures."""


class ConfigurationError(PipelineError):
    pass


class RecordingNotFound(PipelineError):
    pass


class DuplicateSubmission(PipelineError):
    def __init__(self, recording_id: str, job_id: str, status: str) -> None:
        super().__init__(f"Analysis already {status} for recording {recording_id}")
        self.recording_id = recording_id
        self.job_id = job_id
        self.status = status


class InvalidTransition(PipelineError):
    pass


class ProviderError(PipelineError):
    """A call to the generative-AI provider failed."""


class RateLimitError(ProviderError):
    """Provider signalled quota exhaustion (HTTP 429 / RESOURCE_EXHAUSTED)."""


class RateLimitExhausted(PipelineError):
    def __init__(self, what: str, attempts: int) -> None:
        super().__init__(f"Rate limited on {what} after {attempts} attempts")
        self.what = what
        self.attempts = attempts


class IngestionError(PipelineError):
    """Provider-side file processing failed or did not finish in time."""


class StagingError(PipelineError):
    """Source audio could not be fetched from storage."""


class EmptyOutputError(PipelineError):
    pass


class ParseError(PipelineError):
    def __init__(self, message: str, *, raw: str = "", diagnostic_chars: int = 300) -> None:
        super().__init__(message)
        n = max(0, int(diagnostic_chars))
        self.head = raw[:n]
        self.tail = raw[-n:] if len(raw) > n else ""
        self.raw_length = len(raw)

    def diagnostic(self) -> dict[str, object]:
        return {"raw_length": self.raw_length, "head": self.head, "tail": self.tail}
