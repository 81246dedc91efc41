from __future__ import annotations


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status


class MonitoringError(Exception):
    code = "MONITORING_ERROR"
    retryable = False

    def __init__(self, message: str, *, code: str | None = None, retryable: bool | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable


class SourceUnavailable(MonitoringError):
    """External fetch failed or timed out; isolated to one jurisdiction/source."""

    code = "SOURCE_UNAVAILABLE"
    retryable = True


class ClassificationDegraded(MonitoringError):
    """AI classification failed; the keyword heuristic answers instead."""

    code = "CLASSIFICATION_DEGRADED"
    retryable = True


class TemplateNotFound(MonitoringError):
    code = "TEMPLATE_NOT_FOUND"


class PublishConflict(MonitoringError):
    """Catalog rejected a version write, e.g. a concurrent version bump."""

    code = "PUBLISH_CONFLICT"


class ReviewTransitionError(MonitoringError):
    code = "REVIEW_TRANSITION_INVALID"


class LedgerWriteFailure(MonitoringError):
    code = "LEDGER_WRITE_FAILED"
    retryable = True


class RunFatal(MonitoringError):
    """Failure before any jurisdiction started; the only cause of a failed run."""

    code = "RUN_FATAL"


class JobLockBusy(MonitoringError):
    code = "RUN_ALREADY_IN_PROGRESS"
    retryable = True

    def __init__(self, message: str, *, current_job: str | None, locked_since: str | None) -> None:
        super().__init__(message)
        self.current_job = current_job
        self.locked_since = locked_since
