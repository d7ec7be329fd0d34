"""Error taxonomy for background analysis: terminal errors stop retries, retryable ones consume an attempt."""


class ExecutorError(Exception):
    retryable = False

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class NotFoundError(ExecutorError):
    """Subject vanished between enqueue and execution; the job is discarded."""


class ProviderBadRequestError(ExecutorError):
    """Provider rejected the request (4xx other than 429)."""


class ProviderTransientError(ExecutorError):
    """Timeout, connection error, 429 or 5xx from the provider."""
    retryable = True


class ExecutionError(ExecutorError):
    """Unexpected failure inside the executor (database, bug); retried like a transient error."""
    retryable = True


class ProducerError(Exception):
    """Job store unreachable while enqueueing; the caller decides whether to retry or degrade."""
