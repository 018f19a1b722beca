"""Error taxonomy shared by the webhook API, the review pipeline and the workers."""


class GitGuardError(Exception):
    """Base class for every error raised by GitGuard."""

    #: Whether the job runner may retry a job that failed with this error.
    retryable: bool = False


class WebhookPayloadError(GitGuardError):
    """Malformed webhook payload or unsupported event/action. Never enqueued."""


class ExternalServiceError(GitGuardError):
    """Transient failure of GitHub or the LLM API (5xx, rate limit, network)."""

    retryable = True


class ExternalTimeoutError(ExternalServiceError):
    """An external call exceeded its deadline."""


class GitHubAuthError(GitGuardError):
    """The GitHub App credential could not be minted or was rejected."""


class ModelContractError(GitGuardError):
    """The model returned output that violates the review JSON contract."""

    def __init__(self, message: str, raw_output: str = ""):
        super().__init__(message)
        self.raw_output = raw_output


class NoReviewProducedError(GitGuardError):
    """Every review call of a job failed, so there is nothing to publish."""

    retryable = True
