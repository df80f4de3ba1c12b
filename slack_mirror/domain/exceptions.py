"""Custom exception hierarchy for slack-mirror.

Following error taxonomy: retryable, non-retryable, rate-limit, fatal.
Every upstream failure is mapped onto one of these classes by the Slack
gateway so that components decide retry/skip/stop in a single place.
"""


class SlackMirrorError(Exception):
    """Base exception for all application errors."""

    pass


class RetryableError(SlackMirrorError):
    """Errors that can be retried (network issues, temporary failures)."""

    pass


class NonRetryableError(SlackMirrorError):
    """Errors that should not be retried (membership, auth, logic errors)."""

    pass


class RateLimitError(RetryableError):
    """API rate limit exceeded."""

    def __init__(self, retry_after: float | None = None) -> None:
        """Initialize with optional retry_after seconds."""
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded. Retry after: {retry_after}s")


class TransientSlackError(RetryableError):
    """Timeouts, connection resets and upstream 5xx responses.

    Retried by the next scheduled run, never within the current one.
    """

    pass


class SlackAPIError(NonRetryableError):
    """Slack answered with an error code that has no dedicated class."""

    def __init__(self, message: str, *, error_code: str | None = None) -> None:
        self.error_code = error_code
        super().__init__(message)


class ChannelUnavailableError(SlackAPIError):
    """Channel (or thread) cannot be read: not a member, not found, archived."""

    pass


class AuthInvalidError(NonRetryableError):
    """Credential rejected by Slack. Fatal to the capture path that saw it."""

    def __init__(self, message: str, *, error_code: str | None = None) -> None:
        self.error_code = error_code
        super().__init__(message)


class CredentialsNotFoundError(NonRetryableError):
    """No usable Slack credential combination is configured."""

    pass


class StorageUnavailableError(SlackMirrorError):
    """Database/storage errors. Fatal to the whole process."""

    pass
