"""Error taxonomy for event processing"""


class ValidationError(ValueError):
    """Bad input: missing field, malformed duration, batch size violation.

    Always surfaced to the caller and never retried.
    """


class ProcessingError(RuntimeError):
    """Storage failure or timeout on the primary persistence path."""


class ProfileUpdateWarning(UserWarning):
    """Affinity profile maintenance failed for one event.

    Logged and counted by the processor, never raised to the caller.
    """

    def __init__(self, user_id: str, cause: BaseException):
        super().__init__(f"Profile update failed for user {user_id}: {cause}")
        self.user_id = user_id
        self.cause = cause
