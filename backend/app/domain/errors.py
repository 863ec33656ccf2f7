class SchedulingError(ValueError):
    error_code: str = "scheduling_error"


class ValidationError(SchedulingError):
    """Bad caller input: never retried, surfaced as-is."""

    error_code = "validation_error"


class InvalidStateError(SchedulingError):
    """The entity is in a state that does not allow the requested change."""

    error_code = "invalid_state"


class NotFoundError(LookupError):
    error_code: str = "not_found"
