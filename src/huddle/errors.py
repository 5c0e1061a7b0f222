"""Base exceptions for Huddle."""


class HuddleError(Exception):
    """Base exception for all Huddle errors."""

    code = "error"


class ValidationError(HuddleError):
    """Malformed code, id, name, secret or request body."""

    code = "validation"


class NotFoundError(HuddleError):
    """Unknown or expired code, room or participant."""

    code = "not_found"


class RoomInactiveError(NotFoundError):
    """Room exists but the host has ended it."""

    code = "inactive"


class UnauthorizedError(HuddleError):
    """Host secret missing or mismatched."""

    code = "unauthorized"


class CapacityError(HuddleError):
    """Room roster is full."""

    code = "capacity"


class ConflictError(HuddleError):
    """Identifier generation could not find a free key."""

    code = "conflict"


class RegistrationExhaustedError(ConflictError):
    """Every short-code attempt collided with a live code."""

    pass


class TransportFailure(HuddleError):
    """Connection or call closed unexpectedly."""

    code = "transport"


class StoreUnavailableError(HuddleError):
    """Registry/directory backend unreachable."""

    code = "store_unavailable"


class InvalidTransitionError(HuddleError, ValueError):
    """Connection state change not allowed by the state machine."""

    code = "invalid_transition"


ERRORS_BY_CODE: dict[str, type[HuddleError]] = {
    cls.code: cls
    for cls in (
        ValidationError,
        NotFoundError,
        RoomInactiveError,
        UnauthorizedError,
        CapacityError,
        RegistrationExhaustedError,
        TransportFailure,
        StoreUnavailableError,
    )
}
