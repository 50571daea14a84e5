"""Custom exceptions for participant location tracking."""


class LocationUpdateError(Exception):
    """Base class for a location sample that could not be applied."""
    pass


class EventNotFoundError(LocationUpdateError):
    """Raised when the event referenced by a sample does not exist."""
    pass


class NotAParticipantError(LocationUpdateError):
    """Raised when the sender is not on the event roster."""
    pass


class LocationSharingDisabledError(LocationUpdateError):
    """Raised when the event does not allow location sharing."""
    pass
