"""Error kinds raised by the lifecycle services.

The HTTP boundary maps each kind to a status code in ``payflow.main``.
"""


class LifecycleError(Exception):
    code = "LIFECYCLE_ERROR"

    def __init__(self, message: str, details=None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(LifecycleError):
    """Missing or invalid caller input (amount, type, status value)."""
    code = "VALIDATION_ERROR"


class NotFoundError(LifecycleError):
    """Unknown entity, or one the caller does not own."""
    code = "NOT_FOUND"


class StateConflictError(LifecycleError):
    """The requested transition is not reachable from the current state."""
    code = "STATE_CONFLICT"


class PersistenceError(LifecycleError):
    code = "PERSISTENCE_ERROR"


class DeliveryError(LifecycleError):
    code = "DELIVERY_ERROR"
