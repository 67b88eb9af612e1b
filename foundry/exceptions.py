"""Custom exceptions for Foundry."""


class FoundryError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ValidationError(FoundryError):
    """Raised when a spec or argument is rejected before touching the hypervisor."""


class NotFoundError(FoundryError):
    """Raised when a named hypervisor object does not exist."""


class PoolNotFoundError(NotFoundError):
    pass


class VolumeNotFoundError(NotFoundError):
    pass


class DomainNotFoundError(NotFoundError):
    pass


class ImageNotFoundError(NotFoundError):
    pass


class AlreadyExistsError(FoundryError):
    """Raised when creating an object whose name is already taken."""


class BackendError(FoundryError):
    """Raised when the hypervisor rejects or fails an operation."""


class OperationTimeoutError(FoundryError):
    pass


class OperationCancelledError(FoundryError):
    pass


class InvalidTransitionError(FoundryError):
    """Raised when a phase transition is not allowed from the current phase."""
