"""
Error taxonomy shared by every reconciler.

Errors that cross a component boundary are typed so that the reconcile core can
decide the user-visible phase and message, and the dispatcher can decide the
retry cadence, from the class alone.
"""


class ControllerError(Exception):
    """Base class for all errors surfaced on a resource status"""


class ValidationError(ControllerError):
    """Malformed spec. Terminal until the spec is edited."""


class ConflictError(ValidationError):
    """Physical state disagrees with the spec in a way that must not be auto-resolved"""


class NotFoundError(ControllerError):
    """A referenced record, secret or physical object is missing"""


class PeerNotReadyError(NotFoundError):
    """A referenced record exists but has not reached its success phase yet"""


class EngineError(ControllerError):
    """Connection or SQL failure on a PostgreSQL engine"""


class ReconcileTimeoutError(EngineError):
    pass


class StoreError(ControllerError):
    """Kubernetes API failure other than not-found and conflict"""


class PatchConflictError(ControllerError):
    """A write lost an optimistic concurrency race on resourceVersion"""


class RotationBlockedError(ControllerError):
    """A rotation is due while old logins are still draining"""


class DrainPendingError(RotationBlockedError):
    pass


class LinkedResourceError(ControllerError):
    """Deletion refused because another record still references this one"""
