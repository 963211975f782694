"""Exception hierarchy for the k3d reconciler.

Callers can catch :class:`ReconcilerError` to handle every domain failure, or
one of the narrower types below. Validation and identity errors are raised
before any runtime mutation; creation errors are raised after the pipeline
has attempted a compensating delete.

Exceptions
----------
ReconcilerError
NodeFilterError
InvalidFilterSyntax
UnknownRole
FilterTargetMissing
InvalidConfiguration
AlreadyExists
NotFound
CreationFailed
CreationFailedRollbackFailed
RuntimeCommandError
ImageLookupError

Warnings
--------
CredentialSyncWarning
"""

from __future__ import annotations


class ReconcilerError(Exception):
    """Base error for reconciler operations.

    Examples
    --------
    >>> raise ReconcilerError("unexpected reconciler failure")
    """

    fatal = False


class NodeFilterError(ReconcilerError):
    """Base error for node filter parsing and resolution."""


class InvalidFilterSyntax(NodeFilterError):
    """Raised when a node filter does not match ``<role>[<index>]``.

    Examples
    --------
    >>> raise InvalidFilterSyntax("invalid node filter 'server[-1]'")
    """


class UnknownRole(NodeFilterError):
    """Raised when a node filter names a role that does not exist."""


class FilterTargetMissing(NodeFilterError):
    """Raised when a well-formed filter selects a node absent from the topology."""


class InvalidConfiguration(ReconcilerError):
    """Raised when pre-flight validation rejects a configuration."""


class AlreadyExists(ReconcilerError):
    """Raised when the target identity is already present in the runtime."""


class NotFound(ReconcilerError):
    """Raised when the runtime reports no object for an identity."""


class RuntimeCommandError(ReconcilerError):
    """Raised when the runtime client fails for a reason other than absence.

    Examples
    --------
    >>> raise RuntimeCommandError("k3d cluster create failed: port is already allocated")
    """


class ImageLookupError(ReconcilerError):
    """Raised when the default k3s image cannot be resolved."""


class CreationFailed(ReconcilerError):
    """Raised when cluster creation failed and the rollback succeeded.

    Parameters
    ----------
    identity
        Runtime identity of the cluster that failed to create.
    cause
        The collaborator error that aborted creation.
    """

    def __init__(self, identity: str, cause: BaseException) -> None:
        self.identity = identity
        self.cause = cause
        super().__init__(f"cluster {identity!r} creation failed: {cause}")


class CreationFailedRollbackFailed(ReconcilerError):
    """Raised when creation failed and the compensating delete failed too.

    Runtime objects for ``identity`` may be orphaned. This error deliberately
    does not derive from :class:`CreationFailed` so an ``except CreationFailed``
    clause cannot downgrade it.

    Examples
    --------
    >>> err = CreationFailedRollbackFailed("k3d-bar", RuntimeError("a"), RuntimeError("b"))
    >>> err.fatal
    True
    """

    fatal = True

    def __init__(
        self,
        identity: str,
        cause: BaseException,
        rollback_error: BaseException,
    ) -> None:
        self.identity = identity
        self.cause = cause
        self.rollback_error = rollback_error
        super().__init__(
            f"cluster {identity!r} creation FAILED, also FAILED to roll back "
            f"changes; runtime objects may be orphaned (creation error: {cause}; "
            f"rollback error: {rollback_error})"
        )


class CredentialSyncWarning(UserWarning):
    """Non-fatal failure while merging credentials into the local store."""


__all__ = [
    "AlreadyExists",
    "CreationFailed",
    "CreationFailedRollbackFailed",
    "CredentialSyncWarning",
    "FilterTargetMissing",
    "ImageLookupError",
    "InvalidConfiguration",
    "InvalidFilterSyntax",
    "NodeFilterError",
    "NotFound",
    "ReconcilerError",
    "RuntimeCommandError",
    "UnknownRole",
]
