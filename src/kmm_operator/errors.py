"""Exceptions raised during Module reconciliation."""


class ReconcileError(Exception):
    """A reconciliation pass could not complete; the pass should be retried."""


class MappingNotFoundError(ReconcileError):
    """No kernel mapping of a Module applies to a kernel version."""


class StageError(ReconcileError):
    """A build or sign job manager call failed."""


class RegistryError(ReconcileError):
    """The image registry returned an unexpected response."""
