"""
flowops/errors.py - Exception hierarchy shared by the rotation and backup tools.
"""


class FlowOpsError(Exception):
    """Base class for all flowops errors."""


class PrerequisiteError(FlowOpsError):
    """Raised before any mutation when a required tool, cluster or setting is missing."""


class BackupError(FlowOpsError):
    """Raised when a secret snapshot could not be created or captured nothing."""


class RotationError(FlowOpsError):
    """Raised when a single rotation target fails."""


class RollbackError(FlowOpsError):
    """Raised when a rollback snapshot is missing, unusable, or could not be applied."""


class RestoreError(FlowOpsError):
    """Raised when a platform backup archive cannot be restored."""
