from __future__ import annotations


class BackupError(RuntimeError):
    """Base class for failures that end an import or upload run."""


class PreconditionError(BackupError):
    """Raised before any file is touched (bad path, bad date, missing config)."""


class ConfigError(PreconditionError):
    pass


class ImportFailed(BackupError):
    pass


class TransferFailed(BackupError):
    pass


class UploadCancelled(BackupError):
    pass
