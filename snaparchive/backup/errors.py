"""
Error types raised by the job execution engine.

Every error carries a `fatal` flag. Fatal errors abort the job run and mark it
FAILURE; recoverable ones are logged, appended to the job's warnings and the
run continues.
"""


class BackupError(Exception):
    """Base class for all job execution errors."""
    fatal = True


class ConfigurationError(BackupError):
    """Raised when a job's effective configuration cannot be resolved."""
    fatal = True


class CredentialError(ConfigurationError):
    """Raised when archive encryption is requested but no password is available."""
    pass


class FreeSpaceError(BackupError):
    """Raised when the destination has less free space than required."""
    fatal = True


class SnapshotError(BackupError):
    """Raised when a volume snapshot cannot be created or discovered."""
    fatal = False


class ArchiverError(BackupError):
    """Raised when the archiver fails after every retry attempt."""
    fatal = True

    def __init__(self, message: str, result=None):
        super().__init__(message)
        self.result = result


class RetentionError(BackupError):
    """Raised when an old archive cannot be removed."""
    fatal = False


class HookError(BackupError):
    """Raised when a hook script cannot be run."""
    fatal = False


class TransferError(BackupError):
    """Raised when copying an archive to a backup target fails."""
    fatal = False
