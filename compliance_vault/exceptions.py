class ContainerError(Exception):
    """Base class for employee container failures."""


class ValidationError(ContainerError):
    """Upload rejected by size, type, extension or content signature checks."""

    def __init__(self, message: str, *, code: str = "invalid_file"):
        super().__init__(message)
        self.code = code


class DuplicateFileError(ContainerError):
    def __init__(self, existing_version: int, existing_id: str | None = None):
        super().__init__(
            f"Duplicate file detected. This file already exists as version {existing_version}."
        )
        self.existing_version = existing_version
        self.existing_id = existing_id


class NotFoundError(ContainerError):
    """File, employee or container absent."""


class AccessDeniedError(ContainerError):
    pass


class StorageWriteError(ContainerError):
    """Blob backend I/O failure."""


class InconsistencyError(ContainerError):
    """Database and filesystem state disagree."""


class StatusTransitionError(InconsistencyError):
    def __init__(self, current: str, target: str):
        super().__init__(f"Illegal file status transition: {current} -> {target}")
        self.current = current
        self.target = target


class TokenError(ContainerError):
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    REVOKED = "revoked"

    def __init__(self, reason: str, message: str | None = None):
        super().__init__(message or f"Download token {reason.replace('_', ' ')}")
        self.reason = reason
