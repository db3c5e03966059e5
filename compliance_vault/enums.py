from enum import Enum


class Category(str, Enum):
    """Fixed sub-directories of every employee container."""

    CERTIFICATES = "certificates"
    BACKGROUND_CHECKS = "background_checks"
    DOCUMENTS = "documents"
    PHOTOS = "photos"


class ContainerStatus(str, Enum):
    NONE = "none"
    ACTIVE = "active"
    DEGRADED = "degraded"


class FileStatus(str, Enum):
    """Lifecycle of a FileRecord. FAILED and DELETED are terminal."""

    PENDING = "pending"
    STORED = "stored"
    FAILED = "failed"
    DELETED = "deleted"


FILE_STATUS_TRANSITIONS: dict[FileStatus, frozenset[FileStatus]] = {
    FileStatus.PENDING: frozenset({FileStatus.STORED, FileStatus.FAILED}),
    FileStatus.STORED: frozenset({FileStatus.DELETED}),
    FileStatus.FAILED: frozenset(),
    FileStatus.DELETED: frozenset(),
}


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    ERROR = "error"


class AccessAction(str, Enum):
    UPLOADED = "uploaded"
    ACCESSED = "accessed"
    DELETED = "deleted"
    BACKED_UP = "backed_up"
    RESTORED = "restored"


class BulkAction(str, Enum):
    CREATE = "create"
    REPAIR = "repair"
    MIGRATE = "migrate"
    CLEANUP = "cleanup"


class UnitOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


CATEGORIES: tuple[str, ...] = tuple(c.value for c in Category)
