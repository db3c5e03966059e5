"""Per-employee container directories and their metadata document.

The metadata document is a cache over the FileRecord rows. It is always
rebuilt from the database, never read back as the source of truth.
"""
import json
import logging
from dataclasses import dataclass, field

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from compliance_vault.config import settings
from compliance_vault.enums import CATEGORIES, ContainerStatus, FileStatus
from compliance_vault.exceptions import InconsistencyError, NotFoundError
from compliance_vault.models.employee import Employee
from compliance_vault.models.file_record import FileRecord
from compliance_vault.services.blob_backend import BlobBackend
from compliance_vault.services.locks import LockRegistry
from compliance_vault.utils.clock import Clock
from compliance_vault.utils.filesystem import (
    category_path,
    container_path,
    metadata_path,
    rebuild_archive_path,
)

logger = logging.getLogger(__name__)


@dataclass
class InitializationResult:
    success: bool
    created: bool
    message: str


@dataclass
class RebuildResult:
    success: bool
    archived_to: str | None = None
    restored_files: int = 0
    missing_files: list[str] = field(default_factory=list)


class ContainerManager:
    def __init__(
        self,
        db: Session,
        backend: BlobBackend,
        clock: Clock | None = None,
        locks: LockRegistry | None = None,
    ):
        self.db = db
        self.backend = backend
        self.clock = clock or Clock()
        self.locks = locks or LockRegistry()

    # ----- lookups -----

    def get_employee(self, identifier: str) -> Employee:
        """Find by primary key or business key (``employee_id``)."""
        employee = self.db.get(Employee, identifier)
        if employee is None:
            employee = self.db.query(Employee).filter(Employee.employee_id == identifier).first()
        if employee is None:
            raise NotFoundError(f"Employee not found: {identifier}")
        return employee

    def stored_records(self, employee: Employee) -> list[FileRecord]:
        return (
            self.db.query(FileRecord)
            .filter(FileRecord.employee_id == employee.id, FileRecord.status == FileStatus.STORED.value)
            .order_by(FileRecord.category, FileRecord.version_number)
            .all()
        )

    def has_marker(self, employee: Employee) -> bool:
        return employee.container_created_at is not None

    def has_directory(self, employee: Employee) -> bool:
        return self.backend.is_directory(container_path(employee.id))

    def has_container(self, employee: Employee) -> bool:
        # Disagreement between the two is drift, reported by the health engine.
        return self.has_marker(employee) and self.has_directory(employee)

    # ----- metadata document -----

    def load_metadata(self, employee: Employee) -> dict:
        path = metadata_path(employee.id)
        if not self.backend.exists(path):
            raise NotFoundError(f"Container metadata missing for employee {employee.employee_id}")
        try:
            doc = json.loads(self.backend.read_bytes(path).decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise InconsistencyError(
                f"Container metadata unreadable for employee {employee.employee_id}: {exc}"
            ) from exc
        if not isinstance(doc, dict):
            raise InconsistencyError(f"Container metadata malformed for employee {employee.employee_id}")
        return doc

    def _previous_metadata(self, employee: Employee) -> dict:
        try:
            return self.load_metadata(employee)
        except (NotFoundError, InconsistencyError):
            return {}

    def build_metadata(self, employee: Employee, previous: dict | None = None) -> dict:
        previous = previous or {}
        now = self.clock.stamp()
        created = employee.container_created_at or previous.get("container_created") or now
        records = self.stored_records(employee)
        counts = {category: 0 for category in CATEGORIES}
        for record in records:
            counts[record.category] = counts.get(record.category, 0) + 1

        old_dirs = previous.get("directories") if isinstance(previous.get("directories"), dict) else {}
        directories = {}
        for category in CATEGORIES:
            old = old_dirs.get(category) if isinstance(old_dirs.get(category), dict) else {}
            directories[category] = {
                "created": old.get("created") or created,
                "file_count": counts[category],
            }

        doc = {k: v for k, v in previous.items() if k not in {"directories"}}
        doc.update(
            {
                "employee_id": employee.employee_id,
                "employee_name": employee.name,
                "container_created": created,
                "container_version": previous.get("container_version") or settings.container_version,
                "total_files": len(records),
                "total_size": sum(r.file_size for r in records),
                "last_updated": now,
                "directories": directories,
            }
        )
        return doc

    def write_metadata(self, employee: Employee, doc: dict) -> None:
        payload = json.dumps(doc, indent=4, sort_keys=True).encode("utf-8")
        self.backend.write(metadata_path(employee.id), payload)

    def regenerate_metadata(self, employee: Employee) -> dict:
        doc = self.build_metadata(employee, self._previous_metadata(employee))
        self.write_metadata(employee, doc)
        return doc

    def sync(self, employee: Employee) -> None:
        """Realign aggregate counters (and the metadata document, if the container exists)."""
        with self.locks.employee(employee.id):
            stored = self.db.query(func.count(FileRecord.id)).filter(
                FileRecord.employee_id == employee.id,
                FileRecord.status == FileStatus.STORED.value,
            ).scalar()
            employee.container_file_count = stored or 0
            employee.container_last_updated = self.clock.stamp()
            self.db.commit()
            if self.has_directory(employee):
                self.regenerate_metadata(employee)

    # ----- lifecycle -----

    def initialize(self, employee: Employee, force: bool = False) -> InitializationResult:
        with self.locks.employee(employee.id):
            if self.has_container(employee) and not force:
                logger.info("Container already exists for employee %s", employee.employee_id)
                return InitializationResult(success=True, created=False, message="Container already exists")

            base = container_path(employee.id)
            self.backend.make_directory(base)
            for category in CATEGORIES:
                self.backend.make_directory(category_path(employee.id, category))

            now = self.clock.stamp()
            previous = self._previous_metadata(employee)
            if employee.container_created_at is None:
                employee.container_created_at = previous.get("container_created") or now
            doc = self.build_metadata(employee, previous)
            self.write_metadata(employee, doc)

            employee.container_status = ContainerStatus.ACTIVE.value
            employee.container_file_count = doc["total_files"]
            employee.container_last_updated = now
            self.db.commit()

            logger.info("Container initialized for employee %s", employee.employee_id)
            return InitializationResult(success=True, created=True, message="Container created")

    def ensure(self, employee: Employee) -> None:
        if not self.has_container(employee):
            self.initialize(employee)

    def repair(self, employee: Employee) -> RebuildResult:
        """Rebuild the container from scratch.

        The old tree is moved aside under ``archived/containers/`` and the
        blobs of stored records are copied back into the fresh tree.
        """
        with self.locks.employee(employee.id):
            base = container_path(employee.id)
            archived_to = None
            if self.backend.exists(base):
                archived_to = rebuild_archive_path(employee.id, self.clock.now())
                self.backend.move(base, archived_to)
                logger.warning("Moved container of employee %s to %s", employee.employee_id, archived_to)

            employee.container_created_at = None
            employee.container_status = ContainerStatus.NONE.value
            employee.container_file_count = 0
            employee.container_last_updated = None
            self.db.commit()

            self.initialize(employee)

            result = RebuildResult(success=True, archived_to=archived_to)
            for record in self.stored_records(employee):
                if archived_to and record.storage_path.startswith(base + "/"):
                    source = archived_to + record.storage_path[len(base):]
                    if self.backend.exists(source):
                        self.backend.copy(source, record.storage_path)
                        result.restored_files += 1
                        continue
                result.missing_files.append(record.storage_path)

            if result.missing_files:
                logger.error(
                    "Rebuilt container for employee %s is missing %d blob(s)",
                    employee.employee_id,
                    len(result.missing_files),
                )
                employee.container_status = ContainerStatus.DEGRADED.value
                self.db.commit()
            return result

    def initialize_missing(self) -> dict:
        employees = (
            self.db.query(Employee)
            .filter(
                or_(
                    Employee.container_created_at.is_(None),
                    Employee.container_status != ContainerStatus.ACTIVE.value,
                )
            )
            .order_by(Employee.id)
            .all()
        )
        results = {"total_processed": len(employees), "success": 0, "failed": 0, "errors": []}
        for employee in employees:
            try:
                self.initialize(employee, force=self.has_marker(employee))
                results["success"] += 1
            except Exception as exc:  # one unit must not abort the run
                self.db.rollback()
                results["failed"] += 1
                results["errors"].append(f"Error with {employee.name}: {exc}")
                logger.error("Failed to initialize container for %s: %s", employee.employee_id, exc)
        return results

    def statistics(self) -> dict:
        total = self.db.query(func.count(Employee.id)).scalar() or 0
        with_containers = (
            self.db.query(func.count(Employee.id)).filter(Employee.container_created_at.isnot(None)).scalar() or 0
        )
        active = (
            self.db.query(func.count(Employee.id))
            .filter(Employee.container_status == ContainerStatus.ACTIVE.value)
            .scalar()
            or 0
        )
        return {
            "total_employees": total,
            "with_containers": with_containers,
            "without_containers": total - with_containers,
            "active_containers": active,
            "coverage_percentage": round(with_containers / total * 100, 2) if total else 0,
        }
