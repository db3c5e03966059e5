"""Container health scoring and in-place repair.

Findings fall into three tiers. Anything that leaves the container
unusable (no tree, no readable metadata) is an ``error``; structural
defects are ``critical`` issues; bookkeeping drift is a ``warning``.
"""
import logging
import uuid
from dataclasses import asdict, dataclass, field

from compliance_vault.config import settings
from compliance_vault.enums import CATEGORIES, AccessAction, ContainerStatus, FileStatus, HealthStatus
from compliance_vault.exceptions import ContainerError, InconsistencyError, NotFoundError
from compliance_vault.models.access_event import FileAccessEvent
from compliance_vault.models.employee import Employee
from compliance_vault.models.file_record import FileRecord
from compliance_vault.services.container_service import ContainerManager
from compliance_vault.services.employee_query import EmployeeFilter, iter_employee_batches
from compliance_vault.utils.filesystem import (
    category_path,
    container_path,
    metadata_path,
    quarantine_path,
)

logger = logging.getLogger(__name__)

MARKER_DRIFT_PENALTY = 25
MISSING_DIRECTORY_PENALTY = 15
METADATA_PENALTY = 30
METADATA_COUNT_PENALTY = 10
COUNTER_PENALTY = 5
ORPHAN_RECORD_PENALTY = 20
ORPHAN_RECORD_CAP = 40
ORPHAN_FILE_PENALTY = 5
ORPHAN_FILE_CAP = 20


@dataclass
class ContainerHealth:
    status: HealthStatus
    score: int
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    orphan_records: list[str] = field(default_factory=list)
    orphan_files: list[str] = field(default_factory=list)
    checked_at: str | None = None

    @property
    def is_healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY


@dataclass
class RepairResult:
    success: bool
    repairs_made: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass
class HealthScanReport:
    total_checked: int = 0
    healthy: int = 0
    warnings: int = 0
    critical: int = 0
    errors: int = 0
    repaired: int = 0
    repair_errors: int = 0
    details: list[dict] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return self.errors > 0 or self.critical > 0


class _Findings:
    def __init__(self):
        self.penalty = 0
        self.fatal = False
        self.issues: list[str] = []
        self.warnings: list[str] = []

    def error(self, message: str, penalty: int) -> None:
        self.fatal = True
        self.issues.append(message)
        self.penalty += penalty

    def issue(self, message: str, penalty: int) -> None:
        self.issues.append(message)
        self.penalty += penalty

    def warn(self, message: str, penalty: int) -> None:
        self.warnings.append(message)
        self.penalty += penalty


class HealthService:
    def __init__(self, containers: ContainerManager):
        self.containers = containers
        self.db = containers.db
        self.backend = containers.backend
        self.clock = containers.clock
        self.locks = containers.locks

    # ----- inspection -----

    def _orphan_records(self, employee: Employee) -> list[FileRecord]:
        return [
            record
            for record in self.containers.stored_records(employee)
            if not self.backend.exists(record.storage_path)
        ]

    def _orphan_files(self, employee: Employee) -> list[str]:
        known = {
            path
            for (path,) in self.db.query(FileRecord.storage_path).filter(
                FileRecord.employee_id == employee.id,
                FileRecord.status.in_([FileStatus.STORED.value, FileStatus.PENDING.value]),
            )
        }
        known.add(metadata_path(employee.id))
        return [
            path
            for path in self.backend.list_files(container_path(employee.id), recursive=True)
            if path not in known
        ]

    def _metadata_findings(self, employee: Employee, findings: _Findings) -> None:
        try:
            doc = self.containers.load_metadata(employee)
        except NotFoundError:
            findings.error("Container metadata document missing", METADATA_PENALTY)
            return
        except InconsistencyError as exc:
            findings.error(str(exc), METADATA_PENALTY)
            return

        tolerance = settings.metadata_count_tolerance
        records = self.containers.stored_records(employee)
        declared = doc.get("total_files")
        if not isinstance(declared, int) or abs(declared - len(records)) > tolerance:
            findings.warn(
                f"Metadata declares {declared} files, database has {len(records)}",
                METADATA_COUNT_PENALTY,
            )

        directories = doc.get("directories") if isinstance(doc.get("directories"), dict) else {}
        for category in CATEGORIES:
            entry = directories.get(category)
            actual = sum(1 for r in records if r.category == category)
            if not isinstance(entry, dict):
                findings.warn(f"Metadata has no entry for {category}", COUNTER_PENALTY)
            elif not isinstance(entry.get("file_count"), int) or abs(entry["file_count"] - actual) > tolerance:
                findings.warn(
                    f"Metadata count for {category} is {entry.get('file_count')}, database has {actual}",
                    COUNTER_PENALTY,
                )

    def compute_health(self, employee: Employee) -> ContainerHealth:
        findings = _Findings()
        has_marker = self.containers.has_marker(employee)
        has_directory = self.containers.has_directory(employee)
        checked_at = self.clock.stamp()

        if not has_directory:
            message = (
                "Container directory missing (database marker present)"
                if has_marker
                else "Container does not exist"
            )
            return ContainerHealth(status=HealthStatus.ERROR, score=0, issues=[message], checked_at=checked_at)

        if not has_marker:
            findings.issue("Container directory exists without database marker", MARKER_DRIFT_PENALTY)

        for category in CATEGORIES:
            if not self.backend.is_directory(category_path(employee.id, category)):
                findings.issue(f"Missing directory: {category}", MISSING_DIRECTORY_PENALTY)

        self._metadata_findings(employee, findings)

        orphan_records = self._orphan_records(employee)
        for record in orphan_records:
            findings.issue(
                f"File record {record.id} ({record.category} v{record.version_number}) has no blob",
                0,
            )
        findings.penalty += min(ORPHAN_RECORD_CAP, ORPHAN_RECORD_PENALTY * len(orphan_records))

        orphan_files = self._orphan_files(employee)
        for path in orphan_files:
            findings.warn(f"Untracked file: {path}", 0)
        findings.penalty += min(ORPHAN_FILE_CAP, ORPHAN_FILE_PENALTY * len(orphan_files))

        stored_count = len(self.containers.stored_records(employee))
        if employee.container_file_count != stored_count:
            findings.warn(
                f"Employee file counter is {employee.container_file_count}, database has {stored_count}",
                COUNTER_PENALTY,
            )
        if has_marker and employee.container_status != ContainerStatus.ACTIVE.value:
            findings.warn(f"Container status is {employee.container_status}", COUNTER_PENALTY)

        if findings.fatal:
            status = HealthStatus.ERROR
        elif findings.issues:
            status = HealthStatus.CRITICAL
        elif findings.warnings:
            status = HealthStatus.WARNING
        else:
            status = HealthStatus.HEALTHY

        return ContainerHealth(
            status=status,
            score=max(0, 100 - findings.penalty),
            issues=findings.issues,
            warnings=findings.warnings,
            orphan_records=[r.id for r in orphan_records],
            orphan_files=orphan_files,
            checked_at=checked_at,
        )

    # ----- repair -----

    def _restore_from_backup(self, record: FileRecord, result: RepairResult) -> None:
        backup = record.meta.get("backup_path")
        if backup and self.backend.exists(backup):
            self.backend.copy(backup, record.storage_path)
            self.db.add(
                FileAccessEvent(
                    id=str(uuid.uuid4()),
                    file_record_id=record.id,
                    action=AccessAction.RESTORED.value,
                    details="{}",
                    occurred_at=self.clock.stamp(),
                )
            )
            result.repairs_made.append(f"Restored {record.category} v{record.version_number} from backup")
        else:
            result.errors.append(
                f"Blob missing for {record.category} v{record.version_number} (record {record.id}); no backup available"
            )

    def _metadata_needs_rebuild(self, employee: Employee) -> bool:
        findings = _Findings()
        self._metadata_findings(employee, findings)
        return bool(findings.issues or findings.warnings)

    def repair(self, employee: Employee) -> RepairResult:
        result = RepairResult(success=True)
        with self.locks.employee(employee.id):
            steps = (
                self._repair_structure,
                self._repair_orphan_records,
                self._repair_orphan_files,
                self._repair_metadata,
                self._repair_counters,
            )
            for step in steps:
                try:
                    step(employee, result)
                    self.db.commit()
                except ContainerError as exc:
                    self.db.rollback()
                    result.errors.append(f"{step.__name__.lstrip('_').replace('_', ' ')}: {exc}")
                    logger.error("Repair step %s failed for %s: %s", step.__name__, employee.employee_id, exc)

            target = ContainerStatus.DEGRADED if result.errors else ContainerStatus.ACTIVE
            if employee.container_status != target.value:
                employee.container_status = target.value
                result.repairs_made.append(f"Set container status to {target.value}")
            self.db.commit()

        result.success = not result.errors
        if result.repairs_made:
            logger.info("Repaired container of %s: %s", employee.employee_id, "; ".join(result.repairs_made))
        return result

    def _repair_structure(self, employee: Employee, result: RepairResult) -> None:
        if not self.containers.has_marker(employee) and not self.containers.has_directory(employee):
            self.containers.initialize(employee)
            result.repairs_made.append("Initialized missing container")
            return
        if not self.containers.has_directory(employee):
            self.backend.make_directory(container_path(employee.id))
            result.repairs_made.append("Recreated container directory")
        for category in CATEGORIES:
            path = category_path(employee.id, category)
            if not self.backend.is_directory(path):
                self.backend.make_directory(path)
                result.repairs_made.append(f"Recreated missing directory: {category}")

    def _repair_orphan_records(self, employee: Employee, result: RepairResult) -> None:
        for record in self._orphan_records(employee):
            self._restore_from_backup(record, result)

    def _repair_orphan_files(self, employee: Employee, result: RepairResult) -> None:
        base = container_path(employee.id) + "/"
        now = self.clock.now()
        for path in self._orphan_files(employee):
            target = quarantine_path(employee.id, path[len(base):], now)
            self.backend.move(path, target)
            result.repairs_made.append(f"Quarantined untracked file {path}")

    def _repair_metadata(self, employee: Employee, result: RepairResult) -> None:
        if not self.containers.has_marker(employee):
            try:
                created = self.containers.load_metadata(employee).get("container_created")
            except (NotFoundError, InconsistencyError):
                created = None
            employee.container_created_at = created or self.clock.stamp()
            result.repairs_made.append("Restored database container marker")
        if self._metadata_needs_rebuild(employee):
            self.containers.regenerate_metadata(employee)
            result.repairs_made.append("Regenerated metadata document from file records")

    def _repair_counters(self, employee: Employee, result: RepairResult) -> None:
        stored_count = len(self.containers.stored_records(employee))
        if employee.container_file_count != stored_count:
            employee.container_file_count = stored_count
            employee.container_last_updated = self.clock.stamp()
            result.repairs_made.append(f"Realigned file counter to {stored_count}")

    # ----- batch -----

    def scan(
        self,
        filters: EmployeeFilter | None = None,
        repair: bool = False,
        batch_size: int | None = None,
    ) -> HealthScanReport:
        filters = filters or EmployeeFilter()
        report = HealthScanReport()
        tally = {
            HealthStatus.HEALTHY: "healthy",
            HealthStatus.WARNING: "warnings",
            HealthStatus.CRITICAL: "critical",
            HealthStatus.ERROR: "errors",
        }

        for batch in iter_employee_batches(self.db, filters, batch_size or settings.bulk_batch_size):
            for employee in batch:
                report.total_checked += 1
                detail = {"employee_id": employee.employee_id, "name": employee.name, "repaired": False}
                try:
                    health = self.compute_health(employee)
                except Exception as exc:  # one unit must not abort the run
                    self.db.rollback()
                    report.errors += 1
                    detail.update(status=HealthStatus.ERROR.value, score=0, issues=[f"Health check failed: {exc}"], warnings=[])
                    report.details.append(detail)
                    logger.error("Health check failed for %s: %s", employee.employee_id, exc)
                    continue

                setattr(report, tally[health.status], getattr(report, tally[health.status]) + 1)
                detail.update(
                    status=health.status.value,
                    score=health.score,
                    issues=health.issues,
                    warnings=health.warnings,
                )

                repairable = self.containers.has_marker(employee) or self.containers.has_directory(employee)
                if repair and not health.is_healthy and repairable:
                    try:
                        outcome = self.repair(employee)
                    except Exception as exc:  # one unit must not abort the run
                        self.db.rollback()
                        outcome = RepairResult(success=False, errors=[str(exc)])
                        logger.error("Repair failed for %s: %s", employee.employee_id, exc)
                    if outcome.success:
                        report.repaired += 1
                        detail["repaired"] = True
                    else:
                        report.repair_errors += 1
                        detail["repair_errors"] = outcome.errors
                    detail["repairs_made"] = outcome.repairs_made
                report.details.append(detail)
        return report


def health_to_dict(health: ContainerHealth) -> dict:
    data = asdict(health)
    data["status"] = health.status.value
    return data
