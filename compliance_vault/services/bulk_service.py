"""Batch create/repair/migrate/cleanup across a filtered set of employees."""
import logging
from dataclasses import dataclass, field

from compliance_vault.config import settings
from compliance_vault.enums import CATEGORIES, BulkAction, UnitOutcome
from compliance_vault.exceptions import InconsistencyError, NotFoundError, ValidationError
from compliance_vault.models.employee import Employee
from compliance_vault.services.container_service import ContainerManager
from compliance_vault.services.employee_query import EmployeeFilter, count_employees, iter_employee_batches
from compliance_vault.services.health_service import HealthService
from compliance_vault.utils.filesystem import category_path, container_path

logger = logging.getLogger(__name__)


@dataclass
class UnitResult:
    employee_id: str
    status: UnitOutcome
    message: str


@dataclass
class BulkReport:
    action: str
    dry_run: bool
    total: int = 0
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    details: list[UnitResult] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        return round(self.successful / self.processed * 100, 1) if self.processed else 0.0

    @property
    def run_failed(self) -> bool:
        return self.failed > 0

    def record(self, result: UnitResult) -> None:
        self.processed += 1
        if result.status == UnitOutcome.SUCCESS:
            self.successful += 1
        elif result.status == UnitOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1
        self.details.append(result)


def _version_tuple(version) -> tuple[int, ...]:
    try:
        return tuple(int(part) for part in str(version).split("."))
    except ValueError:
        return (0,)


class BulkOperationService:
    def __init__(self, containers: ContainerManager, health: HealthService | None = None):
        self.containers = containers
        self.health = health or HealthService(containers)
        self.db = containers.db
        self.backend = containers.backend
        self.clock = containers.clock

    def run(
        self,
        action: str,
        filters: EmployeeFilter | None = None,
        batch_size: int | None = None,
        dry_run: bool = False,
        force: bool = False,
    ) -> BulkReport:
        try:
            action = BulkAction(action)
        except ValueError:
            raise ValidationError(f"Unknown bulk action '{action}'", code="action") from None
        filters = filters or EmployeeFilter()
        batch_size = batch_size or settings.bulk_batch_size
        if batch_size < 1:
            raise ValidationError("Batch size must be positive", code="batch_size")

        handler = {
            BulkAction.CREATE: self._create,
            BulkAction.REPAIR: self._repair,
            BulkAction.MIGRATE: self._migrate,
            BulkAction.CLEANUP: self._cleanup,
        }[action]

        report = BulkReport(action=action.value, dry_run=dry_run, total=count_employees(self.db, filters))
        logger.info(
            "Starting bulk %s over %d employees (batch size %d%s)",
            action.value,
            report.total,
            batch_size,
            ", dry run" if dry_run else "",
        )

        for batch in iter_employee_batches(self.db, filters, batch_size):
            for employee in batch:
                try:
                    result = handler(employee, dry_run, force)
                except Exception as exc:  # one unit must not abort the run
                    self.db.rollback()
                    result = UnitResult(employee.employee_id, UnitOutcome.FAILED, str(exc))
                if result.status == UnitOutcome.FAILED:
                    logger.error(
                        "Bulk container operation failed: employee=%s action=%s error=%s",
                        employee.employee_id,
                        action.value,
                        result.message,
                    )
                report.record(result)

        logger.info(
            "Bulk %s finished: processed=%d successful=%d failed=%d skipped=%d",
            action.value,
            report.processed,
            report.successful,
            report.failed,
            report.skipped,
        )
        return report

    # ----- unit operations -----

    def _create(self, employee: Employee, dry_run: bool, force: bool) -> UnitResult:
        if self.containers.has_container(employee) and not force:
            return UnitResult(employee.employee_id, UnitOutcome.SKIPPED, "Container already exists")
        if dry_run:
            return UnitResult(employee.employee_id, UnitOutcome.SUCCESS, "Would create container")
        outcome = self.containers.initialize(employee, force=force)
        return UnitResult(employee.employee_id, UnitOutcome.SUCCESS, outcome.message)

    def _repair(self, employee: Employee, dry_run: bool, force: bool) -> UnitResult:
        if not self.containers.has_marker(employee) and not self.containers.has_directory(employee):
            return UnitResult(employee.employee_id, UnitOutcome.SKIPPED, "No container to repair")
        health = self.health.compute_health(employee)
        if health.is_healthy and not force:
            return UnitResult(employee.employee_id, UnitOutcome.SKIPPED, "Container is healthy")
        if dry_run:
            count = len(health.issues) + len(health.warnings)
            return UnitResult(employee.employee_id, UnitOutcome.SUCCESS, f"Would rebuild container ({count} findings)")

        rebuilt = self.containers.repair(employee)
        if rebuilt.missing_files:
            return UnitResult(
                employee.employee_id,
                UnitOutcome.FAILED,
                f"Rebuilt container is missing {len(rebuilt.missing_files)} file(s)",
            )
        return UnitResult(
            employee.employee_id,
            UnitOutcome.SUCCESS,
            f"Rebuilt container, restored {rebuilt.restored_files} file(s)",
        )

    def _migrate(self, employee: Employee, dry_run: bool, force: bool) -> UnitResult:
        if not self.containers.has_directory(employee):
            return UnitResult(employee.employee_id, UnitOutcome.SKIPPED, "No container to migrate")

        target = settings.container_version
        try:
            doc = self.containers.load_metadata(employee)
        except NotFoundError:
            if dry_run:
                return UnitResult(employee.employee_id, UnitOutcome.SUCCESS, "Would regenerate missing metadata")
            self.containers.regenerate_metadata(employee)
            return UnitResult(employee.employee_id, UnitOutcome.SUCCESS, "Metadata regenerated")
        except InconsistencyError as exc:
            return UnitResult(employee.employee_id, UnitOutcome.FAILED, f"{exc}; run repair first")

        current = doc.get("container_version")
        if _version_tuple(current) >= _version_tuple(target):
            return UnitResult(employee.employee_id, UnitOutcome.SKIPPED, f"Already at version {current}")
        if dry_run:
            return UnitResult(employee.employee_id, UnitOutcome.SUCCESS, f"Would migrate {current} -> {target}")

        now = self.clock.stamp()
        doc["container_version"] = target
        doc["migrated_at"] = now
        doc["last_updated"] = now
        self.containers.write_metadata(employee, doc)
        return UnitResult(employee.employee_id, UnitOutcome.SUCCESS, f"Migrated {current} -> {target}")

    def _empty_directories(self, employee: Employee) -> list[str]:
        """Empty directories below the container root, deepest first. Category roots are kept."""
        protected = {category_path(employee.id, c) for c in CATEGORIES}
        found: list[str] = []
        pending = [container_path(employee.id)]
        while pending:
            path = pending.pop()
            for child in self.backend.list_directories(path):
                pending.append(child)
                found.append(child)
        found.sort(key=lambda p: p.count("/"), reverse=True)
        return [
            path
            for path in found
            if path not in protected and not self.backend.list_files(path, recursive=True)
        ]

    def _cleanup(self, employee: Employee, dry_run: bool, force: bool) -> UnitResult:
        if not self.containers.has_directory(employee):
            return UnitResult(employee.employee_id, UnitOutcome.SKIPPED, "No container to clean up")

        empty = self._empty_directories(employee)
        if dry_run:
            return UnitResult(
                employee.employee_id,
                UnitOutcome.SUCCESS,
                f"Would remove {len(empty)} empty director{'y' if len(empty) == 1 else 'ies'}",
            )

        cleaned = 0
        for path in empty:
            if self.backend.exists(path):
                self.backend.delete(path)
                cleaned += 1
        self.containers.sync(employee)
        return UnitResult(employee.employee_id, UnitOutcome.SUCCESS, f"Cleaned {cleaned} items")
