import pytest

from compliance_vault.exceptions import StorageWriteError
from compliance_vault.models.access_event import FileAccessEvent
from compliance_vault.services.employee_query import EmployeeFilter
from compliance_vault.utils.filesystem import category_path, container_path, metadata_path


@pytest.fixture
def employee(make_employee, containers):
    employee = make_employee()
    containers.initialize(employee)
    return employee


class TestComputeHealth:
    def test_fresh_container_is_healthy(self, health, employee):
        result = health.compute_health(employee)
        assert result.status.value == "healthy"
        assert result.score == 100
        assert result.issues == [] and result.warnings == []

    def test_missing_container_is_error(self, health, make_employee):
        result = health.compute_health(make_employee())
        assert result.status.value == "error"
        assert result.score == 0
        assert result.issues == ["Container does not exist"]

    def test_deleted_tree_with_marker_is_error(self, health, backend, employee):
        backend.delete(container_path(employee.id))
        result = health.compute_health(employee)
        assert result.status.value == "error"
        assert "database marker present" in result.issues[0]

    @pytest.mark.parametrize("category", ["certificates", "background_checks", "documents", "photos"])
    def test_missing_category_is_never_healthy(self, health, backend, employee, category):
        backend.delete(category_path(employee.id, category))
        result = health.compute_health(employee)
        assert result.status.value == "critical"
        assert f"Missing directory: {category}" in result.issues
        assert result.score < 100

    def test_missing_metadata_is_error(self, health, backend, employee):
        backend.delete(metadata_path(employee.id))
        assert health.compute_health(employee).status.value == "error"

    def test_unreadable_metadata_is_error(self, health, backend, employee):
        backend.write(metadata_path(employee.id), b"{not json")
        result = health.compute_health(employee)
        assert result.status.value == "error"
        assert "unreadable" in result.issues[0]

    def test_directory_without_marker_is_drift(self, health, db, employee):
        employee.container_created_at = None
        db.commit()
        result = health.compute_health(employee)
        assert result.status.value == "critical"
        assert "without database marker" in result.issues[0]

    def test_orphan_record(self, health, file_store, backend, employee, pdf_file):
        record = file_store.store(pdf_file(), employee.employee_id, "certificates")
        backend.delete(record.storage_path)

        result = health.compute_health(employee)

        assert result.status.value == "critical"
        assert result.orphan_records == [record.id]

    def test_orphan_file_is_warning(self, health, backend, employee):
        stray = f"{category_path(employee.id, 'documents')}/stray.pdf"
        backend.write(stray, b"%PDF-1.4")
        result = health.compute_health(employee)
        assert result.status.value == "warning"
        assert result.orphan_files == [stray]
        assert result.score == 95

    def test_metadata_count_drift_is_warning(self, health, containers, backend, employee):
        doc = containers.load_metadata(employee)
        doc["total_files"] = 9
        containers.write_metadata(employee, doc)
        result = health.compute_health(employee)
        assert result.status.value == "warning"
        assert "Metadata declares 9 files, database has 0" in result.warnings

    def test_counter_drift_is_warning(self, health, db, employee):
        employee.container_file_count = 3
        db.commit()
        assert health.compute_health(employee).status.value == "warning"


class TestRepair:
    def test_repair_converges(self, health, containers, backend, db, file_store, employee, pdf_file):
        file_store.store(pdf_file(), employee.employee_id, "certificates")
        backend.delete(category_path(employee.id, "photos"))
        backend.write(metadata_path(employee.id), b"garbage")
        backend.write(f"{category_path(employee.id, 'documents')}/stray.pdf", b"%PDF-1.4")
        employee.container_file_count = 7
        employee.container_created_at = None
        db.commit()

        first = health.repair(employee)
        second = health.repair(employee)

        assert first.success
        assert first.repairs_made
        assert second.success
        assert second.repairs_made == []
        assert second.errors == []
        assert health.compute_health(employee).status.value == "healthy"
        assert employee.container_file_count == 1
        assert containers.load_metadata(employee)["total_files"] == 1

    def test_orphan_files_are_quarantined(self, health, backend, employee):
        stray = f"{category_path(employee.id, 'documents')}/stray.pdf"
        backend.write(stray, b"%PDF-1.4")

        result = health.repair(employee)

        assert result.success
        assert not backend.exists(stray)
        quarantined = backend.list_files(f"quarantine/employee-{employee.id}", recursive=True)
        assert [p.rsplit("/", 2)[-2:] for p in quarantined] == [["documents", "stray.pdf"]]

    def test_orphan_record_restored_from_backup(self, health, file_store, backend, db, employee, pdf_file):
        record = file_store.store(pdf_file(), employee.employee_id, "certificates")
        file_store.backup(record)
        backend.delete(record.storage_path)

        result = health.repair(employee)

        assert result.success
        assert backend.exists(record.storage_path)
        assert file_store.verify(record)["verified"]
        assert db.query(FileAccessEvent).filter(FileAccessEvent.action == "restored").count() == 1

    def test_orphan_record_without_backup_is_partial(self, health, file_store, backend, employee, pdf_file):
        record = file_store.store(pdf_file(), employee.employee_id, "certificates")
        backend.delete(record.storage_path)
        backend.delete(category_path(employee.id, "photos"))

        result = health.repair(employee)

        assert result.success is False
        assert "Recreated missing directory: photos" in result.repairs_made
        assert any(record.id in error for error in result.errors)
        assert employee.container_status == "degraded"

    def test_missing_container_is_initialized(self, health, containers, make_employee):
        employee = make_employee()
        result = health.repair(employee)
        assert result.success
        assert "Initialized missing container" in result.repairs_made
        assert containers.has_container(employee)


class TestScan:
    def test_scan_tallies_and_repairs(self, health, containers, backend, make_employee):
        healthy = make_employee()
        broken = make_employee()
        missing = make_employee()
        containers.initialize(healthy)
        containers.initialize(broken)
        backend.delete(category_path(broken.id, "photos"))

        report = health.scan(repair=True)

        assert report.total_checked == 3
        assert (report.healthy, report.critical, report.errors) == (1, 1, 1)
        assert report.repaired == 1
        assert report.failed
        # employees without any container are reported, not created
        assert not containers.has_container(missing)
        assert health.compute_health(broken).status.value == "healthy"

    def test_one_failure_does_not_stop_scan(self, health, containers, make_employee, monkeypatch):
        first = make_employee("E001")
        second = make_employee("E002")
        containers.initialize(first)
        containers.initialize(second)
        original = health.compute_health

        def flaky(employee):
            if employee.employee_id == "E001":
                raise StorageWriteError("disk unavailable")
            return original(employee)

        monkeypatch.setattr(health, "compute_health", flaky)
        report = health.scan(batch_size=1)

        assert report.total_checked == 2
        assert report.errors == 1
        assert report.healthy == 1
        failed = next(d for d in report.details if d["employee_id"] == "E001")
        assert failed["status"] == "error"
        assert "disk unavailable" in failed["issues"][0]

    def test_unexpected_errors_do_not_stop_scan(self, health, containers, backend, make_employee, monkeypatch, caplog):
        first = make_employee("E001")
        second = make_employee("E002")
        third = make_employee("E003")
        for employee in (first, second, third):
            containers.initialize(employee)
        backend.delete(metadata_path(second.id))
        backend.delete(metadata_path(third.id))
        original_health = health.compute_health
        original_repair = health.repair

        def flaky_health(employee):
            if employee.employee_id == "E001":
                raise ValueError("corrupt counter")
            return original_health(employee)

        def flaky_repair(employee):
            if employee.employee_id == "E002":
                raise RuntimeError("backend offline")
            return original_repair(employee)

        monkeypatch.setattr(health, "compute_health", flaky_health)
        monkeypatch.setattr(health, "repair", flaky_repair)
        with caplog.at_level("ERROR", logger="compliance_vault.services.health_service"):
            report = health.scan(repair=True, batch_size=2)

        assert report.total_checked == 3
        assert report.errors == 3
        assert report.repaired == 1
        assert report.repair_errors == 1
        details = {d["employee_id"]: d for d in report.details}
        assert "corrupt counter" in details["E001"]["issues"][0]
        assert details["E002"]["repair_errors"] == ["backend offline"]
        assert details["E003"]["repaired"] is True
        assert "Repair failed for E002" in caplog.text

    def test_scan_filters(self, health, containers, make_employee):
        target = make_employee(department_id="ops")
        make_employee(department_id="finance")
        containers.initialize(target)
        report = health.scan(EmployeeFilter(department_id="ops"))
        assert report.total_checked == 1
        assert report.healthy == 1
