from fastapi import APIRouter, Depends

from compliance_vault.dependencies import (
    get_bulk_service,
    get_containers,
    get_file_store,
    get_health_service,
    require_elevated,
)
from compliance_vault.schemas.container import (
    BulkRequest,
    BulkResponse,
    BulkUnitResponse,
    EmployeeSelection,
    HealthCheckRequest,
    HealthCheckResponse,
    HealthResponse,
    InitializeResponse,
    RebuildResponse,
    RepairResponse,
    StatisticsResponse,
)
from compliance_vault.services.bulk_service import BulkOperationService
from compliance_vault.services.container_service import ContainerManager
from compliance_vault.services.employee_query import EmployeeFilter
from compliance_vault.services.file_store import FileStore
from compliance_vault.services.health_service import HealthService, health_to_dict

router = APIRouter(
    prefix="/containers",
    tags=["containers"],
    dependencies=[Depends(require_elevated)],
)


def _filters(selection: EmployeeSelection) -> EmployeeFilter:
    return EmployeeFilter(
        employee_ids=selection.employee_ids,
        department_id=selection.department_id,
        status=selection.status,
    )


@router.get("/statistics", response_model=StatisticsResponse)
async def container_statistics(
    containers: ContainerManager = Depends(get_containers),
    files: FileStore = Depends(get_file_store),
):
    return StatisticsResponse(containers=containers.statistics(), files=files.statistics())


@router.post("/health-check", response_model=HealthCheckResponse)
async def health_check(body: HealthCheckRequest, health: HealthService = Depends(get_health_service)):
    """Check (and optionally repair) every selected employee's container."""
    report = health.scan(_filters(body), repair=body.repair, batch_size=body.batch_size)
    return HealthCheckResponse(
        total_checked=report.total_checked,
        healthy=report.healthy,
        warnings=report.warnings,
        critical=report.critical,
        errors=report.errors,
        repaired=report.repaired,
        repair_errors=report.repair_errors,
        failed=report.failed,
        details=report.details,
    )


@router.post("/bulk", response_model=BulkResponse)
async def bulk_operation(body: BulkRequest, bulk: BulkOperationService = Depends(get_bulk_service)):
    report = bulk.run(
        body.action,
        _filters(body),
        batch_size=body.batch_size,
        dry_run=body.dry_run,
        force=body.force,
    )
    return BulkResponse(
        action=report.action,
        dry_run=report.dry_run,
        total=report.total,
        processed=report.processed,
        successful=report.successful,
        failed=report.failed,
        skipped=report.skipped,
        success_rate=report.success_rate,
        run_failed=report.run_failed,
        details=[
            BulkUnitResponse(employee_id=d.employee_id, status=d.status.value, message=d.message)
            for d in report.details
        ],
    )


@router.post("/{employee_id}/initialize", response_model=InitializeResponse)
async def initialize_container(
    employee_id: str,
    force: bool = False,
    containers: ContainerManager = Depends(get_containers),
):
    employee = containers.get_employee(employee_id)
    result = containers.initialize(employee, force=force)
    return InitializeResponse(
        employee_id=employee.employee_id,
        success=result.success,
        created=result.created,
        message=result.message,
    )


@router.post("/{employee_id}/rebuild", response_model=RebuildResponse)
async def rebuild_container(employee_id: str, containers: ContainerManager = Depends(get_containers)):
    employee = containers.get_employee(employee_id)
    result = containers.repair(employee)
    return RebuildResponse(
        employee_id=employee.employee_id,
        success=result.success,
        archived_to=result.archived_to,
        restored_files=result.restored_files,
        missing_files=result.missing_files,
    )


@router.get("/{employee_id}/health", response_model=HealthResponse)
async def container_health(employee_id: str, health: HealthService = Depends(get_health_service)):
    employee = health.containers.get_employee(employee_id)
    return HealthResponse(employee_id=employee.employee_id, **health_to_dict(health.compute_health(employee)))


@router.post("/{employee_id}/repair", response_model=RepairResponse)
async def repair_container(employee_id: str, health: HealthService = Depends(get_health_service)):
    employee = health.containers.get_employee(employee_id)
    result = health.repair(employee)
    return RepairResponse(
        employee_id=employee.employee_id,
        success=result.success,
        repairs_made=result.repairs_made,
        errors=result.errors,
    )
