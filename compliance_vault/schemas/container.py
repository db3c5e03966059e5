from pydantic import BaseModel


class InitializeResponse(BaseModel):
    employee_id: str
    success: bool
    created: bool
    message: str


class RebuildResponse(BaseModel):
    employee_id: str
    success: bool
    archived_to: str | None
    restored_files: int
    missing_files: list[str]


class HealthResponse(BaseModel):
    employee_id: str
    status: str
    score: int
    issues: list[str]
    warnings: list[str]
    orphan_records: list[str] = []
    orphan_files: list[str] = []
    checked_at: str | None = None


class RepairResponse(BaseModel):
    employee_id: str
    success: bool
    repairs_made: list[str]
    errors: list[str]


class EmployeeSelection(BaseModel):
    employee_ids: list[str] | None = None
    department_id: str | None = None
    status: str | None = None


class HealthCheckRequest(EmployeeSelection):
    repair: bool = False
    batch_size: int | None = None


class HealthCheckResponse(BaseModel):
    total_checked: int
    healthy: int
    warnings: int
    critical: int
    errors: int
    repaired: int
    repair_errors: int
    failed: bool
    details: list[dict]


class BulkRequest(EmployeeSelection):
    action: str
    batch_size: int | None = None
    dry_run: bool = False
    force: bool = False


class BulkUnitResponse(BaseModel):
    employee_id: str
    status: str
    message: str


class BulkResponse(BaseModel):
    action: str
    dry_run: bool
    total: int
    processed: int
    successful: int
    failed: int
    skipped: int
    success_rate: float
    run_failed: bool
    details: list[BulkUnitResponse]


class StatisticsResponse(BaseModel):
    containers: dict
    files: dict
