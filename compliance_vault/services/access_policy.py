from dataclasses import dataclass

from compliance_vault.config import settings
from compliance_vault.models.employee import Employee
from compliance_vault.models.file_record import FileRecord


@dataclass(frozen=True)
class Requester:
    """Identity of the caller, as established by the upstream auth layer."""

    id: str
    role: str | None = None
    email: str | None = None
    employee_pk: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None

    @property
    def is_elevated(self) -> bool:
        return self.role is not None and self.role.lower() in settings.elevated_roles


def _is_uploader(record: FileRecord, requester: Requester) -> bool:
    return record.uploaded_by is not None and record.uploaded_by == requester.id


def _is_owner(record: FileRecord, employee: Employee | None, requester: Requester) -> bool:
    if requester.employee_pk and requester.employee_pk == record.employee_id:
        return True
    if employee is None or not employee.email or not requester.email:
        return False
    return employee.email.strip().lower() == requester.email.strip().lower()


def can_retrieve(record: FileRecord, employee: Employee | None, requester: Requester | None) -> bool:
    if requester is None:
        return False
    if requester.is_elevated or _is_uploader(record, requester):
        return True
    return _is_owner(record, employee, requester)


def can_delete(record: FileRecord, requester: Requester | None) -> bool:
    # Owning employees may read but not delete their files.
    if requester is None:
        return False
    return requester.is_elevated or _is_uploader(record, requester)
