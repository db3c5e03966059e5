from compliance_vault.models.employee import Employee
from compliance_vault.models.file_record import FileRecord
from compliance_vault.models.access_event import FileAccessEvent

__all__ = ["Employee", "FileRecord", "FileAccessEvent"]
