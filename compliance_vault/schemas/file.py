from pydantic import BaseModel


class FileRecordResponse(BaseModel):
    id: str
    employee_id: str
    category: str
    version_number: int
    original_filename: str
    mime_type: str
    file_size: int
    content_hash: str
    status: str
    uploaded_by: str | None
    issue_date: str | None
    expiry_date: str | None
    uploaded_at: str | None
    created_at: str
    validity_status: str
    is_latest_version: bool = False


class VerifyResponse(BaseModel):
    verified: bool
    filename: str
    stored_hash: str
    actual_hash: str


class DeleteRequest(BaseModel):
    reason: str | None = None


class BackupResponse(BaseModel):
    id: str
    backup_path: str


class LinkRequest(BaseModel):
    ttl_minutes: int | None = None


class LinkResponse(BaseModel):
    token: str
    url: str
    expires_at: str
