from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import StreamingResponse

from compliance_vault.config import settings
from compliance_vault.dependencies import get_file_store, get_gateway, get_optional_requester, get_requester
from compliance_vault.exceptions import AccessDeniedError
from compliance_vault.models.file_record import FileRecord
from compliance_vault.schemas.file import (
    BackupResponse,
    DeleteRequest,
    FileRecordResponse,
    LinkRequest,
    LinkResponse,
    VerifyResponse,
)
from compliance_vault.services.access_gateway import AccessGateway
from compliance_vault.services.access_policy import Requester, can_retrieve
from compliance_vault.services.file_store import FileStore, IncomingFile, RetrievedFile

router = APIRouter(tags=["files"])


def _record_to_response(record: FileRecord, files: FileStore) -> FileRecordResponse:
    return FileRecordResponse(
        id=record.id,
        employee_id=record.employee.employee_id,
        category=record.category,
        version_number=record.version_number,
        original_filename=record.original_filename,
        mime_type=record.mime_type,
        file_size=record.file_size,
        content_hash=record.content_hash,
        status=record.status,
        uploaded_by=record.uploaded_by,
        issue_date=record.issue_date,
        expiry_date=record.expiry_date,
        uploaded_at=record.uploaded_at,
        created_at=record.created_at,
        validity_status=files.validity(record),
        is_latest_version=files.is_latest_version(record),
    )


def _iter_blob(stream, chunk_size: int = 64 * 1024):
    with stream:
        while True:
            chunk = stream.read(chunk_size)
            if not chunk:
                break
            yield chunk


def _stream_response(retrieved: RetrievedFile) -> StreamingResponse:
    return StreamingResponse(
        _iter_blob(retrieved.stream),
        media_type=retrieved.mime_type,
        headers={
            "Content-Disposition": f"inline; filename*=UTF-8''{quote(retrieved.filename)}",
            "Content-Length": str(retrieved.size),
            "Last-Modified": retrieved.last_modified.strftime("%a, %d %b %Y %H:%M:%S GMT"),
            "Cache-Control": "private, no-store",
        },
    )


@router.post("/employees/{employee_id}/files", response_model=FileRecordResponse, status_code=201)
async def upload_file(
    employee_id: str,
    file: UploadFile = File(...),
    category: str = Form(...),
    issue_date: str | None = Form(None),
    expiry_date: str | None = Form(None),
    description: str | None = Form(None),
    requester: Requester = Depends(get_requester),
    files: FileStore = Depends(get_file_store),
):
    # Stop reading as soon as the limit is crossed.
    max_bytes = settings.max_upload_bytes
    size = 0
    chunks: list[bytes] = []
    while True:
        chunk = await file.read(1024 * 1024)
        if not chunk:
            break
        size += len(chunk)
        if size > max_bytes:
            raise HTTPException(status_code=413, detail=f"File too large (max {max_bytes} bytes)")
        chunks.append(chunk)

    metadata = {"issue_date": issue_date, "expiry_date": expiry_date}
    if description:
        metadata["description"] = description
    incoming = IncomingFile(filename=file.filename or "", content=b"".join(chunks), content_type=file.content_type)
    record = files.store(incoming, employee_id, category, metadata, requester)
    return _record_to_response(record, files)


@router.get("/employees/{employee_id}/files/{category}/versions", response_model=list[FileRecordResponse])
async def list_versions(
    employee_id: str,
    category: str,
    include_all: bool = False,
    requester: Requester = Depends(get_requester),
    files: FileStore = Depends(get_file_store),
):
    """Version history of one category, newest first."""
    records = files.versions(employee_id, category, include_all=include_all and requester.is_elevated)
    return [_record_to_response(r, files) for r in records if can_retrieve(r, r.employee, requester)]


@router.get("/files/secure/{token}")
@router.get("/files/secure/{token}/{filename}")
async def secure_download(
    token: str,
    request: Request,
    filename: str | None = None,
    requester: Requester | None = Depends(get_optional_requester),
    gateway: AccessGateway = Depends(get_gateway),
):
    ip_address = request.client.host if request.client else None
    return _stream_response(gateway.resolve_token(token, requester, ip_address))


@router.get("/files/{record_id}/download")
async def download_file(
    record_id: str,
    requester: Requester = Depends(get_requester),
    files: FileStore = Depends(get_file_store),
):
    return _stream_response(files.retrieve(files.get_record(record_id), requester))


@router.get("/files/{record_id}/verify", response_model=VerifyResponse)
async def verify_file(
    record_id: str,
    requester: Requester = Depends(get_requester),
    files: FileStore = Depends(get_file_store),
):
    """Re-hash the stored blob and compare against the recorded SHA-256."""
    record = files.get_record(record_id)
    if not can_retrieve(record, record.employee, requester):
        raise AccessDeniedError("Access denied to this file")
    return VerifyResponse(**files.verify(record))


@router.delete("/files/{record_id}", response_model=FileRecordResponse)
async def delete_file(
    record_id: str,
    body: DeleteRequest | None = None,
    requester: Requester = Depends(get_requester),
    files: FileStore = Depends(get_file_store),
):
    reason = body.reason if body and body.reason else "user_deletion"
    record = files.delete(files.get_record(record_id), requester, reason)
    return _record_to_response(record, files)


@router.post("/files/{record_id}/backup", response_model=BackupResponse)
async def backup_file(
    record_id: str,
    requester: Requester = Depends(get_requester),
    files: FileStore = Depends(get_file_store),
):
    record = files.get_record(record_id)
    if not requester.is_elevated:
        raise AccessDeniedError("Administrative role required")
    return BackupResponse(id=record.id, backup_path=files.backup(record, requester))


@router.post("/files/{record_id}/link", response_model=LinkResponse)
async def issue_link(
    record_id: str,
    body: LinkRequest | None = None,
    requester: Requester = Depends(get_requester),
    gateway: AccessGateway = Depends(get_gateway),
):
    record = gateway.files.get_record(record_id)
    issued = gateway.issue_token(record, requester, body.ttl_minutes if body else None)
    return LinkResponse(token=issued.token, url=settings.api_prefix + issued.url, expires_at=issued.expires_at)
