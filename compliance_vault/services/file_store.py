"""Versioned, deduplicated file storage inside employee containers."""
import io
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import BinaryIO

import pypdf
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from compliance_vault.config import settings
from compliance_vault.enums import CATEGORIES, FILE_STATUS_TRANSITIONS, AccessAction, FileStatus
from compliance_vault.exceptions import (
    AccessDeniedError,
    ContainerError,
    DuplicateFileError,
    NotFoundError,
    StatusTransitionError,
    StorageWriteError,
    ValidationError,
)
from compliance_vault.models.access_event import FileAccessEvent
from compliance_vault.models.employee import Employee
from compliance_vault.models.file_record import FileRecord
from compliance_vault.services.access_policy import Requester, can_delete, can_retrieve
from compliance_vault.services.container_service import ContainerManager
from compliance_vault.utils.filesystem import archive_path, backup_path, category_path, file_extension
from compliance_vault.utils.hashing import sha256_bytes, sha256_stream
from compliance_vault.utils.security import generate_stored_filename

logger = logging.getLogger(__name__)

HEADER_BYTES = 1024

# Checked at offset 0, whatever MIME type the client declared.
EXECUTABLE_SIGNATURES = (
    b"MZ",                  # DOS/Windows PE
    b"\x7fELF",             # ELF
    b"#!",                  # interpreter script
    b"\xcf\xfa\xed\xfe",    # Mach-O 64
    b"\xce\xfa\xed\xfe",    # Mach-O 32
    b"\xca\xfe\xba\xbe",    # Mach-O fat / Java class
)
# Searched anywhere in the first HEADER_BYTES, case-insensitively.
SCRIPT_MARKERS = (b"<?php", b"<script", b"javascript:", b"#!/bin/")

PDF_MAGIC = b"%PDF-"
IMAGE_MAGIC = {
    "image/jpeg": (b"\xff\xd8\xff",),
    "image/jpg": (b"\xff\xd8\xff",),
    "image/png": (b"\x89PNG\r\n\x1a\n",),
}

EXTENSION_MIME_TYPES = {
    "pdf": {"application/pdf"},
    "jpg": {"image/jpeg", "image/jpg"},
    "jpeg": {"image/jpeg", "image/jpg"},
    "png": {"image/png"},
}

EXPIRING_SOON_DAYS = 30


@dataclass
class IncomingFile:
    filename: str
    content: bytes
    content_type: str | None

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass
class RetrievedFile:
    stream: BinaryIO
    filename: str
    mime_type: str
    size: int
    last_modified: datetime


def _as_date_string(value, field_name: str) -> str | None:
    """Normalise a date, datetime or ISO string to ``YYYY-MM-DD``."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).strip()
    try:
        return date.fromisoformat(text).isoformat()
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date().isoformat()
    except ValueError:
        raise ValidationError(f"Invalid {field_name}: '{text}' is not an ISO date", code="date") from None


def validity_status(record: FileRecord, today: date) -> str:
    expiry = date.fromisoformat(record.expiry_date) if record.expiry_date else None
    issue = date.fromisoformat(record.issue_date) if record.issue_date else None
    if expiry and expiry < today:
        return "expired"
    if issue and issue > today:
        return "future"
    if expiry and expiry <= today + timedelta(days=EXPIRING_SOON_DAYS):
        return "expiring_soon"
    return "valid"


class FileStore:
    def __init__(self, containers: ContainerManager):
        self.containers = containers
        self.db: Session = containers.db
        self.backend = containers.backend
        self.clock = containers.clock
        self.locks = containers.locks

    # ----- validation -----

    def validate(self, file: IncomingFile) -> None:
        if file.size == 0:
            raise ValidationError("Empty file", code="empty_file")
        if file.size > settings.max_upload_bytes:
            raise ValidationError(
                f"File size exceeds maximum allowed size of {settings.max_upload_bytes} bytes",
                code="file_too_large",
            )

        extension = file_extension(file.filename or "")
        if extension not in settings.allowed_extensions:
            allowed = ", ".join(settings.allowed_extensions)
            raise ValidationError(f"File type not allowed. Permitted extensions: {allowed}", code="extension")

        mime_type = (file.content_type or "").split(";")[0].strip().lower()
        if mime_type not in settings.allowed_mime_types:
            raise ValidationError(f"Invalid file type. MIME type '{mime_type}' is not allowed", code="mime_type")
        if mime_type not in EXTENSION_MIME_TYPES.get(extension, {mime_type}):
            raise ValidationError(
                f"Extension '.{extension}' does not match MIME type '{mime_type}'", code="mime_type"
            )

        header = file.content[:HEADER_BYTES]
        if header.startswith(EXECUTABLE_SIGNATURES):
            raise ValidationError("File failed security validation: executable content", code="signature")
        lowered = header.lower()
        if any(marker in lowered for marker in SCRIPT_MARKERS):
            raise ValidationError("File failed security validation: script content", code="signature")

    def _scan(self, record: FileRecord) -> None:
        """Post-write check that the stored bytes match the declared type family."""
        data = self.backend.read_bytes(record.storage_path)
        if sha256_bytes(data) != record.content_hash:
            raise StorageWriteError("Stored content does not match the uploaded content hash")

        if record.mime_type == "application/pdf":
            if not data.startswith(PDF_MAGIC):
                raise ValidationError("Invalid PDF file format", code="scan")
            if settings.deep_pdf_scan:
                try:
                    reader = pypdf.PdfReader(io.BytesIO(data))
                    page_count = len(reader.pages)
                except Exception as exc:
                    raise ValidationError(f"Invalid PDF file format: {exc}", code="scan") from exc
                if page_count == 0:
                    raise ValidationError("PDF file has no pages", code="scan")
        else:
            if not data.startswith(IMAGE_MAGIC.get(record.mime_type, ())):
                raise ValidationError("Invalid image file", code="scan")

    # ----- helpers -----

    def _transition(self, record: FileRecord, target: FileStatus) -> None:
        current = FileStatus(record.status)
        if target not in FILE_STATUS_TRANSITIONS[current]:
            raise StatusTransitionError(current.value, target.value)
        record.status = target.value
        record.updated_at = self.clock.stamp()

    def _record_event(
        self,
        record: FileRecord,
        action: AccessAction,
        requester: Requester | None = None,
        details: dict | None = None,
    ) -> None:
        self.db.add(
            FileAccessEvent(
                id=str(uuid.uuid4()),
                file_record_id=record.id,
                action=action.value,
                requester_id=requester.id if requester else None,
                ip_address=requester.ip_address if requester else None,
                details=json.dumps(details or {}, sort_keys=True, default=str),
                occurred_at=self.clock.stamp(),
            )
        )
        logger.info(
            "File %s: record=%s employee=%s category=%s version=%s requester=%s",
            action.value,
            record.id,
            record.employee_id,
            record.category,
            record.version_number,
            requester.id if requester else None,
        )

    def find_duplicate(self, employee_pk: str, category: str, content_hash: str) -> FileRecord | None:
        return (
            self.db.query(FileRecord)
            .filter(
                FileRecord.employee_id == employee_pk,
                FileRecord.category == category,
                FileRecord.content_hash == content_hash,
                FileRecord.status == FileStatus.STORED.value,
            )
            .first()
        )

    def next_version(self, employee_pk: str, category: str) -> int:
        current = (
            self.db.query(func.max(FileRecord.version_number))
            .filter(FileRecord.employee_id == employee_pk, FileRecord.category == category)
            .scalar()
        )
        return (current or 0) + 1

    def get_record(self, record_id: str) -> FileRecord:
        record = self.db.get(FileRecord, record_id)
        if record is None:
            raise NotFoundError(f"File record not found: {record_id}")
        return record

    # ----- operations -----

    def store(
        self,
        file: IncomingFile,
        employee_id: str,
        category: str,
        metadata: dict | None = None,
        requester: Requester | None = None,
    ) -> FileRecord:
        if category not in CATEGORIES:
            raise ValidationError(f"Unknown category '{category}'", code="category")
        employee = self.containers.get_employee(employee_id)
        self.validate(file)

        metadata = dict(metadata or {})
        issue_date = _as_date_string(metadata.pop("issue_date", None), "issue_date")
        expiry_date = _as_date_string(metadata.pop("expiry_date", None), "expiry_date")
        issue_date = issue_date or self.clock.now().date().isoformat()
        content_hash = sha256_bytes(file.content)
        mime_type = (file.content_type or "").split(";")[0].strip().lower()

        with self.locks.employee(employee.id):
            self.containers.ensure(employee)

            with self.locks.scope(employee.id, category):
                existing = self.find_duplicate(employee.id, category, content_hash)
                if existing:
                    raise DuplicateFileError(existing.version_number, existing.id)

                version = self.next_version(employee.id, category)
                stored_filename = generate_stored_filename(version, file_extension(file.filename))
                now = self.clock.stamp()
                record = FileRecord(
                    id=str(uuid.uuid4()),
                    employee_id=employee.id,
                    category=category,
                    version_number=version,
                    original_filename=file.filename,
                    stored_filename=stored_filename,
                    storage_path=f"{category_path(employee.id, category)}/{stored_filename}",
                    mime_type=mime_type,
                    file_size=file.size,
                    content_hash=content_hash,
                    status=FileStatus.PENDING.value,
                    uploaded_by=requester.id if requester else None,
                    issue_date=issue_date,
                    expiry_date=expiry_date,
                    created_at=now,
                    updated_at=now,
                )
                record.meta = {
                    **metadata,
                    "ip_address": requester.ip_address if requester else None,
                    "user_agent": requester.user_agent if requester else None,
                    "upload_session_id": str(uuid.uuid4()),
                    "security_scan_status": "pending",
                }
                self.db.add(record)
                try:
                    self.db.commit()
                except IntegrityError as exc:
                    # The unique indexes are the backstop if another process raced us.
                    self.db.rollback()
                    existing = self.find_duplicate(employee.id, category, content_hash)
                    if existing:
                        raise DuplicateFileError(existing.version_number, existing.id) from exc
                    raise StorageWriteError(f"Concurrent upload conflict for {category}") from exc

            try:
                self.backend.write(record.storage_path, file.content)
                self._scan(record)
                self._transition(record, FileStatus.STORED)
                record.uploaded_at = self.clock.stamp()
                record.meta = {
                    **record.meta,
                    "security_scan_status": "passed",
                    "storage_confirmed_at": record.uploaded_at,
                }
                self._record_event(record, AccessAction.UPLOADED, requester, {"file_size": file.size, "version": version})
                self.db.commit()
            except Exception as exc:
                self.db.rollback()
                self._fail(record, exc)
                raise

            self.containers.sync(employee)
            return record

    def _fail(self, record: FileRecord, exc: Exception) -> None:
        try:
            if self.backend.exists(record.storage_path):
                self.backend.delete(record.storage_path)
        except StorageWriteError as cleanup_exc:
            logger.error("Could not remove partial blob %s: %s", record.storage_path, cleanup_exc)
        self._transition(record, FileStatus.FAILED)
        meta = record.meta
        if isinstance(exc, ValidationError):
            meta["security_scan_status"] = "failed"
        record.meta = {
            **meta,
            "error": str(exc),
            "failed_at": self.clock.stamp(),
        }
        self.db.commit()
        logger.error(
            "File storage failed: employee=%s category=%s record=%s error=%s",
            record.employee_id,
            record.category,
            record.id,
            exc,
        )

    def retrieve(self, record: FileRecord, requester: Requester | None) -> RetrievedFile:
        if not can_retrieve(record, record.employee, requester):
            raise AccessDeniedError("Access denied to this file")
        if record.status != FileStatus.STORED.value:
            raise NotFoundError("File not found")
        if not self.backend.exists(record.storage_path):
            raise NotFoundError("File not found on storage")

        stream = self.backend.read(record.storage_path)
        self._record_event(record, AccessAction.ACCESSED, requester, {"access_method": "download"})
        self.db.commit()
        return RetrievedFile(
            stream=stream,
            filename=record.original_filename,
            mime_type=record.mime_type,
            size=record.file_size,
            last_modified=self.backend.last_modified(record.storage_path),
        )

    def delete(self, record: FileRecord, requester: Requester | None, reason: dict | str | None = None) -> FileRecord:
        if not can_delete(record, requester):
            raise AccessDeniedError("Insufficient permissions to delete this file")
        if isinstance(reason, str):
            reason = {"reason": reason}

        employee = record.employee
        with self.locks.employee(record.employee_id):
            if record.status != FileStatus.STORED.value:
                raise StatusTransitionError(record.status, FileStatus.DELETED.value)

            archived_to = None
            if self.backend.exists(record.storage_path):
                archived_to = archive_path(record.stored_filename, self.clock.now())
                self.backend.move(record.storage_path, archived_to)
            else:
                logger.warning("Deleting record %s whose blob is already missing", record.id)

            self._transition(record, FileStatus.DELETED)
            record.meta = {
                **record.meta,
                "deleted_at": self.clock.stamp(),
                "deleted_by": requester.id,
                "deletion_reason": reason or {},
                "archived_to": archived_to,
            }
            self._record_event(record, AccessAction.DELETED, requester, {"archived_to": archived_to, "reason": reason or {}})
            self.db.commit()

            self.containers.sync(employee)
        return record

    def backup(self, record: FileRecord, requester: Requester | None = None) -> str:
        if record.status != FileStatus.STORED.value:
            raise NotFoundError("Only stored files can be backed up")
        target = backup_path(record.employee_id, record.stored_filename, self.clock.now())
        self.backend.copy(record.storage_path, target)
        record.meta = {**record.meta, "backup_path": target, "backed_up_at": self.clock.stamp()}
        record.updated_at = self.clock.stamp()
        self._record_event(record, AccessAction.BACKED_UP, requester, {"backup_path": target})
        self.db.commit()
        return target

    def verify(self, record: FileRecord) -> dict:
        """Re-hash the stored blob and compare against the recorded digest."""
        if not self.backend.exists(record.storage_path):
            raise NotFoundError("File missing from storage")
        with self.backend.read(record.storage_path) as stream:
            actual_hash = sha256_stream(stream)
        return {
            "verified": actual_hash == record.content_hash,
            "filename": record.original_filename,
            "stored_hash": record.content_hash,
            "actual_hash": actual_hash,
        }

    def versions(self, employee_id: str, category: str, include_all: bool = False) -> list[FileRecord]:
        employee = self.containers.get_employee(employee_id)
        query = self.db.query(FileRecord).filter(
            FileRecord.employee_id == employee.id, FileRecord.category == category
        )
        if not include_all:
            query = query.filter(FileRecord.status == FileStatus.STORED.value)
        return query.order_by(FileRecord.version_number.desc()).all()

    def validity(self, record: FileRecord) -> str:
        return validity_status(record, self.clock.now().date())

    def is_latest_version(self, record: FileRecord) -> bool:
        latest = (
            self.db.query(func.max(FileRecord.version_number))
            .filter(
                FileRecord.employee_id == record.employee_id,
                FileRecord.category == record.category,
                FileRecord.status == FileStatus.STORED.value,
            )
            .scalar()
        )
        return record.version_number == latest

    def backup_employee_files(self, employee: Employee) -> dict:
        results = {"backed_up": 0, "failed": 0, "total_size": 0, "errors": []}
        for record in self.containers.stored_records(employee):
            try:
                self.backup(record)
                results["backed_up"] += 1
                results["total_size"] += record.file_size
            except ContainerError as exc:
                self.db.rollback()
                results["failed"] += 1
                results["errors"].append(f"File {record.id}: {exc}")
        return results

    def cleanup_employee_files(self, employee: Employee, requester: Requester) -> dict:
        """Archive every stored file of an employee, e.g. when they leave."""
        results = {"archived": 0, "failed": 0, "errors": []}
        for record in self.containers.stored_records(employee):
            try:
                self.delete(record, requester, {"reason": "employee_deleted", "employee_id": employee.employee_id})
                results["archived"] += 1
            except ContainerError as exc:
                self.db.rollback()
                results["failed"] += 1
                results["errors"].append(f"File {record.id}: {exc}")
        return results

    def statistics(self) -> dict:
        stored = self.db.query(FileRecord).filter(FileRecord.status == FileStatus.STORED.value)
        total_files = stored.count()
        total_size = stored.with_entities(func.coalesce(func.sum(FileRecord.file_size), 0)).scalar()
        file_types = dict(
            stored.with_entities(FileRecord.mime_type, func.count(FileRecord.id)).group_by(FileRecord.mime_type).all()
        )
        employees = stored.with_entities(func.count(func.distinct(FileRecord.employee_id))).scalar()
        return {
            "total_files": total_files,
            "total_size": total_size,
            "total_employees_with_files": employees,
            "file_types": file_types,
            "average_file_size": round(total_size / total_files, 2) if total_files else 0,
            "oldest_file": stored.with_entities(func.min(FileRecord.uploaded_at)).scalar(),
            "newest_file": stored.with_entities(func.max(FileRecord.uploaded_at)).scalar(),
        }
