import struct
import uuid
import zlib
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from fpdf import FPDF
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from compliance_vault.config import settings
from compliance_vault.database import _set_sqlite_pragmas, get_db, init_db
from compliance_vault.dependencies import token_cache
from compliance_vault.main import app
from compliance_vault.models.employee import Employee
from compliance_vault.services.access_gateway import AccessGateway
from compliance_vault.services.access_policy import Requester
from compliance_vault.services.blob_backend import LocalBlobBackend
from compliance_vault.services.bulk_service import BulkOperationService
from compliance_vault.services.cache import KeyValueCache
from compliance_vault.services.container_service import ContainerManager
from compliance_vault.services.file_store import FileStore, IncomingFile
from compliance_vault.services.health_service import HealthService
from compliance_vault.services.locks import LockRegistry
from compliance_vault.utils.clock import Clock


class ManualClock(Clock):
    """Clock that only moves when a test tells it to."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2024, 3, 15, 9, 30, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


def make_pdf(text: str = "Certificate of completion", padding: int = 0) -> bytes:
    pdf = FPDF()
    # Fixed so identical text yields identical bytes.
    pdf.set_creation_date(datetime(2024, 1, 1, tzinfo=timezone.utc))
    pdf.add_page()
    pdf.set_font("Helvetica", size=12)
    pdf.cell(text=text)
    if padding:
        pdf.set_keywords("x" * padding)
    return bytes(pdf.output())


def make_png(seed: int = 0) -> bytes:
    def chunk(tag: bytes, data: bytes) -> bytes:
        return struct.pack(">I", len(data)) + tag + data + struct.pack(">I", zlib.crc32(tag + data) & 0xFFFFFFFF)

    header = struct.pack(">IIBBBBB", 1, 1, 8, 2, 0, 0, 0)
    pixel = zlib.compress(bytes([0, seed % 256, 0, 0]))
    return b"\x89PNG\r\n\x1a\n" + chunk(b"IHDR", header) + chunk(b"IDAT", pixel) + chunk(b"IEND", b"")


@pytest.fixture
def tmp_storage(tmp_path):
    storage = tmp_path / "EmployeeContainers"
    storage.mkdir()
    original = settings.storage_path
    settings.storage_path = storage
    yield storage
    settings.storage_path = original


@pytest.fixture
def test_db(tmp_storage):
    db_path = tmp_storage / "db.sqlite"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    event.listen(engine, "connect", _set_sqlite_pragmas)
    TestSession = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    init_db(db_path)

    def override_get_db():
        db = TestSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestSession
    app.dependency_overrides.clear()
    engine.dispose()


@pytest.fixture
def db(test_db):
    session = test_db()
    yield session
    session.close()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def backend(tmp_storage):
    return LocalBlobBackend(tmp_storage / "private")


@pytest.fixture
def containers(db, backend, clock):
    return ContainerManager(db, backend, clock=clock, locks=LockRegistry())


@pytest.fixture
def file_store(containers):
    return FileStore(containers)


@pytest.fixture
def health(containers):
    return HealthService(containers)


@pytest.fixture
def bulk(containers, health):
    return BulkOperationService(containers, health)


@pytest.fixture
def gateway(file_store, clock):
    return AccessGateway(file_store, KeyValueCache(clock))


@pytest.fixture
def make_employee(db):
    counter = iter(range(1, 10_000))

    def _make(employee_id: str | None = None, **fields) -> Employee:
        n = next(counter)
        employee = Employee(
            id=str(uuid.uuid4()),
            employee_id=employee_id or f"E{n:03d}",
            name=fields.pop("name", f"Employee {n}"),
            email=fields.pop("email", f"employee{n}@example.com"),
            status=fields.pop("status", "active"),
            created_at="2024-01-01T00:00:00Z",
            **fields,
        )
        db.add(employee)
        db.commit()
        return employee

    return _make


@pytest.fixture
def admin():
    return Requester(id="admin-1", role="admin", email="admin@example.com", ip_address="10.0.0.1")


@pytest.fixture
def uploader():
    return Requester(id="clerk-7", role="staff", email="clerk@example.com", ip_address="10.0.0.7")


@pytest.fixture
def stranger():
    return Requester(id="someone-else", role="staff", email="stranger@example.com", ip_address="10.0.0.9")


@pytest.fixture
def pdf_bytes():
    return make_pdf


@pytest.fixture
def png_bytes():
    return make_png


@pytest.fixture
def pdf_file():
    def _make(text: str = "Certificate of completion", filename: str = "certificate.pdf") -> IncomingFile:
        return IncomingFile(filename=filename, content=make_pdf(text), content_type="application/pdf")

    return _make


@pytest.fixture
def client(tmp_storage, test_db):
    token_cache.clear()
    c = TestClient(app)
    yield c
    token_cache.clear()


@pytest.fixture
def admin_headers():
    return {"X-User-Id": "admin-1", "X-User-Role": "admin", "X-User-Email": "admin@example.com"}
