import sqlite3
from pathlib import Path
from sqlalchemy import create_engine, event
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from compliance_vault.config import settings


class Base(DeclarativeBase):
    pass


def _set_sqlite_pragmas(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def get_engine(db_path: Path | None = None):
    path = db_path or settings.db_path
    engine = create_engine(
        f"sqlite:///{path}",
        connect_args={"check_same_thread": False},
    )
    event.listen(engine, "connect", _set_sqlite_pragmas)
    return engine


engine = get_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


SCHEMA_SQL = """\
-- ============================================================
-- EMPLOYEES (owned elsewhere; only the container_* columns are
-- written by this service)
-- ============================================================
CREATE TABLE IF NOT EXISTS employees (
    id                     TEXT PRIMARY KEY,
    employee_id            TEXT NOT NULL UNIQUE,
    name                   TEXT NOT NULL,
    email                  TEXT,
    department_id          TEXT,
    status                 TEXT NOT NULL DEFAULT 'active'
                           CHECK(status IN ('active','inactive')),
    container_created_at   TEXT,
    container_status       TEXT NOT NULL DEFAULT 'none'
                           CHECK(container_status IN ('none','active','degraded')),
    container_file_count   INTEGER NOT NULL DEFAULT 0,
    container_last_updated TEXT,
    created_at             TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ','now'))
);

CREATE INDEX IF NOT EXISTS idx_employees_container ON employees(container_status, container_created_at);
CREATE INDEX IF NOT EXISTS idx_employees_department ON employees(department_id);

-- ============================================================
-- FILE RECORDS
-- ============================================================
CREATE TABLE IF NOT EXISTS file_records (
    id                TEXT PRIMARY KEY,
    employee_id       TEXT NOT NULL REFERENCES employees(id) ON DELETE CASCADE,
    category          TEXT NOT NULL
                      CHECK(category IN ('certificates','background_checks','documents','photos')),
    version_number    INTEGER NOT NULL,
    original_filename TEXT NOT NULL,
    stored_filename   TEXT NOT NULL,
    storage_path      TEXT NOT NULL,
    mime_type         TEXT NOT NULL,
    file_size         INTEGER NOT NULL,
    content_hash      TEXT NOT NULL,
    status            TEXT NOT NULL DEFAULT 'pending'
                      CHECK(status IN ('pending','stored','failed','deleted')),
    uploaded_by       TEXT,
    metadata          TEXT NOT NULL DEFAULT '{}',
    issue_date        TEXT,
    expiry_date       TEXT,
    uploaded_at       TEXT,
    created_at        TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ','now')),
    updated_at        TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ','now'))
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_file_records_version
    ON file_records(employee_id, category, version_number);
CREATE UNIQUE INDEX IF NOT EXISTS idx_file_records_stored_hash
    ON file_records(employee_id, category, content_hash) WHERE status = 'stored';
CREATE UNIQUE INDEX IF NOT EXISTS idx_file_records_stored_name ON file_records(stored_filename);
CREATE INDEX IF NOT EXISTS idx_file_records_employee ON file_records(employee_id, status);
CREATE INDEX IF NOT EXISTS idx_file_records_expiry ON file_records(expiry_date, status);

-- ============================================================
-- FILE ACCESS EVENTS
-- ============================================================
CREATE TABLE IF NOT EXISTS file_access_events (
    id             TEXT PRIMARY KEY,
    file_record_id TEXT NOT NULL REFERENCES file_records(id) ON DELETE CASCADE,
    action         TEXT NOT NULL
                   CHECK(action IN ('uploaded','accessed','deleted','backed_up','restored')),
    requester_id   TEXT,
    ip_address     TEXT,
    details        TEXT NOT NULL DEFAULT '{}',
    occurred_at    TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ','now'))
);

CREATE INDEX IF NOT EXISTS idx_access_events_file ON file_access_events(file_record_id);
"""


MIGRATIONS = [
    # v0.2: upload timestamp separate from row creation
    "ALTER TABLE file_records ADD COLUMN uploaded_at TEXT",
]


def init_db(db_path: Path | None = None):
    path = db_path or settings.db_path
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.executescript(SCHEMA_SQL)
    # Run migrations idempotently (ALTER TABLE fails if column exists)
    for migration in MIGRATIONS:
        try:
            conn.execute(migration)
            conn.commit()
        except sqlite3.OperationalError:
            pass  # column already exists
    conn.close()
