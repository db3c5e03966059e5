from datetime import datetime

CONTAINERS_ROOT = "containers"
ARCHIVE_ROOT = "archived"
BACKUP_ROOT = "backups"
QUARANTINE_ROOT = "quarantine"
METADATA_FILENAME = "container_metadata.json"


def file_extension(filename: str) -> str:
    base = filename.rsplit("/", 1)[-1].rsplit("\\", 1)[-1]
    if "." not in base.strip("."):
        return ""
    return base.rsplit(".", 1)[-1].lower()


def container_path(employee_pk: str) -> str:
    return f"{CONTAINERS_ROOT}/employee-{employee_pk}"


def category_path(employee_pk: str, category: str) -> str:
    return f"{container_path(employee_pk)}/{category}"


def metadata_path(employee_pk: str) -> str:
    return f"{container_path(employee_pk)}/{METADATA_FILENAME}"


def archive_path(stored_filename: str, when: datetime) -> str:
    return f"{ARCHIVE_ROOT}/{when:%Y/%m}/{stored_filename}"


def backup_path(employee_pk: str, stored_filename: str, when: datetime) -> str:
    return f"{BACKUP_ROOT}/{when:%Y/%m/%d}/employee-{employee_pk}/{stored_filename}"


def quarantine_path(employee_pk: str, relative: str, when: datetime) -> str:
    return f"{QUARANTINE_ROOT}/employee-{employee_pk}/{when:%Y%m%dT%H%M%S}/{relative}"


def rebuild_archive_path(employee_pk: str, when: datetime) -> str:
    return f"{ARCHIVE_ROOT}/containers/{when:%Y/%m}/employee-{employee_pk}-{when:%Y%m%dT%H%M%S%f}"
