"""Blob storage for container files.

Paths are forward-slash strings relative to the backend root, e.g.
``containers/employee-<id>/certificates/v1_<random>.pdf``.
"""
import logging
import os
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Protocol

from compliance_vault.config import settings
from compliance_vault.exceptions import NotFoundError, StorageWriteError

logger = logging.getLogger(__name__)


class BlobBackend(Protocol):
    def write(self, path: str, content: bytes) -> None: ...
    def read(self, path: str) -> BinaryIO: ...
    def read_bytes(self, path: str) -> bytes: ...
    def exists(self, path: str) -> bool: ...
    def delete(self, path: str) -> None: ...
    def move(self, src: str, dst: str) -> None: ...
    def copy(self, src: str, dst: str) -> None: ...
    def make_directory(self, path: str) -> None: ...
    def is_directory(self, path: str) -> bool: ...
    def list_directories(self, path: str) -> list[str]: ...
    def list_files(self, path: str, recursive: bool = False) -> list[str]: ...
    def size(self, path: str) -> int: ...
    def last_modified(self, path: str) -> datetime: ...


class LocalBlobBackend:
    """Private on-disk storage rooted at ``settings.blob_root``."""

    def __init__(self, root: Path | None = None):
        self.root = (root or settings.blob_root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        full = (self.root / path).resolve()
        if full != self.root and self.root not in full.parents:
            raise StorageWriteError(f"Path escapes storage root: {path}")
        return full

    def _relative(self, full: Path) -> str:
        return full.relative_to(self.root).as_posix()

    def write(self, path: str, content: bytes) -> None:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            # Write to a sibling temp file so readers never see a partial blob.
            fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".upload-")
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(content)
                os.replace(tmp_name, target)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            logger.error("Blob write failed for %s: %s", path, exc)
            raise StorageWriteError(f"Failed to write {path}") from exc

    def read(self, path: str) -> BinaryIO:
        target = self._resolve(path)
        if not target.is_file():
            raise NotFoundError(f"File not found on storage: {path}")
        return open(target, "rb")

    def read_bytes(self, path: str) -> bytes:
        with self.read(path) as fh:
            return fh.read()

    def exists(self, path: str) -> bool:
        return self._resolve(path).exists()

    def is_directory(self, path: str) -> bool:
        return self._resolve(path).is_dir()

    def delete(self, path: str) -> None:
        target = self._resolve(path)
        try:
            if target.is_dir():
                shutil.rmtree(target)
            else:
                target.unlink(missing_ok=True)
        except OSError as exc:
            raise StorageWriteError(f"Failed to delete {path}") from exc

    def move(self, src: str, dst: str) -> None:
        source = self._resolve(src)
        target = self._resolve(dst)
        if not source.exists():
            raise NotFoundError(f"File not found on storage: {src}")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(source), str(target))
        except OSError as exc:
            raise StorageWriteError(f"Failed to move {src} to {dst}") from exc

    def copy(self, src: str, dst: str) -> None:
        source = self._resolve(src)
        target = self._resolve(dst)
        if not source.is_file():
            raise NotFoundError(f"File not found on storage: {src}")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, target)
        except OSError as exc:
            raise StorageWriteError(f"Failed to copy {src} to {dst}") from exc

    def make_directory(self, path: str) -> None:
        try:
            self._resolve(path).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageWriteError(f"Failed to create directory {path}") from exc

    def list_directories(self, path: str) -> list[str]:
        target = self._resolve(path)
        if not target.is_dir():
            return []
        return sorted(self._relative(p) for p in target.iterdir() if p.is_dir())

    def list_files(self, path: str, recursive: bool = False) -> list[str]:
        target = self._resolve(path)
        if not target.is_dir():
            return []
        pattern = target.rglob("*") if recursive else target.iterdir()
        return sorted(
            self._relative(p)
            for p in pattern
            if p.is_file() and not p.name.startswith(".upload-")
        )

    def size(self, path: str) -> int:
        target = self._resolve(path)
        if not target.is_file():
            raise NotFoundError(f"File not found on storage: {path}")
        return target.stat().st_size

    def last_modified(self, path: str) -> datetime:
        target = self._resolve(path)
        if not target.exists():
            raise NotFoundError(f"File not found on storage: {path}")
        return datetime.fromtimestamp(target.stat().st_mtime, tz=timezone.utc)
