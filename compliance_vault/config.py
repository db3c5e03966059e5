from pathlib import Path
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    storage_path: Path = Path.home() / "EmployeeContainers"
    # Uploads above this size are rejected before hashing or writing.
    max_upload_bytes: int = 5 * 1024 * 1024  # 5 MiB
    allowed_mime_types: list[str] = [
        "application/pdf",
        "image/jpeg",
        "image/jpg",
        "image/png",
    ]
    allowed_extensions: list[str] = ["pdf", "jpg", "jpeg", "png"]
    deep_pdf_scan: bool = True
    container_version: str = "1.1"
    metadata_count_tolerance: int = 0
    # Download links are short-lived and, by default, single use.
    token_ttl_minutes: int = 60
    token_retention_seconds: int = 3600
    bind_token_to_ip: bool = True
    single_use_tokens: bool = True
    elevated_roles: list[str] = ["admin", "hr"]
    bulk_batch_size: int = 50
    api_prefix: str = "/api/v1"

    @property
    def db_path(self) -> Path:
        return self.storage_path / "db.sqlite"

    @property
    def blob_root(self) -> Path:
        return self.storage_path / "private"

    model_config = {"env_prefix": "CONTAINERS_"}


settings = Settings()
