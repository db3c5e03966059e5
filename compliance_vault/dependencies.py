from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from compliance_vault.database import get_db
from compliance_vault.services.access_gateway import AccessGateway
from compliance_vault.services.access_policy import Requester
from compliance_vault.services.blob_backend import LocalBlobBackend
from compliance_vault.services.bulk_service import BulkOperationService
from compliance_vault.services.cache import KeyValueCache
from compliance_vault.services.container_service import ContainerManager
from compliance_vault.services.file_store import FileStore
from compliance_vault.services.health_service import HealthService
from compliance_vault.services.locks import LockRegistry
from compliance_vault.utils.clock import Clock

# Process-wide state shared by every request.
clock = Clock()
locks = LockRegistry()
token_cache = KeyValueCache(clock)


async def get_requester(
    request: Request,
    x_user_id: str | None = Header(None),
    x_user_role: str | None = Header(None),
    x_user_email: str | None = Header(None),
) -> Requester:
    # Identity is established upstream; this layer only reads it.
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return Requester(
        id=x_user_id,
        role=x_user_role,
        email=x_user_email,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def get_containers(db: Session = Depends(get_db)) -> ContainerManager:
    return ContainerManager(db, LocalBlobBackend(), clock=clock, locks=locks)


def get_file_store(containers: ContainerManager = Depends(get_containers)) -> FileStore:
    return FileStore(containers)


def get_health_service(containers: ContainerManager = Depends(get_containers)) -> HealthService:
    return HealthService(containers)


def get_bulk_service(
    containers: ContainerManager = Depends(get_containers),
    health: HealthService = Depends(get_health_service),
) -> BulkOperationService:
    return BulkOperationService(containers, health)


def get_gateway(files: FileStore = Depends(get_file_store)) -> AccessGateway:
    return AccessGateway(files, token_cache)


async def require_elevated(requester: Requester = Depends(get_requester)) -> Requester:
    if not requester.is_elevated:
        raise HTTPException(status_code=403, detail="Administrative role required")
    return requester


async def get_optional_requester(
    request: Request,
    x_user_id: str | None = Header(None),
    x_user_role: str | None = Header(None),
    x_user_email: str | None = Header(None),
) -> Requester | None:
    if not x_user_id:
        return None
    return await get_requester(request, x_user_id, x_user_role, x_user_email)
