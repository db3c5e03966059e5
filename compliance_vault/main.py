import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from compliance_vault import __version__
from compliance_vault.config import settings
from compliance_vault.database import init_db
from compliance_vault.exceptions import (
    AccessDeniedError,
    ContainerError,
    DuplicateFileError,
    InconsistencyError,
    NotFoundError,
    TokenError,
    ValidationError,
)
from compliance_vault.routers import containers, files

logger = logging.getLogger("compliance_vault")

VALIDATION_STATUS = {"file_too_large": 413, "extension": 415, "mime_type": 415}


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info("Employee container store ready at %s", settings.storage_path)
    yield


app = FastAPI(
    title="Employee Document Containers",
    description="Per-employee versioned document storage with health checks and secure access",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(containers.router, prefix=settings.api_prefix)
app.include_router(files.router, prefix=settings.api_prefix)


def _status_for(exc: ContainerError) -> int:
    if isinstance(exc, ValidationError):
        return VALIDATION_STATUS.get(exc.code, 400)
    if isinstance(exc, DuplicateFileError):
        return 409
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, AccessDeniedError):
        return 403
    if isinstance(exc, TokenError):
        return 404 if exc.reason == TokenError.NOT_FOUND else 410
    if isinstance(exc, InconsistencyError):
        return 409
    return 500


@app.exception_handler(ContainerError)
async def container_error_handler(request: Request, exc: ContainerError):
    status_code = _status_for(exc)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    body = {"detail": str(exc)}
    if isinstance(exc, ValidationError):
        body["code"] = exc.code
    elif isinstance(exc, DuplicateFileError):
        body["existing_version"] = exc.existing_version
        body["existing_id"] = exc.existing_id
    elif isinstance(exc, TokenError):
        body["reason"] = exc.reason
    return JSONResponse(status_code=status_code, content=body)


@app.get("/health")
async def health():
    return {"status": "ok", "version": __version__}
