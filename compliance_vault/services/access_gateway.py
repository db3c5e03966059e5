"""Short-lived download links for stored files.

A token is an opaque random string mapped, in the key/value cache, to the
file and the requester it was issued for. The cache keeps the entry for a
while past its expiry so a late caller is told the link expired rather
than that it never existed.
"""
import logging
from dataclasses import asdict, dataclass
from datetime import timedelta

from compliance_vault.config import settings
from compliance_vault.enums import FileStatus
from compliance_vault.exceptions import AccessDeniedError, NotFoundError, TokenError, ValidationError
from compliance_vault.models.file_record import FileRecord
from compliance_vault.services.access_policy import Requester, can_retrieve
from compliance_vault.services.cache import KeyValueCache
from compliance_vault.services.file_store import FileStore, RetrievedFile
from compliance_vault.utils.clock import TIMESTAMP_FORMAT, parse_timestamp
from compliance_vault.utils.security import generate_token

logger = logging.getLogger(__name__)

TOKEN_KEY_PREFIX = "secure_file_token:"


@dataclass
class IssuedToken:
    token: str
    url: str
    expires_at: str


def _key(token: str) -> str:
    return TOKEN_KEY_PREFIX + token


class AccessGateway:
    def __init__(self, files: FileStore, cache: KeyValueCache):
        self.files = files
        self.cache = cache
        self.clock = files.clock

    def issue_token(self, record: FileRecord, requester: Requester, ttl_minutes: int | None = None) -> IssuedToken:
        ttl_minutes = settings.token_ttl_minutes if ttl_minutes is None else ttl_minutes
        if ttl_minutes <= 0:
            raise ValidationError("Token lifetime must be positive", code="ttl")
        if not can_retrieve(record, record.employee, requester):
            raise AccessDeniedError("Access denied to this file")
        if record.status != FileStatus.STORED.value:
            raise NotFoundError("File not found")

        token = generate_token()
        expires_at = (self.clock.now() + timedelta(minutes=ttl_minutes)).strftime(TIMESTAMP_FORMAT)
        entry = {
            "file_record_id": record.id,
            "requester": asdict(requester),
            "expires_at": expires_at,
            "issuer_ip": requester.ip_address,
            "state": "active",
        }
        self.cache.put(_key(token), entry, ttl_minutes * 60 + settings.token_retention_seconds)
        logger.info("Issued download token for file %s to %s (expires %s)", record.id, requester.id, expires_at)
        return IssuedToken(
            token=token,
            url=f"/files/secure/{token}/{record.stored_filename}",
            expires_at=expires_at,
        )

    def _entry(self, token: str) -> dict:
        entry = self.cache.get(_key(token))
        if entry is None:
            raise TokenError(TokenError.NOT_FOUND, "Invalid or expired download token")
        if entry["state"] == "revoked":
            raise TokenError(TokenError.REVOKED)
        if entry["state"] == "used":
            raise TokenError(TokenError.REVOKED, "Download token has already been used")
        if parse_timestamp(entry["expires_at"]) <= self.clock.now():
            raise TokenError(TokenError.EXPIRED)
        return entry

    def resolve_token(
        self,
        token: str,
        requester: Requester | None = None,
        ip_address: str | None = None,
    ) -> RetrievedFile:
        """Exchange a token for the file stream.

        Without an explicit requester the identity the token was issued to
        is used. Once the stream is returned, expiry no longer affects it.
        """
        entry = self._entry(token)
        issued_to = Requester(**entry["requester"])
        if requester is not None and requester.id != issued_to.id:
            raise AccessDeniedError("Unauthorized access to secure file")
        ip_address = ip_address or (requester.ip_address if requester else None)
        if settings.bind_token_to_ip and entry["issuer_ip"] and ip_address != entry["issuer_ip"]:
            logger.warning("Download token for file %s presented from %s", entry["file_record_id"], ip_address)
            raise AccessDeniedError("Unauthorized access to secure file")

        record = self.files.get_record(entry["file_record_id"])
        retrieved = self.files.retrieve(record, requester or issued_to)
        if settings.single_use_tokens:
            self._mark(token, entry, "used")
        return retrieved

    def revoke_token(self, token: str) -> None:
        entry = self._entry(token)
        self._mark(token, entry, "revoked")
        logger.info("Revoked download token for file %s", entry["file_record_id"])

    def _mark(self, token: str, entry: dict, state: str) -> None:
        remaining = parse_timestamp(entry["expires_at"]) - self.clock.now()
        ttl = max(int(remaining.total_seconds()), 0) + settings.token_retention_seconds
        self.cache.put(_key(token), {**entry, "state": state}, ttl)
