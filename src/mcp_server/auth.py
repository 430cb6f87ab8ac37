"""Authentication for the agent endpoint.

Handles:
- API key extraction (``X-Api-Key`` or ``Authorization: Bearer``)
- The credential store interface and an in-memory implementation
- Identity resolution from API key to execution context
"""

import hashlib
import re
from pathlib import Path
from typing import Mapping, Optional, Protocol

from pydantic import BaseModel, Field

from shared.config import load_yaml_config
from shared.errors import AuthInvalidError, AuthMissingError, AuthOwnerInvalidError
from shared.logging import get_logger
from shared.models import ApiKeyIdentity, CredentialRecord, ExecutionContext

logger = get_logger(__name__)

API_KEY_HEADER = "x-api-key"
AUTH_SCHEMES = "Authorization: Bearer <API_KEY> (or X-Api-Key header)"

_BEARER_RE = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)


def extract_api_key(headers: Mapping[str, str]) -> str:
    """
    Pull the API key out of request headers.

    ``X-Api-Key`` wins when both forms are present. Agent clients differ in
    which one they send, so both are accepted.

    Args:
        headers: Case-insensitive header mapping (e.g. ``request.headers``)

    Returns:
        The stripped key, or an empty string when none was sent
    """
    header_key = (headers.get(API_KEY_HEADER) or "").strip()
    if header_key:
        return header_key

    match = _BEARER_RE.match((headers.get("authorization") or "").strip())
    if match and match.group(1).strip():
        return match.group(1).strip()

    return ""


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def key_prefix(api_key: str, length: int = 12) -> str:
    """Loggable prefix of a key."""
    return api_key[:length]


class CredentialStore(Protocol):
    """Read-only view of the external API key store."""

    async def authenticate(self, api_key: str) -> Optional[ApiKeyIdentity]:
        """Identify a presented key; ``None`` if it is unknown or revoked."""
        ...

    async def get_record(self, api_key_id: str) -> Optional[CredentialRecord]:
        """Fetch the stored record for a key id."""
        ...


class CredentialEntry(BaseModel):
    """One API key as configured for the in-memory store."""
    id: str
    organization_id: str
    owner_user_id: Optional[str] = None
    key: Optional[str] = Field(default=None, description="Plain key (development only)")
    key_sha256: Optional[str] = Field(default=None, description="SHA-256 hex digest of the key")
    claimed_organization_id: Optional[str] = Field(
        default=None,
        description="Organization the key itself claims, when it differs from the record",
    )
    revoked: bool = False


class InMemoryCredentialStore:
    """
    Credential store backed by a dict of key digests.

    Raw keys are hashed on load and never kept.
    """

    def __init__(self, entries: Optional[list[CredentialEntry]] = None) -> None:
        self._by_digest: dict[str, ApiKeyIdentity] = {}
        self._records: dict[str, CredentialRecord] = {}
        for entry in entries or []:
            self.add(entry)

    def add(self, entry: CredentialEntry) -> None:
        digest = entry.key_sha256 or (hash_api_key(entry.key) if entry.key else None)
        if digest is None:
            raise ValueError(f"Credential '{entry.id}' has neither key nor key_sha256")

        self._records[entry.id] = CredentialRecord(
            id=entry.id,
            organization_id=entry.organization_id,
            owner_user_id=entry.owner_user_id,
        )
        if not entry.revoked:
            self._by_digest[digest] = ApiKeyIdentity(
                api_key_id=entry.id,
                organization_id=entry.claimed_organization_id or entry.organization_id,
                key_prefix=key_prefix(entry.key) if entry.key else "",
            )

    def __len__(self) -> int:
        return len(self._records)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "InMemoryCredentialStore":
        """Load ``api_keys: [...]`` entries from a YAML file."""
        data = load_yaml_config(path)
        entries = [CredentialEntry(**item) for item in data.get("api_keys", [])]
        logger.info("Credentials loaded", path=str(path), count=len(entries))
        return cls(entries)

    async def authenticate(self, api_key: str) -> Optional[ApiKeyIdentity]:
        return self._by_digest.get(hash_api_key(api_key))

    async def get_record(self, api_key_id: str) -> Optional[CredentialRecord]:
        return self._records.get(api_key_id)


class IdentityResolver:
    """
    Turns an opaque API key into an execution context.

    The acting user is always the key's recorded owner; callers can never
    supply an identity of their own.
    """

    def __init__(self, store: CredentialStore) -> None:
        self.store = store

    async def resolve(self, api_key: str) -> ExecutionContext:
        """
        Resolve an API key.

        Args:
            api_key: Key as extracted from the request headers

        Returns:
            A new ExecutionContext for this request

        Raises:
            AuthMissingError: No key was presented
            AuthInvalidError: Unknown key, or no record for its id
            AuthOwnerInvalidError: Organization mismatch or ownerless key
        """
        if not api_key:
            raise AuthMissingError()

        identity = await self.store.authenticate(api_key)
        if identity is None:
            logger.warning("Unknown API key", key_prefix=key_prefix(api_key, 6))
            raise AuthInvalidError()

        record = await self.store.get_record(identity.api_key_id)
        if record is None:
            logger.warning("API key record not found", api_key_id=identity.api_key_id)
            raise AuthInvalidError()

        if record.organization_id != identity.organization_id:
            logger.warning(
                "API key organization mismatch",
                api_key_id=identity.api_key_id,
                claimed_organization_id=identity.organization_id,
                recorded_organization_id=record.organization_id,
            )
            raise AuthOwnerInvalidError()

        if not record.owner_user_id:
            logger.warning("API key has no owner", api_key_id=identity.api_key_id)
            raise AuthOwnerInvalidError()

        return ExecutionContext(
            organization_id=identity.organization_id,
            acting_user_id=record.owner_user_id,
        )
