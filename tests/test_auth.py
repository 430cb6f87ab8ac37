"""Tests for API key extraction and identity resolution."""

import pytest

from shared.errors import (
    AUTH_FAILED,
    AuthInvalidError,
    AuthMissingError,
    AuthOwnerInvalidError,
)
from shared.models import ApiKeyIdentity, CredentialRecord, ExecutionContext
from mcp_server.auth import (
    CredentialEntry,
    IdentityResolver,
    InMemoryCredentialStore,
    extract_api_key,
    hash_api_key,
)


def make_store() -> InMemoryCredentialStore:
    return InMemoryCredentialStore([
        CredentialEntry(id="key-1", organization_id="org_A", owner_user_id="u1", key="k1"),
        CredentialEntry(id="key-2", organization_id="org_A", key="k-no-owner"),
        CredentialEntry(
            id="key-3", organization_id="org_A", owner_user_id="u2",
            key="k-moved", claimed_organization_id="org_B",
        ),
        CredentialEntry(id="key-4", organization_id="org_A", owner_user_id="u2", key="k-old", revoked=True),
        CredentialEntry(
            id="key-5", organization_id="org_B", owner_user_id="u9",
            key_sha256=hash_api_key("k9"),
        ),
    ])


class TestExtractApiKey:
    """Tests for header extraction."""

    def test_x_api_key(self):
        assert extract_api_key({"x-api-key": " k1 "}) == "k1"

    def test_bearer(self):
        assert extract_api_key({"authorization": "Bearer k1"}) == "k1"
        assert extract_api_key({"authorization": "bearer   k1"}) == "k1"

    def test_x_api_key_wins(self):
        headers = {"x-api-key": "from-header", "authorization": "Bearer from-bearer"}
        assert extract_api_key(headers) == "from-header"

    def test_blank_header_falls_back_to_bearer(self):
        assert extract_api_key({"x-api-key": "  ", "authorization": "Bearer k1"}) == "k1"

    def test_missing(self):
        assert extract_api_key({}) == ""
        assert extract_api_key({"authorization": "Basic dXNlcjpwYXNz"}) == ""
        assert extract_api_key({"authorization": "Bearer "}) == ""


class TestInMemoryCredentialStore:
    """Tests for the in-memory credential store."""

    @pytest.mark.asyncio
    async def test_authenticate_known_key(self):
        store = make_store()

        identity = await store.authenticate("k1")

        assert identity == ApiKeyIdentity(api_key_id="key-1", organization_id="org_A", key_prefix="k1")

    @pytest.mark.asyncio
    async def test_digest_only_entry(self):
        identity = await make_store().authenticate("k9")
        assert identity.api_key_id == "key-5"
        assert identity.key_prefix == ""

    @pytest.mark.asyncio
    async def test_revoked_key_is_unknown_but_record_remains(self):
        store = make_store()

        assert await store.authenticate("k-old") is None
        assert await store.get_record("key-4") == CredentialRecord(
            id="key-4", organization_id="org_A", owner_user_id="u2"
        )

    def test_entry_without_key_rejected(self):
        with pytest.raises(ValueError, match="neither key nor key_sha256"):
            InMemoryCredentialStore([CredentialEntry(id="x", organization_id="org_A")])

    def test_from_yaml(self, tmp_path):
        path = tmp_path / "credentials.yaml"
        path.write_text(
            "api_keys:\n"
            "  - id: key-1\n"
            "    organization_id: org_A\n"
            "    owner_user_id: u1\n"
            "    key: k1\n"
        )

        store = InMemoryCredentialStore.from_yaml(path)

        assert len(store) == 1

    def test_from_missing_yaml_is_empty(self, tmp_path):
        assert len(InMemoryCredentialStore.from_yaml(tmp_path / "nope.yaml")) == 0


class TestIdentityResolver:
    """Tests for the identity resolution chain."""

    def setup_method(self):
        self.resolver = IdentityResolver(make_store())

    @pytest.mark.asyncio
    async def test_valid_key(self):
        context = await self.resolver.resolve("k1")
        assert context == ExecutionContext(organization_id="org_A", acting_user_id="u1")

    @pytest.mark.asyncio
    async def test_missing_key(self):
        with pytest.raises(AuthMissingError) as exc_info:
            await self.resolver.resolve("")

        assert exc_info.value.rpc_code == AUTH_FAILED
        assert exc_info.value.http_status == 401
        assert exc_info.value.data == {"error": "Missing API key", "code": "AUTH_MISSING"}

    @pytest.mark.asyncio
    async def test_unknown_key(self):
        with pytest.raises(AuthInvalidError):
            await self.resolver.resolve("nope")

    @pytest.mark.asyncio
    async def test_revoked_key(self):
        with pytest.raises(AuthInvalidError):
            await self.resolver.resolve("k-old")

    @pytest.mark.asyncio
    async def test_missing_record(self):
        class OrphanStore:
            async def authenticate(self, api_key):
                return ApiKeyIdentity(api_key_id="ghost", organization_id="org_A")

            async def get_record(self, api_key_id):
                return None

        with pytest.raises(AuthInvalidError):
            await IdentityResolver(OrphanStore()).resolve("k1")

    @pytest.mark.asyncio
    async def test_organization_mismatch(self):
        with pytest.raises(AuthOwnerInvalidError) as exc_info:
            await self.resolver.resolve("k-moved")
        assert exc_info.value.code == "AUTH_OWNER_INVALID"

    @pytest.mark.asyncio
    async def test_ownerless_key(self):
        with pytest.raises(AuthOwnerInvalidError):
            await self.resolver.resolve("k-no-owner")

    @pytest.mark.asyncio
    async def test_each_resolution_is_a_new_context(self):
        first = await self.resolver.resolve("k1")
        second = await self.resolver.resolve("k1")

        assert first == second
        assert first is not second
