"""Tests for the credential stores."""

import json
import os
import stat

import pytest

from mcpeek.auth.client.services.storage import (
    FileCredentialStore,
    InMemoryCredentialStore,
)

IDENTITY = "https://mcp.example.com/mcp"
OTHER = "https://other.example.com"


class TestInMemoryCredentialStore:
    def setup_method(self):
        self.store = InMemoryCredentialStore()

    async def test_set_and_get(self):
        # Act
        await self.store.set(IDENTITY, "access", {"token": "t"})

        # Assert
        assert await self.store.get(IDENTITY, "access") == {"token": "t"}
        assert await self.store.get(IDENTITY, "refresh") is None
        assert await self.store.get(OTHER, "access") is None

    async def test_delete_single_key(self):
        # Arrange
        await self.store.set(IDENTITY, "access", {"token": "t"})
        await self.store.set(IDENTITY, "pkce", {"verifier": "v"})

        # Act
        await self.store.delete(IDENTITY, "pkce")

        # Assert
        assert await self.store.get(IDENTITY, "pkce") is None
        assert await self.store.get(IDENTITY, "access") == {"token": "t"}

    async def test_delete_identity_leaves_others(self):
        # Arrange
        await self.store.set(IDENTITY, "access", {"token": "t"})
        await self.store.set(OTHER, "access", {"token": "u"})

        # Act
        await self.store.delete(IDENTITY)

        # Assert
        assert self.store.identities() == [OTHER]

    async def test_delete_missing_is_a_no_op(self):
        # Act
        await self.store.delete(IDENTITY, "access")
        await self.store.delete(IDENTITY)

        # Assert
        assert self.store.identities() == []


class TestFileCredentialStore:
    @pytest.fixture
    def path(self, tmp_path):
        return tmp_path / "nested" / "credentials.json"

    async def test_values_survive_a_new_instance(self, path):
        # Arrange
        await FileCredentialStore(path).set(IDENTITY, "client", "client-123")

        # Act
        value = await FileCredentialStore(path).get(IDENTITY, "client")

        # Assert
        assert value == "client-123"

    async def test_file_is_private_to_the_user(self, path):
        # Act
        await FileCredentialStore(path).set(IDENTITY, "refresh", {"refresh_token": "r"})

        # Assert
        mode = stat.S_IMODE(os.stat(path).st_mode)
        assert mode == 0o600

    async def test_file_layout_is_keyed_by_identity(self, path):
        # Arrange
        store = FileCredentialStore(path)

        # Act
        await store.set(IDENTITY, "refresh", {"refresh_token": "r", "scope": None})
        await store.set(IDENTITY, "client", "client-123")

        # Assert
        assert json.loads(path.read_text()) == {
            IDENTITY: {
                "refresh": {"refresh_token": "r", "scope": None},
                "client": "client-123",
            }
        }

    async def test_delete_identity(self, path):
        # Arrange
        store = FileCredentialStore(path)
        await store.set(IDENTITY, "client", "client-123")
        await store.set(OTHER, "client", "client-456")

        # Act
        await store.delete(IDENTITY)

        # Assert
        assert await store.get(IDENTITY, "client") is None
        assert await store.get(OTHER, "client") == "client-456"

    async def test_missing_file_reads_as_empty(self, path):
        # Act & Assert
        assert await FileCredentialStore(path).get(IDENTITY, "client") is None

    async def test_corrupt_file_reads_as_empty(self, path):
        # Arrange
        path.parent.mkdir(parents=True)
        path.write_text("{not json")

        # Act & Assert
        assert await FileCredentialStore(path).get(IDENTITY, "client") is None
