"""Unit tests for the local and Supabase snapshot stores."""

import asyncio
import json

import pytest

from agentic_sql.config import StorageConfig
from agentic_sql.config_constants import SnapshotBackend
from agentic_sql.domain.errors import BadRequestError, ConfigurationError, NotFoundError
from agentic_sql.repositories.snapshot_store import (
    LocalSnapshotStore,
    SupabaseSnapshotStore,
    create_snapshot_store,
)


class TestLocalSnapshotStore:

    @pytest.mark.asyncio
    async def test_save_and_load(self, tmp_path):
        store = LocalSnapshotStore(str(tmp_path / "snaps"))

        record = await store.save("sales", "Sales", b"image-bytes")

        assert record.size_bytes == len(b"image-bytes")
        assert record.name == "Sales"
        assert await store.load("sales") == b"image-bytes"
        assert await store.exists("sales")
        assert (tmp_path / "snaps" / "sales.sqlite").exists()
        metadata = json.loads((tmp_path / "snaps" / "sales.json").read_text())
        assert metadata["database_id"] == "sales"

    @pytest.mark.asyncio
    async def test_created_at_preserved(self, tmp_path):
        store = LocalSnapshotStore(str(tmp_path))

        first = await store.save("sales", "Sales", b"v1")
        second = await store.save("sales", None, b"version-two")

        assert second.created_at == first.created_at
        assert second.last_modified >= first.last_modified
        assert second.name == "Sales"
        assert await store.load("sales") == b"version-two"

    @pytest.mark.asyncio
    async def test_concurrent_saves_of_one_id(self, tmp_path):
        """Overlapping saves each write their own temp file; one complete image wins."""
        store = LocalSnapshotStore(str(tmp_path))
        images = [f"version-{i}".encode() * 1000 for i in range(8)]

        records = await asyncio.gather(*[store.save("sales", "Sales", image) for image in images])

        assert len(records) == 8
        assert await store.load("sales") in images
        assert list(tmp_path.glob("*.tmp")) == []
        assert [r.database_id for r in await store.list()] == ["sales"]

    @pytest.mark.asyncio
    async def test_list_most_recent_first(self, tmp_path):
        store = LocalSnapshotStore(str(tmp_path))
        await store.save("older", None, b"a")
        await store.save("newer", None, b"b")

        records = await store.list()

        assert [r.database_id for r in records] == ["newer", "older"]

    @pytest.mark.asyncio
    async def test_list_empty_directory(self, tmp_path):
        assert await LocalSnapshotStore(str(tmp_path / "missing")).list() == []

    @pytest.mark.asyncio
    async def test_missing_snapshot(self, tmp_path):
        store = LocalSnapshotStore(str(tmp_path))

        assert not await store.exists("nope")
        with pytest.raises(NotFoundError):
            await store.load("nope")
        with pytest.raises(NotFoundError):
            await store.delete("nope")

    @pytest.mark.asyncio
    async def test_delete(self, tmp_path):
        store = LocalSnapshotStore(str(tmp_path))
        await store.save("sales", None, b"x")

        await store.delete("sales")

        assert not await store.exists("sales")
        assert not (tmp_path / "sales.json").exists()

    @pytest.mark.asyncio
    async def test_unsafe_id_rejected(self, tmp_path):
        store = LocalSnapshotStore(str(tmp_path))
        with pytest.raises(BadRequestError):
            await store.save("../escape", None, b"x")


class TestSupabaseSnapshotStore:

    @pytest.mark.asyncio
    async def test_save_load_list_delete(self, fake_storage_client):
        store = SupabaseSnapshotStore(fake_storage_client, bucket="databases")

        await store.save("sales", "Sales", b"image")

        assert set(fake_storage_client.objects) == {"sales.sqlite", "sales.json"}
        assert await store.load("sales") == b"image"
        assert await store.exists("sales")
        assert [r.name for r in await store.list()] == ["Sales"]

        await store.delete("sales")
        assert fake_storage_client.objects == {}

    @pytest.mark.asyncio
    async def test_missing_object_is_not_found(self, fake_storage_client):
        store = SupabaseSnapshotStore(fake_storage_client, bucket="databases")

        assert not await store.exists("nope")
        with pytest.raises(NotFoundError):
            await store.load("nope")

    @pytest.mark.asyncio
    async def test_created_at_preserved(self, fake_storage_client):
        store = SupabaseSnapshotStore(fake_storage_client, bucket="databases")

        first = await store.save("sales", None, b"1")
        second = await store.save("sales", None, b"22")

        assert second.created_at == first.created_at
        assert second.size_bytes == 2

    @pytest.mark.asyncio
    async def test_health_reflects_connection(self, fake_storage_client):
        store = SupabaseSnapshotStore(fake_storage_client, bucket="databases")
        assert (await store.health_check())["status"] == "unhealthy"

        await store.connect()
        assert (await store.health_check())["status"] == "healthy"


class TestCreateSnapshotStore:

    def test_local_default(self, tmp_path):
        store = create_snapshot_store(StorageConfig(snapshot_dir=str(tmp_path)))
        assert isinstance(store, LocalSnapshotStore)
        assert store.backend == SnapshotBackend.LOCAL

    def test_supabase_requires_credentials(self):
        with pytest.raises(ConfigurationError):
            create_snapshot_store(StorageConfig(backend=SnapshotBackend.SUPABASE))

    def test_supabase(self):
        store = create_snapshot_store(StorageConfig(
            backend=SnapshotBackend.SUPABASE,
            supabase_url="https://example.supabase.co",
            supabase_key="key",
        ))
        assert isinstance(store, SupabaseSnapshotStore)
        assert store.bucket == "databases"
