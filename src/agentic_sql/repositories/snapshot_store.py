"""
Snapshot Store Repository.

Persistence sink for database byte images. After every modifying
statement the service exports the database and saves it here; opening
a database id that is not in memory restores it from here.

Two implementations:
- LocalSnapshotStore: a directory of `<id>.sqlite` images with `<id>.json` metadata
- SupabaseSnapshotStore: the same two objects per database in a Supabase Storage bucket

Metadata keeps the first `created_at` across saves and refreshes `last_modified`.
"""

import asyncio
import json
import os
import re
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from agentic_sql.config import StorageConfig
from agentic_sql.config_constants import SNAPSHOT_FILE_SUFFIX, SNAPSHOT_METADATA_SUFFIX, SnapshotBackend
from agentic_sql.domain.errors import BadRequestError, NotFoundError, StorageError, StorageFileError
from agentic_sql.domain.responses import SnapshotRecord
from agentic_sql.infrastructure.storage_client import StorageClient
from agentic_sql.utils.logging import get_module_logger
from agentic_sql.utils.tracing import current_trace_id

logger = get_module_logger()

_SAFE_ID = re.compile(r"^[A-Za-z0-9_\-]+$")

SNAPSHOT_CONTENT_TYPE = "application/vnd.sqlite3"


def _check_id(database_id: str) -> str:
    if not _SAFE_ID.match(database_id or ""):
        raise BadRequestError(
            f"Invalid database id: {database_id!r}",
            details={"database_id": database_id}
        )
    return database_id


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _build_record(
    database_id: str,
    name_hint: Optional[str],
    size_bytes: int,
    previous: Optional[Dict[str, Any]],
) -> SnapshotRecord:
    now = _now()
    created_at = now
    if previous and previous.get("created_at"):
        created_at = datetime.fromisoformat(previous["created_at"])
    return SnapshotRecord(
        database_id=database_id,
        name=name_hint or (previous or {}).get("name") or database_id,
        size_bytes=size_bytes,
        created_at=created_at,
        last_modified=now,
    )


class SnapshotStore(ABC):
    """Interface every snapshot sink implements."""

    backend: SnapshotBackend

    async def connect(self) -> None:
        """Acquire resources; no-op by default."""

    async def close(self) -> None:
        """Release resources; no-op by default."""

    @abstractmethod
    async def save(self, database_id: str, name_hint: Optional[str], data: bytes) -> SnapshotRecord:
        """Store (or replace) the image of a database."""

    @abstractmethod
    async def load(self, database_id: str) -> bytes:
        """Return the stored image. Raises NotFoundError when absent."""

    @abstractmethod
    async def exists(self, database_id: str) -> bool:
        """Whether an image is stored for the id."""

    @abstractmethod
    async def list(self) -> List[SnapshotRecord]:
        """Metadata of every stored snapshot, most recently modified first."""

    @abstractmethod
    async def delete(self, database_id: str) -> None:
        """Remove a stored image. Raises NotFoundError when absent."""

    async def health_check(self) -> Dict[str, Any]:
        return {"status": "healthy", "backend": self.backend.value}


class LocalSnapshotStore(SnapshotStore):
    """
    Snapshot store backed by a local directory.

    Images are written to a temporary file and moved into place, so a
    crash mid-save never leaves a truncated image behind.
    """

    backend = SnapshotBackend.LOCAL

    def __init__(self, directory: str):
        self.directory = Path(directory)

    def _image_path(self, database_id: str) -> Path:
        return self.directory / f"{_check_id(database_id)}{SNAPSHOT_FILE_SUFFIX}"

    def _metadata_path(self, database_id: str) -> Path:
        return self.directory / f"{_check_id(database_id)}{SNAPSHOT_METADATA_SUFFIX}"

    def _read_metadata(self, database_id: str) -> Optional[Dict[str, Any]]:
        path = self._metadata_path(database_id)
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    def _write_atomic(self, path: Path, data: bytes) -> None:
        # Unique temp name per write; saves of one id may overlap
        with tempfile.NamedTemporaryFile(dir=path.parent, prefix=path.name + ".", suffix=".tmp", delete=False) as tmp:
            tmp.write(data)
        try:
            os.replace(tmp.name, path)
        except OSError:
            os.unlink(tmp.name)
            raise

    def _save_sync(self, database_id: str, name_hint: Optional[str], data: bytes) -> SnapshotRecord:
        self.directory.mkdir(parents=True, exist_ok=True)
        record = _build_record(database_id, name_hint, len(data), self._read_metadata(database_id))
        self._write_atomic(self._image_path(database_id), data)
        self._write_atomic(
            self._metadata_path(database_id),
            record.model_dump_json(indent=2).encode("utf-8"),
        )
        return record

    async def save(self, database_id: str, name_hint: Optional[str], data: bytes) -> SnapshotRecord:
        try:
            record = await asyncio.to_thread(self._save_sync, database_id, name_hint, data)
        except OSError as e:
            error_msg = f"Failed to save snapshot: {e}"
            logger.error(error_msg, database_id=database_id, trace_id=current_trace_id())
            raise StorageFileError(error_msg, details={"database_id": database_id}) from e

        logger.info(
            "Snapshot saved",
            backend=self.backend.value,
            database_id=database_id,
            size_bytes=record.size_bytes,
            trace_id=current_trace_id(),
        )
        return record

    async def load(self, database_id: str) -> bytes:
        path = self._image_path(database_id)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as e:
            raise NotFoundError(
                f"No snapshot stored for database '{database_id}'",
                details={"database_id": database_id}
            ) from e
        except OSError as e:
            raise StorageFileError(f"Failed to read snapshot: {e}", details={"database_id": database_id}) from e

    async def exists(self, database_id: str) -> bool:
        return self._image_path(database_id).exists()

    def _list_sync(self) -> List[SnapshotRecord]:
        if not self.directory.exists():
            return []
        records = []
        for image in self.directory.glob(f"*{SNAPSHOT_FILE_SUFFIX}"):
            database_id = image.name[: -len(SNAPSHOT_FILE_SUFFIX)]
            metadata = self._read_metadata(database_id)
            if metadata:
                records.append(SnapshotRecord.model_validate(metadata))
            else:
                modified = datetime.fromtimestamp(image.stat().st_mtime, tz=timezone.utc)
                records.append(SnapshotRecord(
                    database_id=database_id,
                    name=database_id,
                    size_bytes=image.stat().st_size,
                    created_at=modified,
                    last_modified=modified,
                ))
        return sorted(records, key=lambda r: r.last_modified, reverse=True)

    async def list(self) -> List[SnapshotRecord]:
        return await asyncio.to_thread(self._list_sync)

    def _delete_sync(self, database_id: str) -> None:
        image = self._image_path(database_id)
        if not image.exists():
            raise NotFoundError(
                f"No snapshot stored for database '{database_id}'",
                details={"database_id": database_id}
            )
        image.unlink()
        self._metadata_path(database_id).unlink(missing_ok=True)

    async def delete(self, database_id: str) -> None:
        await asyncio.to_thread(self._delete_sync, database_id)
        logger.info("Snapshot deleted", backend=self.backend.value, database_id=database_id, trace_id=current_trace_id())

    async def health_check(self) -> Dict[str, Any]:
        return {
            "status": "healthy",
            "backend": self.backend.value,
            "directory": str(self.directory),
        }


class SupabaseSnapshotStore(SnapshotStore):
    """Snapshot store backed by a Supabase Storage bucket."""

    backend = SnapshotBackend.SUPABASE

    def __init__(self, storage_client: StorageClient, bucket: Optional[str] = None):
        self.storage_client = storage_client
        self.bucket = bucket

    async def connect(self) -> None:
        await self.storage_client.connect()

    async def close(self) -> None:
        await self.storage_client.close()

    @staticmethod
    def _is_missing(error: StorageFileError) -> bool:
        # Supabase answers 400 with a "not_found" body for missing objects
        return error.details.get("status_code") in (400, 404)

    async def _read_metadata(self, database_id: str) -> Optional[Dict[str, Any]]:
        try:
            raw = await self.storage_client.download_file(
                self.bucket, f"{database_id}{SNAPSHOT_METADATA_SUFFIX}"
            )
        except StorageFileError as e:
            if self._is_missing(e):
                return None
            raise
        return json.loads(raw)

    async def save(self, database_id: str, name_hint: Optional[str], data: bytes) -> SnapshotRecord:
        _check_id(database_id)
        record = _build_record(database_id, name_hint, len(data), await self._read_metadata(database_id))

        await self.storage_client.upload_file(
            self.bucket, f"{database_id}{SNAPSHOT_FILE_SUFFIX}", data, SNAPSHOT_CONTENT_TYPE
        )
        await self.storage_client.upload_file(
            self.bucket,
            f"{database_id}{SNAPSHOT_METADATA_SUFFIX}",
            record.model_dump_json().encode("utf-8"),
            "application/json",
        )

        logger.info(
            "Snapshot saved",
            backend=self.backend.value,
            database_id=database_id,
            size_bytes=record.size_bytes,
            trace_id=current_trace_id(),
        )
        return record

    async def load(self, database_id: str) -> bytes:
        _check_id(database_id)
        try:
            return await self.storage_client.download_file(self.bucket, f"{database_id}{SNAPSHOT_FILE_SUFFIX}")
        except StorageFileError as e:
            if self._is_missing(e):
                raise NotFoundError(
                    f"No snapshot stored for database '{database_id}'",
                    details={"database_id": database_id}
                ) from e
            raise

    async def exists(self, database_id: str) -> bool:
        _check_id(database_id)
        return await self._read_metadata(database_id) is not None

    async def list(self) -> List[SnapshotRecord]:
        entries = await self.storage_client.list_files(self.bucket)
        records = []
        for entry in entries:
            name = entry.get("name", "")
            if not name.endswith(SNAPSHOT_METADATA_SUFFIX):
                continue
            metadata = await self._read_metadata(name[: -len(SNAPSHOT_METADATA_SUFFIX)])
            if metadata:
                records.append(SnapshotRecord.model_validate(metadata))
        return sorted(records, key=lambda r: r.last_modified, reverse=True)

    async def delete(self, database_id: str) -> None:
        if not await self.exists(database_id):
            raise NotFoundError(
                f"No snapshot stored for database '{database_id}'",
                details={"database_id": database_id}
            )
        await self.storage_client.delete_file(self.bucket, f"{database_id}{SNAPSHOT_FILE_SUFFIX}")
        await self.storage_client.delete_file(self.bucket, f"{database_id}{SNAPSHOT_METADATA_SUFFIX}")
        logger.info("Snapshot deleted", backend=self.backend.value, database_id=database_id, trace_id=current_trace_id())

    async def health_check(self) -> Dict[str, Any]:
        if not self.storage_client.is_connected():
            return {"status": "unhealthy", "backend": self.backend.value, "error": "Storage client not connected"}
        return {"status": "healthy", "backend": self.backend.value, "bucket": self.bucket}


def create_snapshot_store(config: StorageConfig) -> SnapshotStore:
    """Build the snapshot store selected by configuration."""
    if config.backend == SnapshotBackend.SUPABASE:
        return SupabaseSnapshotStore(StorageClient(config), bucket=config.default_bucket)
    if config.backend == SnapshotBackend.LOCAL:
        return LocalSnapshotStore(config.snapshot_dir)
    raise StorageError(f"Unsupported snapshot backend: {config.backend}")
