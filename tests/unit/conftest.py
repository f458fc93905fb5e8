"""Shared fixtures and fakes for unit tests."""

import asyncio
from typing import Any, Dict, List, Optional, Union

import pytest

from agentic_sql.config import EngineConfig, PipelineConfig
from agentic_sql.domain.errors import LLMError, StorageFileError
from agentic_sql.infrastructure.engine_client import EngineClient
from agentic_sql.repositories.generation import GenerationClient
from agentic_sql.repositories.prompt_builder import PromptBuilder
from agentic_sql.repositories.snapshot_store import LocalSnapshotStore
from agentic_sql.repositories.sql_execution import SQLExecutionRepository
from agentic_sql.repositories.sql_extraction import StatementExtractor
from agentic_sql.repositories.sql_validation import StatementValidator
from agentic_sql.services.execution_coordinator import ExecutionCoordinator


class FakeLLMClient:
    """Plays back scripted responses; an Exception in the script is raised instead."""

    def __init__(self, script: Optional[List[Union[str, Exception]]] = None):
        self.script = list(script or [])
        self.calls: List[Dict[str, Any]] = []

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
    ) -> str:
        self.calls.append({"prompt": prompt, "system_prompt": system_prompt, "temperature": temperature})
        if not self.script:
            raise LLMError("No scripted response left")
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FakeStorageClient:
    """In-memory stand-in for the Supabase StorageClient."""

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.connected = False

    async def connect(self) -> None:
        self.connected = True

    async def close(self) -> None:
        self.connected = False

    def is_connected(self) -> bool:
        return self.connected

    async def download_file(self, bucket: Optional[str], file_path: str) -> bytes:
        if file_path not in self.objects:
            raise StorageFileError("Object not found", details={"status_code": 400, "file_path": file_path})
        return self.objects[file_path]

    async def upload_file(self, bucket: Optional[str], file_path: str, data: bytes, content_type: str) -> None:
        self.objects[file_path] = data

    async def list_files(self, bucket: Optional[str], prefix: str = "", limit: int = 1000) -> List[Dict[str, Any]]:
        return [{"name": name} for name in sorted(self.objects)]

    async def delete_file(self, bucket: Optional[str], file_path: str) -> None:
        self.objects.pop(file_path, None)


class FailingSnapshotStore(LocalSnapshotStore):
    """Local store whose saves always fail."""

    def __init__(self, directory: str):
        super().__init__(directory)
        self.save_calls = 0

    async def save(self, database_id, name_hint, data):
        self.save_calls += 1
        raise StorageFileError("disk full")


class CountingSnapshotStore(LocalSnapshotStore):
    """Local store that counts saves."""

    def __init__(self, directory: str):
        super().__init__(directory)
        self.saved: List[str] = []

    async def save(self, database_id, name_hint, data):
        self.saved.append(database_id)
        return await super().save(database_id, name_hint, data)


class SlowSnapshotStore(CountingSnapshotStore):
    """Counting store whose saves take a while, so overlapping work interleaves."""

    def __init__(self, directory: str, delay: float = 0.05):
        super().__init__(directory)
        self.delay = delay

    async def save(self, database_id, name_hint, data):
        await asyncio.sleep(self.delay)
        return await super().save(database_id, name_hint, data)


class GatedSnapshotStore(CountingSnapshotStore):
    """Counting store whose saves wait until `release` is set."""

    def __init__(self, directory: str):
        super().__init__(directory)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.done = asyncio.Event()

    async def save(self, database_id, name_hint, data):
        self.entered.set()
        await self.release.wait()
        record = await super().save(database_id, name_hint, data)
        self.done.set()
        return record


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    return PipelineConfig()


@pytest.fixture
async def engine_client():
    client = EngineClient(EngineConfig())
    await client.connect()
    yield client
    await client.close()


@pytest.fixture
async def shop_engine(engine_client):
    """Engine with a 'shop' database holding users and orders."""
    await engine_client.create_database("shop")
    await engine_client.execute_sequence(
        "shop",
        """
        CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT NOT NULL, created_at TEXT);
        CREATE TABLE orders (id INTEGER PRIMARY KEY, user_id INTEGER, total REAL);
        INSERT INTO users (name, created_at) VALUES ('Ada', DATE('now')), ('Grace', DATE('now', '-90 days'));
        INSERT INTO orders (id, user_id, total) VALUES (7, 1, 9.5), (8, 2, 20.0);
        """,
    )
    return engine_client


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def snapshot_store(tmp_path) -> CountingSnapshotStore:
    return CountingSnapshotStore(str(tmp_path / "snapshots"))


def build_coordinator(
    llm_client: FakeLLMClient,
    engine_client: EngineClient,
    snapshot_store,
    config: Optional[PipelineConfig] = None,
    sleep: Optional[RecordingSleep] = None,
) -> ExecutionCoordinator:
    config = config or PipelineConfig()
    return ExecutionCoordinator(
        generation_client=GenerationClient(llm_client, config, sleep=sleep or RecordingSleep()),
        statement_extractor=StatementExtractor(),
        statement_validator=StatementValidator(config),
        execution_repository=SQLExecutionRepository(engine_client),
        engine_client=engine_client,
        snapshot_store=snapshot_store,
        prompt_builder=PromptBuilder(config),
        config=config,
    )


@pytest.fixture
def make_llm():
    """Factory for scripted LLM clients."""
    return FakeLLMClient


@pytest.fixture
def make_coordinator(recording_sleep):
    """Factory building a coordinator over real repositories and the given fakes."""

    def _make(llm_client, engine_client, store, config=None):
        return build_coordinator(llm_client, engine_client, store, config=config, sleep=recording_sleep)

    return _make


@pytest.fixture
def failing_store(tmp_path) -> FailingSnapshotStore:
    return FailingSnapshotStore(str(tmp_path / "failing"))


@pytest.fixture
def fake_storage_client() -> FakeStorageClient:
    return FakeStorageClient()


@pytest.fixture
def slow_store(tmp_path) -> SlowSnapshotStore:
    return SlowSnapshotStore(str(tmp_path / "slow"))


@pytest.fixture
def gated_store(tmp_path) -> GatedSnapshotStore:
    return GatedSnapshotStore(str(tmp_path / "gated"))
