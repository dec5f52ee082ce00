"""Pytest fixtures for testing."""

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from fakes import FakeAgentRuntime, FakeToolRunner, FakeTranscriptionProvider, latex_handler
from fastchapter.services.orchestrator import Orchestrator, set_orchestrator
from fastchapter.services.profile_service import ProfileService
from fastchapter.services.project_service import ProjectService


@pytest.fixture(autouse=True)
def clear_openai_env(monkeypatch):
    """Keep a developer's OPENAI_API_KEY out of the tests."""
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    return tmp_path / "data"


@pytest.fixture
def projects(data_dir: Path) -> ProjectService:
    return ProjectService(data_dir)


@pytest.fixture
def profiles(projects: ProjectService) -> ProfileService:
    return ProfileService(projects)


@pytest.fixture
def fake_runner() -> FakeToolRunner:
    return FakeToolRunner(handler=latex_handler())


@pytest.fixture
def fake_provider() -> FakeTranscriptionProvider:
    return FakeTranscriptionProvider()


@pytest.fixture
def fake_runtime() -> FakeAgentRuntime:
    return FakeAgentRuntime()


@pytest.fixture
def orchestrator(data_dir, fake_runner, fake_provider, fake_runtime):
    """Orchestrator over a temp data dir, installed as the process default."""
    orch = Orchestrator(
        data_dir=data_dir,
        runner=fake_runner,
        transcription_provider=fake_provider,
        agent_runtime=fake_runtime,
    )
    set_orchestrator(orch)
    yield orch
    set_orchestrator(None)


@pytest_asyncio.fixture
async def client(orchestrator) -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP client for testing."""
    from fastchapter.api.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    await orchestrator.shutdown()


@pytest_asyncio.fixture
async def book(projects):
    """A book with two chapters owned by `alice`."""
    summary = await projects.create_book("alice", "Voice First")
    await projects.create_chapter("alice", summary.id)
    await projects.create_chapter("alice", summary.id)
    return summary
