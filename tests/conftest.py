"""Pytest configuration and fixtures."""

from __future__ import annotations

from typing import Generator

import pytest
import respx

from fleet.background import TaskSupervisor
from fleet.database import Database
from fleet.models import Organization
from fleet.services.cluster import ClusterService
from fleet.settings import Settings
from fakes import FakeDOClient, FakeUsageTracker


@pytest.fixture
def do_base_url() -> str:
    """Test provider API base URL."""
    return "https://api.do.test/v2"


@pytest.fixture
def settings(do_base_url: str) -> Settings:
    """Settings isolated from any local .env file."""
    return Settings(
        _env_file=None,
        do_api_token="test-do-token",
        do_api_base=do_base_url,
        platform_url="https://platform.test",
        master_token="master-token",
        usage_endpoint="",
    )


@pytest.fixture
def mock_api(do_base_url: str) -> Generator[respx.MockRouter, None, None]:
    """Mock provider API router."""
    with respx.mock(base_url=do_base_url, assert_all_called=False) as router:
        yield router


@pytest.fixture
def database(tmp_path) -> Database:
    """Database backed by a temporary SQLite file."""
    return Database(f"sqlite:///{tmp_path / 'fleet.db'}")


@pytest.fixture
def org(database: Database) -> Organization:
    return database.create_organization("Acme Corp", id="org-1")


@pytest.fixture
def tasks() -> TaskSupervisor:
    return TaskSupervisor()


@pytest.fixture
def do_client() -> FakeDOClient:
    return FakeDOClient()


@pytest.fixture
def usage() -> FakeUsageTracker:
    return FakeUsageTracker(enabled=True)


@pytest.fixture
def service(
    database: Database,
    do_client: FakeDOClient,
    usage: FakeUsageTracker,
    tasks: TaskSupervisor,
    settings: Settings,
) -> ClusterService:
    return ClusterService(database, do_client, usage, tasks, settings=settings)
