"""Pytest fixtures and configuration for communication intelligence tests.

Provides common fixtures for configuration, database, payloads and fake
external capabilities.
"""

import os
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Generator

import pytest

from commintel.config import reset_config
from commintel.config_schema import AppConfig
from commintel.db.store import DatabaseStore
from commintel.tasks.bridge import TaskRequest

BASE_TIME = datetime(2025, 3, 3, 9, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def reset_config_singleton() -> Generator[None, None, None]:
    """Reset the config singleton before each test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def temp_config_dir(tmp_path: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def sample_config_yaml() -> str:
    """Return a minimal valid config.yaml content."""
    return """
schema_version: 1

database:
  path: "data/test.db"

extraction:
  timeout_seconds: 5
  context_messages: 3

task_bridge:
  base_url: "http://tasks.local/api"

scheduler:
  interval_minutes: 15
  batch_size: 20
"""


@pytest.fixture
def sample_config_dict() -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "database": {"path": "data/test.db"},
        "extraction": {"timeout_seconds": 5, "context_messages": 3},
        "task_bridge": {"base_url": "http://tasks.local/api"},
        "scheduler": {"interval_minutes": 15, "batch_size": 20},
    }


@pytest.fixture
def sample_config(sample_config_dict: dict[str, Any]) -> AppConfig:
    """Return a minimal valid AppConfig instance."""
    return AppConfig(**sample_config_dict)


@pytest.fixture
def config_file(temp_config_dir: Path, sample_config_yaml: str) -> Path:
    """Create a temporary config file with valid content."""
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(sample_config_yaml)
    return config_path


@pytest.fixture
def set_config_env(config_file: Path) -> Generator[None, None, None]:
    """Set the COMMINTEL_CONFIG_PATH environment variable."""
    old_value = os.environ.get("COMMINTEL_CONFIG_PATH")
    os.environ["COMMINTEL_CONFIG_PATH"] = str(config_file)
    yield
    if old_value is None:
        del os.environ["COMMINTEL_CONFIG_PATH"]
    else:
        os.environ["COMMINTEL_CONFIG_PATH"] = old_value


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory."""
    data = tmp_path / "data"
    data.mkdir()
    return data


@pytest.fixture
async def store(data_dir: Path) -> DatabaseStore:
    """Create and initialize a DatabaseStore on a temporary file."""
    store = DatabaseStore(data_dir / "test.db")
    await store.initialize()
    return store


# ---------------------------------------------------------------------------
# Payload builders
# ---------------------------------------------------------------------------


def make_message(
    message_id: str,
    minutes: int = 0,
    sender: str = "alice@firm.com",
    recipients: list[str] | None = None,
    body: str = "",
) -> dict[str, Any]:
    """Build one raw message payload, ``minutes`` after BASE_TIME."""
    return {
        "id": message_id,
        "sender": sender,
        "recipients": recipients if recipients is not None else ["bob@client.com"],
        "sent_date": (BASE_TIME + timedelta(minutes=minutes)).isoformat(),
        "body": body or f"Body of {message_id}",
    }


def make_thread_payload(
    thread_id: str = "T1",
    messages: list[dict[str, Any]] | None = None,
    subject: str | None = "Smith v. Jones - discovery",
    matter_id: str | None = "MAT-1",
) -> dict[str, Any]:
    """Build a raw thread payload."""
    return {
        "id": thread_id,
        "subject": subject,
        "matter_id": matter_id,
        "messages": messages if messages is not None else [make_message("M1")],
    }


@pytest.fixture
def thread_payload() -> Callable[..., dict[str, Any]]:
    return make_thread_payload


@pytest.fixture
def message_payload() -> Callable[..., dict[str, Any]]:
    return make_message


# ---------------------------------------------------------------------------
# Fake external capabilities
# ---------------------------------------------------------------------------


class FakeCapability:
    """Extraction capability returning scripted items or raising.

    ``responses`` is consumed one entry per call; the last entry repeats.
    An entry that is an exception instance is raised instead of returned.
    """

    def __init__(self, *responses: Any):
        self.responses = list(responses) or [[]]
        self.requests: list[Any] = []

    async def extract(self, request: Any) -> list[dict[str, Any]]:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, BaseException):
            raise response
        return response


class FakeTaskCreator:
    """Task creator issuing sequential ids, or raising a scripted error."""

    def __init__(self, error: Exception | None = None):
        self.error = error
        self.requests: list[TaskRequest] = []

    async def create_task(self, request: TaskRequest) -> str:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return f"TASK-{len(self.requests)}"


@pytest.fixture
def fake_capability() -> type[FakeCapability]:
    return FakeCapability


@pytest.fixture
def task_creator() -> FakeTaskCreator:
    return FakeTaskCreator()
