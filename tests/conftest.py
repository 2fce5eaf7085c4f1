"""Pytest fixtures and configuration for mailflow tests.

Provides common fixtures for configuration, time, fake providers and the engine.
"""

import asyncio
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Generator

import pytest

from mailflow.automation.engine import AutomationEngine
from mailflow.automation.store import InMemoryTrackingStore
from mailflow.config import reset_config
from mailflow.config_schema import AppConfig
from mailflow.core.clock import FrozenClock
from mailflow.core.errors import ContactDirectoryError, ProviderError
from mailflow.delivery.dispatcher import DeliveryDispatcher
from mailflow.delivery.providers import EmailPayload

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeProvider:
    """In-process EmailProvider that records payloads.

    Fails the first ``fail_times`` sends (or every send with ``always_fail``).
    Each send yields to the event loop once, like a real network call.
    """

    def __init__(
        self,
        provider_id: str = "fake",
        fail_times: int = 0,
        always_fail: bool = False,
        configured: bool = True,
    ):
        self.provider_id = provider_id
        self.is_configured = configured
        self.fail_times = fail_times
        self.always_fail = always_fail
        self.calls: list[EmailPayload] = []

    async def send(self, payload: EmailPayload) -> str | None:
        self.calls.append(payload)
        await asyncio.sleep(0)
        if self.always_fail or len(self.calls) <= self.fail_times:
            raise ProviderError(
                f"{self.provider_id} unavailable", provider_id=self.provider_id, status_code=503
            )
        return f"{self.provider_id}-msg-{len(self.calls)}"


class RecordingContacts:
    """ContactDirectory that records upserts, optionally failing."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.upserts: list[tuple[str, dict[str, Any], list[int] | None]] = []

    async def upsert_contact(
        self,
        email: str,
        attributes: dict[str, Any],
        list_ids: list[int] | None = None,
    ) -> None:
        if self.fail:
            raise ContactDirectoryError("directory down", status_code=500)
        self.upserts.append((email, attributes, list_ids))


class RecordingEvents:
    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict[str, Any]]] = []

    async def track(self, event: str, email: str, properties: dict[str, Any]) -> None:
        self.events.append((event, email, properties))


async def no_sleep(seconds: float) -> None:
    """Sleep replacement so failover tests never wait."""


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


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
timezone: "UTC"

automations:
  WELCOME_SERIES:
    delay_hours: 1

quota:
  daily_limit: 300

delivery:
  from_email: "shop@example.com"
  provider_priority: ["brevo", "smtp"]

storage:
  backend: "memory"
"""


@pytest.fixture
def sample_config_dict() -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "timezone": "UTC",
        "quota": {"daily_limit": 300, "deferral_hour": 9},
        "delivery": {
            "from_email": "shop@example.com",
            "from_name": "Test Shop",
        },
        "storage": {"backend": "memory"},
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
    """Set the MAILFLOW_CONFIG_PATH environment variable."""
    old_value = os.environ.get("MAILFLOW_CONFIG_PATH")
    os.environ["MAILFLOW_CONFIG_PATH"] = str(config_file)
    yield
    if old_value is None:
        del os.environ["MAILFLOW_CONFIG_PATH"]
    else:
        os.environ["MAILFLOW_CONFIG_PATH"] = old_value


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory."""
    data = tmp_path / "data"
    data.mkdir()
    return data


# ---------------------------------------------------------------------------
# Engine collaborators
# ---------------------------------------------------------------------------


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


@pytest.fixture
def clock(now: datetime) -> FrozenClock:
    return FrozenClock(now)


@pytest.fixture
def make_provider() -> type[FakeProvider]:
    return FakeProvider


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider("primary")


@pytest.fixture
def dispatcher(provider: FakeProvider) -> DeliveryDispatcher:
    return DeliveryDispatcher([provider], sleep=no_sleep)


@pytest.fixture
def store() -> InMemoryTrackingStore:
    return InMemoryTrackingStore()


@pytest.fixture
def contacts() -> RecordingContacts:
    return RecordingContacts()


@pytest.fixture
def events() -> RecordingEvents:
    return RecordingEvents()


@pytest.fixture
def engine(
    sample_config: AppConfig,
    store: InMemoryTrackingStore,
    dispatcher: DeliveryDispatcher,
    contacts: RecordingContacts,
    clock: FrozenClock,
) -> AutomationEngine:
    """Engine on the in-memory store with a frozen clock and one fake provider."""
    return AutomationEngine.from_config(
        sample_config, store, dispatcher, contacts=contacts, clock=clock
    )
