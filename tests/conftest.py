"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for control_plane_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from brownfield.config import PlatformMode, TenantConfig  # noqa: E402

TENANT_ID = "11111111-2222-3333-4444-555555555555"
ROOT_SCOPE = "tenant-root"


@pytest.fixture
def tenant_config(tmp_path: Path) -> TenantConfig:
    """Brownfield config with zero backoff and state under tmp_path."""
    return TenantConfig(
        tenant_id=TENANT_ID,
        root_scope_id=ROOT_SCOPE,
        mode=PlatformMode.BROWNFIELD,
        control_plane_timeout_seconds=5,
        max_attempts=3,
        backoff_seconds=0,
        state_dir=tmp_path / "state",
    )


@pytest.fixture
def sleeps() -> list[float]:
    """Delays requested through ``sleeper``."""
    return []


@pytest.fixture
def sleeper(sleeps: list[float]):
    """Injected sleep that records the delay and returns immediately."""

    async def sleep(delay: float) -> None:
        sleeps.append(delay)

    return sleep
