"""
Shared pytest configuration.

This file ensures the project root is on sys.path so that
`import chatcluster` and `import tests.utils` work consistently in all
tests, and isolates upload/log directories per test.
"""

import sys
from pathlib import Path

import pytest


# Ensure project root is importable for test modules.
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from chatcluster.settings import Settings  # noqa: E402
from tests.utils import InMemoryRedis  # noqa: E402


@pytest.fixture
def fake_redis() -> InMemoryRedis:
    return InMemoryRedis()


@pytest.fixture
def upload_root(tmp_path: Path) -> Path:
    return (tmp_path / "uploads").resolve()


@pytest.fixture
def test_settings(tmp_path: Path, upload_root: Path) -> Settings:
    return Settings(
        upload_base_dir=str(upload_root),
        log_dir=str(tmp_path / "logs"),
        public_base_url="http://testserver",
        upstream_base_url="https://upstream.test/v1",
        upstream_api_key="sk-test",  # pragma: allowlist secret
        chat_timeout_seconds=5.0,
        session_backend="memory",
        session_sweep_interval_seconds=3600.0,
        stats_interval_seconds=3600.0,
        max_history_turns=4,
    )
