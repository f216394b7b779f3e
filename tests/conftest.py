# Topoharness - Multi-process Topology Harness
# Copyright (C) 2026 Topoharness Authors
# SPDX-License-Identifier: Apache-2.0
"""Global test fixtures for Topoharness.

Provides environment isolation, config cache management, a fast-timeout
config for real child processes, and orphan cleanup.
"""

from __future__ import annotations

import logging
import os
import signal
from pathlib import Path

import pytest
from dotenv import load_dotenv

from harness.config import HarnessConfig, TimeoutsConfig, invalidate_cache

logger = logging.getLogger(__name__)

load_dotenv()

_HARNESS_ENV = (
    "HARNESS_CONFIG",
    "HARNESS_WORKER_INDEX",
    "HARNESS_LOG_LEVEL",
    "DEFAULT_EVENTUALLY_TIMEOUT",
    "DEFAULT_CONSISTENTLY_DURATION",
    "PYTEST_XDIST_WORKER",
)


# ── Fixtures ──────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch):
    """Start every test from default config with no harness env vars."""
    for name in _HARNESS_ENV:
        monkeypatch.delenv(name, raising=False)
    invalidate_cache()
    yield
    invalidate_cache()


@pytest.fixture
def fast_config() -> HarnessConfig:
    """Config with timeouts short enough for real child processes."""
    return HarnessConfig(
        timeouts=TimeoutsConfig(
            default_ready_timeout=5.0,
            slow_ready_timeout=10.0,
            stop_timeout=3.0,
            reap_timeout=2.0,
        ),
    )


@pytest.fixture
def run_dir(tmp_path: Path) -> Path:
    """Per-test directory for child signal logs.

    Teardown kills any child whose command line still references it.
    """
    d = tmp_path / "run"
    d.mkdir()
    yield d
    _kill_orphan_children(str(d))


def _kill_orphan_children(run_dir_str: str) -> None:
    """SIGKILL test children whose cmdline references *run_dir_str*."""
    proc_dir = Path("/proc")
    if not proc_dir.exists():
        return

    for pid_dir in proc_dir.iterdir():
        if not pid_dir.name.isdigit() or int(pid_dir.name) == os.getpid():
            continue
        try:
            cmdline = (pid_dir / "cmdline").read_text().replace("\x00", " ")
            if run_dir_str in cmdline:
                pid = int(pid_dir.name)
                logger.warning("Killing orphan child process PID=%s", pid)
                os.kill(pid, signal.SIGKILL)
        except (OSError, ValueError):
            pass
