# Topoharness - Multi-process Topology Harness
# Copyright (C) 2026 Topoharness Authors
# SPDX-License-Identifier: Apache-2.0
#
# This file is part of Topoharness, licensed under Apache-2.0.
# See LICENSE for the full license text.

"""Central configuration module for Topoharness.

Defines Pydantic models for the harness config.json and provides
load / resolve helpers with a module-level cache keyed by path and mtime.
Environment overrides are applied on top of the file contents.
"""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError, model_validator

from harness.exceptions import ConfigValidationError

logger = logging.getLogger("harness.config")

# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class PortsConfig(BaseModel):
    """Address allocation parameters (see :mod:`harness.ports`)."""

    host: str = "127.0.0.1"
    base_port: int = 10000
    worker_stride: int = 1000
    service_stride: int = 10
    max_port: int = 32767  # Linux ephemeral range starts at 32768

    @model_validator(mode="after")
    def _check_strides(self) -> "PortsConfig":
        if self.service_stride <= 0 or self.worker_stride <= 0:
            raise ValueError("port strides must be positive")
        if self.service_stride > self.worker_stride:
            raise ValueError("service_stride must not exceed worker_stride")
        return self


class TimeoutsConfig(BaseModel):
    """Supervisor timeouts, in seconds."""

    default_ready_timeout: float = 10.0
    # cell agents ping the container backend before announcing themselves
    slow_ready_timeout: float = 120.0
    stop_timeout: float = 10.0
    reap_timeout: float = 5.0


class EventuallyConfig(BaseModel):
    """Convergence poller defaults."""

    timeout: float = 60.0
    interval: float = 0.5
    consistently_duration: float = 5.0
    consistently_interval: float = 0.1


class CertsConfig(BaseModel):
    key_size: int = 4096
    ca_common_name: str = "harness-ca"


class DatabaseConfig(BaseModel):
    """Relational store used by the bbs; one database per worker."""

    driver: str = "postgres"
    # DSN without a database name; None derives one from the sql address
    base_connection_string: str | None = None


class GardenConfig(BaseModel):
    """Locations of the container backend's helper binaries and images."""

    bin_path: str | None = None
    graph_path: str | None = None
    default_rootfs: str | None = None


class HarnessConfig(BaseModel):
    worker_index: int = 0
    log_level: str = "INFO"
    output_buffer_lines: int = 10000
    ports: PortsConfig = PortsConfig()
    timeouts: TimeoutsConfig = TimeoutsConfig()
    eventually: EventuallyConfig = EventuallyConfig()
    certs: CertsConfig = CertsConfig()
    database: DatabaseConfig = DatabaseConfig()
    garden: GardenConfig = GardenConfig()
    executables: dict[str, str] = {}


# ---------------------------------------------------------------------------
# Durations
# ---------------------------------------------------------------------------

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}


def parse_duration(value: str) -> float:
    """Parse ``"1.5"``, ``"500ms"``, ``"2m"`` style durations into seconds."""
    match = _DURATION_RE.match(value)
    if not match:
        raise ConfigValidationError(f"Invalid duration: {value!r}")
    return float(match.group(1)) * _DURATION_UNITS[match.group(2)]


# ---------------------------------------------------------------------------
# Load / cache
# ---------------------------------------------------------------------------

_config: HarnessConfig | None = None
_config_path: Path | None = None
_config_mtime: float = 0.0


def invalidate_cache() -> None:
    """Reset the cached config so the next load reads from disk."""
    global _config, _config_path, _config_mtime
    _config = None
    _config_path = None
    _config_mtime = 0.0


def get_config_path() -> Path | None:
    """Return the config path from ``HARNESS_CONFIG``, or None for defaults."""
    env_val = os.environ.get("HARNESS_CONFIG")
    if env_val:
        return Path(env_val).expanduser().resolve()
    return None


def _apply_env_overrides(config: HarnessConfig) -> HarnessConfig:
    updates: dict[str, Any] = {}
    worker = os.environ.get("HARNESS_WORKER_INDEX")
    if worker:
        try:
            updates["worker_index"] = int(worker)
        except ValueError as exc:
            raise ConfigValidationError(
                f"HARNESS_WORKER_INDEX must be an integer, got {worker!r}"
            ) from exc

    level = os.environ.get("HARNESS_LOG_LEVEL")
    if level:
        updates["log_level"] = level.upper()

    eventually_updates: dict[str, float] = {}
    if os.environ.get("DEFAULT_EVENTUALLY_TIMEOUT"):
        eventually_updates["timeout"] = parse_duration(
            os.environ["DEFAULT_EVENTUALLY_TIMEOUT"]
        )
    if os.environ.get("DEFAULT_CONSISTENTLY_DURATION"):
        eventually_updates["consistently_duration"] = parse_duration(
            os.environ["DEFAULT_CONSISTENTLY_DURATION"]
        )
    if eventually_updates:
        updates["eventually"] = config.eventually.model_copy(
            update=eventually_updates
        )

    if not updates:
        return config
    return config.model_copy(update=updates)


def load_config(path: Path | None = None) -> HarnessConfig:
    """Load configuration, returning the cached instance when possible.

    If *path* is ``None``, ``$HARNESS_CONFIG`` determines the location.
    When no file is configured, or it does not exist, the defaults are
    used.  Environment overrides are applied on every load.
    """
    global _config, _config_path, _config_mtime

    if path is None:
        path = get_config_path()

    if path is not None and _config is not None and _config_path == path:
        try:
            disk_mtime = path.stat().st_mtime
        except OSError:
            disk_mtime = 0.0
        if disk_mtime == _config_mtime:
            return _apply_env_overrides(_config)
        logger.debug("Config file changed on disk; reloading %s", path)

    if path is not None and path.is_file():
        logger.debug("Loading config from %s", path)
        try:
            data: dict[str, Any] = json.loads(path.read_text(encoding="utf-8"))
            config = HarnessConfig.model_validate(data)
        except json.JSONDecodeError as exc:
            logger.error("Failed to parse %s: %s", path, exc)
            raise ConfigValidationError(f"Invalid JSON in {path}: {exc}") from exc
        except ValidationError as exc:
            logger.error("Invalid config in %s: %s", path, exc)
            raise ConfigValidationError(f"Invalid config in {path}: {exc}") from exc
        _config_mtime = path.stat().st_mtime
    else:
        if path is not None:
            logger.info("Config file not found at %s; using defaults", path)
        config = HarnessConfig()
        _config_mtime = 0.0

    _config = config
    _config_path = path
    return _apply_env_overrides(config)
