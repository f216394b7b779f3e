# Topoharness - Multi-process Topology Harness
# Copyright (C) 2026 Topoharness Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from harness.config.models import (
    CertsConfig,
    DatabaseConfig,
    EventuallyConfig,
    GardenConfig,
    HarnessConfig,
    PortsConfig,
    TimeoutsConfig,
    get_config_path,
    invalidate_cache,
    load_config,
    parse_duration,
)
