# Topoharness - Multi-process Topology Harness
# Copyright (C) 2026 Topoharness Authors
# SPDX-License-Identifier: Apache-2.0
#
# This file is part of Topoharness, licensed under Apache-2.0.
# See LICENSE for the full license text.

"""Timezone-aware datetime helpers.

Process timestamps are recorded in the host's local timezone so they line
up with the child processes' own log output.
"""

from __future__ import annotations

from datetime import datetime


def now_local() -> datetime:
    """Return current time as a timezone-aware local datetime."""
    return datetime.now().astimezone()
