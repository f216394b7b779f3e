# Topoharness - Multi-process Topology Harness
# Copyright (C) 2026 Topoharness Authors
# SPDX-License-Identifier: Apache-2.0
"""
Process-topology supervisor package.

Launches descriptors and nested ordered/parallel groups as child
processes, detects readiness from their output, and tears them down in
reverse start order while collecting every failure.
"""

from __future__ import annotations

from harness.supervisor.descriptor import Group, Member, ProcessDescriptor, ordered, parallel
from harness.supervisor.manager import GroupSnapshot, Handle, Supervisor
from harness.supervisor.process_handle import (
    ProcessHandle,
    ProcessSnapshot,
    ProcessState,
    ProcessStats,
    StateTransition,
)
from harness.supervisor.readiness import ReadinessDetector

__all__ = [
    "Group",
    "GroupSnapshot",
    "Handle",
    "Member",
    "ProcessDescriptor",
    "ProcessHandle",
    "ProcessSnapshot",
    "ProcessState",
    "ProcessStats",
    "ReadinessDetector",
    "StateTransition",
    "Supervisor",
    "ordered",
    "parallel",
]
