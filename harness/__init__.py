# Topoharness - Multi-process Topology Harness
# Copyright (C) 2026 Topoharness Authors
# SPDX-License-Identifier: Apache-2.0
"""Topoharness: boot, observe and tear down multi-process test topologies."""

__version__ = "0.1.0"
