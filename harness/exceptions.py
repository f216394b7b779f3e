from __future__ import annotations
# Topoharness - Multi-process Topology Harness
# Copyright (C) 2026 Topoharness Authors
# SPDX-License-Identifier: Apache-2.0
#
# This file is part of Topoharness, licensed under Apache-2.0.
# See LICENSE for the full license text.

"""Unified exception hierarchy for Topoharness.

All domain-specific exceptions derive from :class:`HarnessError`,
enabling callers to catch the entire family with a single clause::

    try:
        ...
    except HarnessError as e:
        logger.error("Harness error: %s", e)
"""


class HarnessError(Exception):
    """Base exception for all Topoharness errors."""


# ── Certificates ─────────────────────────────────────────────


class IssuanceError(HarnessError):
    """CA or leaf certificate generation failure (key, CSR, signing, file IO)."""


# ── Addresses ────────────────────────────────────────────────


class AllocationError(HarnessError, ValueError):
    """Requested port falls outside the collision-free allocation domain."""


# ── Process / Supervisor ─────────────────────────────────────


class ProcessError(HarnessError):
    """Supervised process errors.

    Every instance names the process it concerns so that aggregated
    shutdown reports stay readable.
    """

    def __init__(self, process_name: str, message: str) -> None:
        super().__init__(f"{process_name}: {message}")
        self.process_name = process_name


class SpawnError(ProcessError):
    """The executable could not be started."""


class ReadinessTimeoutError(ProcessError):
    """Readiness marker was not observed before the timeout elapsed."""

    def __init__(self, process_name: str, marker: str, timeout: float) -> None:
        super().__init__(
            process_name,
            f"did not print {marker!r} within {timeout:.1f}s",
        )
        self.marker = marker
        self.timeout = timeout


class UnexpectedExitError(ProcessError):
    """Process exited before the supervisor asked it to stop."""

    def __init__(
        self,
        process_name: str,
        returncode: int | None,
        message: str | None = None,
    ) -> None:
        super().__init__(
            process_name,
            message or f"exited unexpectedly (returncode={returncode})",
        )
        self.returncode = returncode


class ExitedBeforeReadyError(UnexpectedExitError):
    """Process exited while still waiting for its readiness marker."""

    def __init__(self, process_name: str, returncode: int | None) -> None:
        super().__init__(
            process_name,
            returncode,
            f"exited before becoming ready (returncode={returncode})",
        )


class NonZeroExitError(ProcessError):
    """Process exited with a status the supervisor did not cause."""

    def __init__(self, process_name: str, returncode: int) -> None:
        super().__init__(process_name, f"exited with status {returncode}")
        self.returncode = returncode


class ShutdownError(ProcessError):
    """Process failed to terminate or be reaped after a stop signal."""


class CleanupError(ProcessError):
    """The descriptor's cleanup callback raised."""


# ── Configuration ────────────────────────────────────────────


class ConfigError(HarnessError):
    """Configuration errors."""


class ConfigNotFoundError(ConfigError):
    """Configuration file not found."""


class ConfigValidationError(ConfigError):
    """Configuration validation failure."""


# ── Convergence ──────────────────────────────────────────────


class ConvergenceError(HarnessError, AssertionError):
    """A polled condition did not converge (or did not hold) in time."""
