# Topoharness - Multi-process Topology Harness
# Copyright (C) 2026 Topoharness Authors
# SPDX-License-Identifier: Apache-2.0
#
# This file is part of Topoharness, licensed under Apache-2.0.
# See LICENSE for the full license text.

"""Polling assertions for eventually-consistent topology state."""
from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, TypeVar, Union

from harness.config import load_config
from harness.exceptions import ConvergenceError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Probe = Callable[[], Union[T, Awaitable[T]]]


# ── Helpers ────────────────────────────────────────────────


async def _call(probe: Probe[T]) -> T:
    result = probe()
    if inspect.isawaitable(result):
        return await result
    return result


def _check(value: Any) -> None:
    # probes may assert, or return a bool
    if value is False:
        raise AssertionError("probe returned False")


def _describe(probe: Probe[Any], description: str) -> str:
    return description or getattr(probe, "__name__", repr(probe))


# ── Public API ─────────────────────────────────────────────


async def eventually(
    probe: Probe[T],
    *,
    timeout: float | None = None,
    interval: float | None = None,
    description: str = "",
) -> T:
    """Poll *probe* until it passes.

    A probe passes when it returns without raising ``AssertionError`` and
    its result is not ``False``.  Sync and async probes are both accepted.

    Args:
        probe: Zero-argument callable to poll.
        timeout: Give up after this many seconds (default from config).
        interval: Delay between attempts (default from config).
        description: Used in the failure message.

    Returns:
        The probe's value from the passing attempt.

    Raises:
        ConvergenceError: chained to the last failure when time runs out.
    """
    defaults = load_config().eventually
    timeout = defaults.timeout if timeout is None else timeout
    interval = defaults.interval if interval is None else interval

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    attempts = 0
    last_exc: AssertionError | None = None
    while True:
        attempts += 1
        try:
            value = await _call(probe)
            _check(value)
            return value
        except AssertionError as exc:
            last_exc = exc
        if loop.time() + interval > deadline:
            break
        await asyncio.sleep(interval)

    what = _describe(probe, description)
    logger.debug("%s did not converge after %d attempts", what, attempts)
    raise ConvergenceError(
        f"{what} did not pass within {timeout:.1f}s ({attempts} attempts): {last_exc}"
    ) from last_exc


async def consistently(
    probe: Probe[Any],
    *,
    duration: float | None = None,
    interval: float | None = None,
    description: str = "",
) -> None:
    """Require *probe* to pass on every poll for *duration* seconds.

    Raises:
        ConvergenceError: on the first failing poll.
    """
    defaults = load_config().eventually
    duration = defaults.consistently_duration if duration is None else duration
    interval = defaults.consistently_interval if interval is None else interval

    loop = asyncio.get_running_loop()
    deadline = loop.time() + duration
    while True:
        try:
            _check(await _call(probe))
        except AssertionError as exc:
            what = _describe(probe, description)
            raise ConvergenceError(f"{what} stopped holding: {exc}") from exc
        if loop.time() >= deadline:
            return
        await asyncio.sleep(interval)
