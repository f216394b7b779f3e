"""CLI command for booting a topology described in a JSON file."""

# Topoharness - Multi-process Topology Harness
# Copyright (C) 2026 Topoharness Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Union

from pydantic import BaseModel, ValidationError

from harness.exceptions import (
    ConfigError,
    ConfigNotFoundError,
    ConfigValidationError,
    ProcessError,
)
from harness.logging_config import bind_scenario, get_scenario
from harness.supervisor import Group, Member, ProcessDescriptor, Supervisor

logger = logging.getLogger(__name__)


# ── Topology file ─────────────────────────────────────────


class ProcessSpec(BaseModel):
    name: str
    command: list[str]
    ready_marker: str | None = None
    ready_timeout: float | None = None
    color: str | None = None
    env: dict[str, str] | None = None
    cwd: str | None = None


class GroupSpec(BaseModel):
    name: str
    ordered: bool = False
    members: list[Union["GroupSpec", ProcessSpec]]


GroupSpec.model_rebuild()


def _to_member(spec: GroupSpec | ProcessSpec) -> Member:
    if isinstance(spec, GroupSpec):
        return Group(
            name=spec.name,
            members=tuple(_to_member(m) for m in spec.members),
            ordered=spec.ordered,
        )
    return ProcessDescriptor(
        name=spec.name,
        command=tuple(spec.command),
        ready_marker=spec.ready_marker,
        ready_timeout=spec.ready_timeout,
        color=spec.color,
        env=spec.env,
        cwd=Path(spec.cwd) if spec.cwd else None,
    )


def load_topology(path: Path) -> Group:
    """Parse a topology file into a :class:`Group`.

    Raises:
        ConfigNotFoundError: if *path* does not exist.
        ConfigValidationError: if the file is not valid JSON or does not
            describe a group.
    """
    if not path.is_file():
        raise ConfigNotFoundError(f"Topology file not found: {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return _to_member(GroupSpec.model_validate(data))
    except json.JSONDecodeError as exc:
        raise ConfigValidationError(f"Invalid JSON in {path}: {exc}") from exc
    except (ValidationError, ValueError) as exc:
        raise ConfigValidationError(f"Invalid topology in {path}: {exc}") from exc


def _parse_signal(name: str) -> signal.Signals:
    name = name.upper()
    if not name.startswith("SIG"):
        name = f"SIG{name}"
    try:
        return signal.Signals[name]
    except KeyError:
        raise ValueError(f"Unknown signal: {name}") from None


# ── Run ───────────────────────────────────────────────────


async def run_topology(
    topology: Group,
    stop_signal: int,
    scenario: str | None = None,
) -> list[ProcessError]:
    """Boot *topology*, hold until SIGINT/SIGTERM or until it exits, stop it.

    Log lines are tagged with *scenario* (the topology name by default).
    Returns every collected error; a failed invoke contributes its
    failure as the only entry.
    """
    bind_scenario(scenario or topology.name)
    supervisor = Supervisor(output=sys.stdout)
    try:
        handle = await supervisor.invoke(topology)
    except ProcessError as exc:
        logger.error("Scenario %s failed to boot: %s", get_scenario(), exc)
        return [exc]

    print(f"[{get_scenario()}] {topology.name} is up; press Ctrl-C to stop", flush=True)

    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)

    try:
        shutdown = asyncio.create_task(shutdown_event.wait())
        exited = asyncio.create_task(supervisor.wait(handle))
        await asyncio.wait({shutdown, exited}, return_when=asyncio.FIRST_COMPLETED)
        shutdown.cancel()
        if not exited.done():
            exited.cancel()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

    logger.info("Stopping %s", topology.name)
    return await supervisor.stop(handle, stop_signal)


def cmd_up(args: argparse.Namespace) -> None:
    """Boot a topology file; exit 1 if anything failed."""
    try:
        topology = load_topology(Path(args.topology))
        stop_signal = _parse_signal(args.signal)
    except (ConfigError, ValueError, OSError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    errors = asyncio.run(run_topology(topology, stop_signal, args.scenario))
    if errors:
        print(f"{len(errors)} error(s):", file=sys.stderr)
        for error in errors:
            print(f"  {type(error).__name__}: {error}", file=sys.stderr)
        sys.exit(1)
    print(f"{topology.name} stopped cleanly")
