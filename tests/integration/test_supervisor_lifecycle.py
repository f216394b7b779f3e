"""Integration tests for supervisor start, signal, stop and shutdown."""

# Topoharness - Multi-process Topology Harness
# Copyright (C) 2026 Topoharness Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import io
import signal
from pathlib import Path

import pytest
import structlog

psutil = pytest.importorskip("psutil")

from cli.commands.up import run_topology
from harness.config import HarnessConfig
from harness.exceptions import NonZeroExitError, ReadinessTimeoutError
from harness.logging_config import get_scenario
from harness.supervisor import (
    ProcessDescriptor,
    ProcessState,
    Supervisor,
    ordered,
    parallel,
)
from tests.helpers import children


def _gone(pid: int) -> bool:
    try:
        return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


def _svc(run_dir: Path, name: str, **kwargs) -> ProcessDescriptor:
    marker = f"{name}.started"
    return ProcessDescriptor(
        name=name,
        command=children.service(run_dir, name, marker, **kwargs),
        ready_marker=marker,
    )


# ── Start / stop ──────────────────────────────────────────


@pytest.mark.asyncio
async def test_single_process_lifecycle(run_dir: Path, fast_config: HarnessConfig):
    supervisor = Supervisor(config=fast_config)
    handle = await supervisor.invoke(_svc(run_dir, "bbs"))

    snap = supervisor.snapshot(handle)
    assert snap.state == ProcessState.READY
    assert snap.ready_at is not None
    assert "bbs.started" in snap.output
    assert psutil.pid_exists(snap.pid)

    errors = await supervisor.stop(handle)

    assert errors == []
    snap = supervisor.snapshot(handle)
    assert snap.state == ProcessState.EXITED
    assert snap.returncode == 0
    assert children.signals_received(run_dir, "bbs") == [children.SIGINT]
    assert _gone(snap.pid)


@pytest.mark.asyncio
async def test_ordered_group_start_and_reverse_stop(run_dir: Path, fast_config: HarnessConfig):
    supervisor = Supervisor(config=fast_config)
    handle = await supervisor.invoke(
        ordered("chain", _svc(run_dir, "a"), _svc(run_dir, "b"), _svc(run_dir, "c"))
    )
    assert supervisor.snapshot(handle).ready

    errors = await supervisor.stop(handle)

    assert errors == []
    assert children.events(run_dir) == [
        "start a", "start b", "start c", "stop c", "stop b", "stop a",
    ]
    assert supervisor.snapshot(handle).exited


@pytest.mark.asyncio
async def test_parallel_group_starts_concurrently(run_dir: Path, fast_config: HarnessConfig):
    supervisor = Supervisor(config=fast_config)
    loop = asyncio.get_running_loop()
    start = loop.time()
    handle = await supervisor.invoke(
        parallel(
            "slow",
            _svc(run_dir, "x", delay=1.0),
            _svc(run_dir, "y", delay=1.0),
            _svc(run_dir, "z", delay=1.0),
        )
    )
    elapsed = loop.time() - start
    try:
        # three one-second boots overlap
        assert elapsed < 2.5
    finally:
        errors = await supervisor.shutdown_all()
    assert errors == []
    assert supervisor.snapshot(handle).exited


# ── Signal / wait ─────────────────────────────────────────


@pytest.mark.asyncio
async def test_signal_then_wait(run_dir: Path, fast_config: HarnessConfig):
    supervisor = Supervisor(config=fast_config)
    handle = await supervisor.invoke(
        ordered("pair", _svc(run_dir, "first"), _svc(run_dir, "second"))
    )

    await supervisor.signal(handle, signal.SIGTERM)
    errors = await supervisor.wait(handle)

    assert errors == []
    assert children.signals_received(run_dir, "first") == [children.SIGTERM]
    assert children.signals_received(run_dir, "second") == [children.SIGTERM]
    assert children.events(run_dir)[-2:] == ["stop second", "stop first"]


@pytest.mark.asyncio
async def test_nonzero_exit_after_signal_is_reported(run_dir: Path, fast_config: HarnessConfig):
    supervisor = Supervisor(config=fast_config)
    handle = await supervisor.invoke(_svc(run_dir, "grumpy", exit_code_on_signal=3))

    errors = await supervisor.stop(handle)

    assert [type(e) for e in errors] == [NonZeroExitError]
    assert errors[0].returncode == 3


@pytest.mark.asyncio
async def test_stubborn_process_escalates_to_sigkill(run_dir: Path, fast_config: HarnessConfig):
    supervisor = Supervisor(config=fast_config)
    handle = await supervisor.invoke(
        ProcessDescriptor(
            "stubborn", children.stubborn(run_dir, "stubborn", "ready"), "ready"
        )
    )

    errors = await supervisor.stop(handle, timeout=0.5)

    assert errors == []
    snap = supervisor.snapshot(handle)
    assert snap.returncode == -signal.SIGKILL
    assert _gone(snap.pid)


@pytest.mark.asyncio
async def test_shutdown_all_collects_everything(run_dir: Path, fast_config: HarnessConfig):
    supervisor = Supervisor(config=fast_config)
    first = await supervisor.invoke(_svc(run_dir, "calm"))
    second = await supervisor.invoke(_svc(run_dir, "grumpy", exit_code_on_signal=2))

    errors = await supervisor.shutdown_all()

    assert [e.process_name for e in errors] == ["grumpy"]
    assert supervisor.snapshot(first).exited
    assert supervisor.snapshot(second).exited
    # newest topology is stopped first
    stops = [e for e in children.events(run_dir) if e.startswith("stop")]
    assert stops == ["stop grumpy", "stop calm"]


# ── Cleanup, output, transitions ──────────────────────────


@pytest.mark.asyncio
async def test_cleanup_runs_once_after_exit(run_dir: Path, fast_config: HarnessConfig):
    calls = []
    supervisor = Supervisor(config=fast_config)
    desc = ProcessDescriptor(
        name="tidy",
        command=children.service(run_dir, "tidy", "tidy.started"),
        ready_marker="tidy.started",
        cleanup=lambda: calls.append(1),
    )
    handle = await supervisor.invoke(desc)
    assert calls == []

    await supervisor.stop(handle)
    await supervisor.shutdown_all()

    assert calls == [1]


@pytest.mark.asyncio
async def test_cleanup_runs_for_failed_start(run_dir: Path, fast_config: HarnessConfig):
    calls = []
    supervisor = Supervisor(config=fast_config)
    desc = ProcessDescriptor(
        name="late",
        command=children.never_ready(run_dir, "late"),
        ready_marker="late.started",
        ready_timeout=0.5,
        cleanup=lambda: calls.append(1),
    )
    with pytest.raises(ReadinessTimeoutError):
        await supervisor.invoke(desc)
    assert calls == [1]


@pytest.mark.asyncio
async def test_output_multiplexed_with_color(run_dir: Path, fast_config: HarnessConfig):
    stream = io.StringIO()
    supervisor = Supervisor(config=fast_config, output=stream)
    desc = ProcessDescriptor(
        name="router",
        command=children.service(run_dir, "router", "router.started"),
        ready_marker="router.started",
        color="93m",
    )
    handle = await supervisor.invoke(desc)
    await supervisor.stop(handle)

    assert "\x1b[93m[router]\x1b[0m router.started\n" in stream.getvalue()


@pytest.mark.asyncio
async def test_expect_output_after_ready(run_dir: Path, fast_config: HarnessConfig):
    supervisor = Supervisor(config=fast_config)
    handle = await supervisor.invoke(
        _svc(run_dir, "rep-0", after_ready=["cell registered"])
    )
    try:
        await supervisor.expect_output(handle, "cell registered", timeout=5.0)
        # already-seen output counts too
        await supervisor.expect_output(handle, "rep-0.started", timeout=0.5)
        with pytest.raises(ReadinessTimeoutError):
            await supervisor.expect_output(handle, "never printed", timeout=0.3)
    finally:
        await supervisor.shutdown_all()


@pytest.mark.asyncio
async def test_transitions_published(run_dir: Path, fast_config: HarnessConfig):
    supervisor = Supervisor(config=fast_config)
    handle = await supervisor.invoke(_svc(run_dir, "nats"))
    await supervisor.stop(handle)

    seen = []
    while not supervisor.transitions.empty():
        t = supervisor.transitions.get_nowait()
        seen.append(t.new)
    assert seen == [
        ProcessState.STARTING,
        ProcessState.READY,
        ProcessState.STOPPING,
        ProcessState.EXITED,
    ]


@pytest.mark.asyncio
async def test_process_without_marker_is_ready_on_spawn(run_dir: Path, fast_config: HarnessConfig):
    supervisor = Supervisor(config=fast_config)
    handle = await supervisor.invoke(
        ProcessDescriptor("quiet", children.never_ready(run_dir, "quiet"))
    )
    assert supervisor.snapshot(handle).ready
    # give the child time to install its handlers before stopping it
    await asyncio.sleep(0.5)
    assert await supervisor.stop(handle) == []


# ── CLI runner ────────────────────────────────────────────


@pytest.mark.asyncio
async def test_run_topology_reports_invoke_failure(run_dir: Path):
    group = ordered(
        "broken",
        ProcessDescriptor("dies", children.exits(run_dir, "dies", 4), "dies.started"),
    )
    errors = await run_topology(group, signal.SIGINT)
    assert len(errors) == 1
    assert errors[0].process_name == "dies"


@pytest.mark.asyncio
async def test_run_topology_tags_scenario(run_dir: Path):
    group = ordered(
        "broken",
        ProcessDescriptor("dies", children.exits(run_dir, "dies", 4), "dies.started"),
    )
    try:
        await run_topology(group, signal.SIGINT)
        assert get_scenario() == "broken"
        await run_topology(group, signal.SIGINT, scenario="evacuation")
        assert get_scenario() == "evacuation"
    finally:
        structlog.contextvars.clear_contextvars()
