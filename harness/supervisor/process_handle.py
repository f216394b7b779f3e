"""
Process handle for managing one supervised child process.
"""

# Topoharness - Multi-process Topology Harness
# Copyright (C) 2026 Topoharness Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TextIO

from harness.exceptions import (
    CleanupError,
    ExitedBeforeReadyError,
    NonZeroExitError,
    ProcessError,
    ReadinessTimeoutError,
    SpawnError,
    UnexpectedExitError,
)
from harness.logging_config import output_logger
from harness.supervisor.descriptor import ProcessDescriptor
from harness.supervisor.readiness import ReadinessDetector
from harness.time_utils import now_local

logger = logging.getLogger(__name__)

# asyncio's default 64 KiB line limit is too small for JSON log lines
_STREAM_LIMIT = 1024 * 1024
# how long to keep draining output after the process itself has exited
_DRAIN_TIMEOUT = 2.0


# ── Process State ──────────────────────────────────────────────────

class ProcessState(Enum):
    """State of a supervised process."""
    PENDING = "pending"          # Not launched yet
    STARTING = "starting"        # Spawned, waiting for readiness marker
    READY = "ready"              # Readiness marker seen
    STOPPING = "stopping"        # Stop signal delivered
    EXITED = "exited"            # Reaped after a requested stop
    FAILED = "failed"            # Never became ready, or died unasked


@dataclass
class ProcessStats:
    """Process timestamps and exit result."""
    started_at: datetime | None = None
    ready_at: datetime | None = None
    stopped_at: datetime | None = None
    exit_code: int | None = None


@dataclass(frozen=True)
class StateTransition:
    """One lifecycle transition, as published to supervisor observers."""
    process_name: str
    old: ProcessState
    new: ProcessState
    at: datetime


@dataclass(frozen=True)
class ProcessSnapshot:
    """Immutable view of a :class:`ProcessHandle` at one point in time."""
    name: str
    pid: int | None
    state: ProcessState
    returncode: int | None
    output: tuple[str, ...]
    started_at: datetime | None
    ready_at: datetime | None
    stopped_at: datetime | None
    failure: ProcessError | None

    @property
    def ready(self) -> bool:
        return self.state == ProcessState.READY

    @property
    def exited(self) -> bool:
        return self.state in (ProcessState.EXITED, ProcessState.FAILED) and (
            self.returncode is not None or self.pid is None
        )


# ── Process Handle ──────────────────────────────────────────────────

class ProcessHandle:
    """
    Runtime state of one launched descriptor.

    Two worker tasks run per process: the output pump (capture, forward,
    feed detectors) and the exit watcher.  Only those tasks and the owning
    supervisor mutate the handle; callers see :class:`ProcessSnapshot`.
    """

    def __init__(
        self,
        descriptor: ProcessDescriptor,
        ready_timeout: float,
        output_buffer_lines: int = 10000,
        output_stream: TextIO | None = None,
        on_transition: Callable[[StateTransition], None] | None = None,
    ):
        self.descriptor = descriptor
        self.name = descriptor.name
        self.ready_timeout = ready_timeout
        self.output_stream = output_stream
        self.on_transition = on_transition

        self.state = ProcessState.PENDING
        self.process: asyncio.subprocess.Process | None = None
        self.stats = ProcessStats()
        self.output: deque[str] = deque(maxlen=output_buffer_lines)
        self.errors: list[ProcessError] = []
        self.failure: ProcessError | None = None

        self._detectors: list[ReadinessDetector] = []
        self._ready_detector: ReadinessDetector | None = None
        self._signals_sent: list[int] = []
        self._stop_requested = False
        self._cleanup_done = False
        self._exited = asyncio.Event()
        self._pump_task: asyncio.Task | None = None
        self._watch_task: asyncio.Task | None = None
        self._log = output_logger(self.name)

    # ── State ────────────────────────────────────────────────────

    @property
    def launched(self) -> bool:
        return self.process is not None

    @property
    def has_exited(self) -> bool:
        return self._exited.is_set()

    @property
    def signals_sent(self) -> tuple[int, ...]:
        return tuple(self._signals_sent)

    def get_pid(self) -> int | None:
        return self.process.pid if self.process else None

    def _set_state(self, new: ProcessState) -> None:
        old = self.state
        if old == new:
            return
        self.state = new
        logger.debug("%s: %s -> %s", self.name, old.value, new.value)
        if self.on_transition is not None:
            self.on_transition(StateTransition(self.name, old, new, now_local()))

    def _fail(self, error: ProcessError, *, record: bool = True) -> None:
        self.failure = error
        if record:
            self.errors.append(error)
        self._set_state(ProcessState.FAILED)

    def snapshot(self) -> ProcessSnapshot:
        return ProcessSnapshot(
            name=self.name,
            pid=self.get_pid(),
            state=self.state,
            returncode=self.stats.exit_code,
            output=tuple(self.output),
            started_at=self.stats.started_at,
            ready_at=self.stats.ready_at,
            stopped_at=self.stats.stopped_at,
            failure=self.failure,
        )

    # ── Start ────────────────────────────────────────────────────

    async def start(self) -> None:
        """
        Spawn the process and block until it reports readiness.

        Raises:
            SpawnError: if the executable cannot be started.
            ReadinessTimeoutError: if the marker is not seen in time.
            ExitedBeforeReadyError: if the process exits first.
        """
        if self.state != ProcessState.PENDING:
            raise RuntimeError(f"Cannot start {self.name} in state {self.state}")

        desc = self.descriptor
        detector: ReadinessDetector | None = None
        if desc.ready_marker:
            # attached before spawn so the first output line cannot be missed
            detector = ReadinessDetector(self.name, desc.ready_marker, self.ready_timeout)
            self._ready_detector = detector
            self._detectors.append(detector)

        env = None
        if desc.env is not None:
            env = {**os.environ, **desc.env}

        self._set_state(ProcessState.STARTING)
        self.stats.started_at = now_local()
        logger.info("Starting process: %s", self.name)
        logger.debug("Command: %s", " ".join(desc.command))

        try:
            self.process = await asyncio.create_subprocess_exec(
                *desc.command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=env,
                cwd=desc.cwd,
                start_new_session=True,
                limit=_STREAM_LIMIT,
            )
        except OSError as exc:
            logger.error("Failed to spawn %s: %s", self.name, exc)
            error = SpawnError(self.name, f"cannot execute {desc.executable!r}: {exc}")
            self._fail(error, record=False)
            self._run_cleanup()
            self._exited.set()
            raise error from exc

        logger.info("Process started: %s (PID %s)", self.name, self.process.pid)
        self._pump_task = asyncio.create_task(
            self._pump_output(), name=f"pump:{self.name}"
        )
        self._watch_task = asyncio.create_task(
            self._watch_exit(), name=f"watch:{self.name}"
        )

        if detector is None:
            self._mark_ready()
            return

        try:
            await self._wait_for_ready(detector)
        finally:
            self._detach(detector)

    async def _wait_for_ready(self, detector: ReadinessDetector) -> None:
        ready = asyncio.create_task(detector.wait())
        exited = asyncio.create_task(self._exited.wait())
        try:
            await asyncio.wait({ready, exited}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            exited.cancel()
            if not ready.done():
                ready.cancel()

        if ready.done() and not ready.cancelled():
            try:
                ready.result()
            except ReadinessTimeoutError as exc:
                if self.state == ProcessState.STARTING:
                    logger.error("%s", exc)
                    self._fail(exc, record=False)
                raise
            if self.state == ProcessState.STARTING:
                self._mark_ready()
            if self.failure is None and not self.has_exited:
                return

        # The watcher already classified the exit (see _classify_exit).
        if self.failure is not None:
            raise self.failure
        raise ExitedBeforeReadyError(self.name, self.stats.exit_code)

    def _mark_ready(self) -> None:
        self.stats.ready_at = now_local()
        self._set_state(ProcessState.READY)
        logger.info("Process ready: %s", self.name)

    def _detach(self, detector: ReadinessDetector) -> None:
        if detector in self._detectors:
            self._detectors.remove(detector)

    async def expect_output(self, marker: str, timeout: float) -> None:
        """Wait until *marker* appears in the captured output.

        Lines captured before the call count.

        Raises:
            ReadinessTimeoutError: if the marker does not appear in time.
            ExitedBeforeReadyError: if the process exits without printing it.
        """
        detector = ReadinessDetector(self.name, marker, timeout)
        for line in self.output:
            detector.feed(line)
        if self.has_exited:
            detector.close()
        self._detectors.append(detector)
        try:
            await detector.wait()
        finally:
            self._detach(detector)

    # ── Workers ──────────────────────────────────────────────────

    async def _pump_output(self) -> None:
        assert self.process is not None and self.process.stdout is not None
        reader = self.process.stdout
        while True:
            try:
                raw = await reader.readline()
            except ValueError:
                # overlong line; the reader already discarded it
                logger.warning("%s: dropped an output line over %d bytes", self.name, _STREAM_LIMIT)
                continue
            if not raw:
                break
            self._record_line(raw.decode("utf-8", errors="replace").rstrip("\r\n"))

    def _record_line(self, line: str) -> None:
        self.output.append(line)
        for detector in self._detectors:
            detector.feed(line)
        self._log.debug("%s", line)
        if self.output_stream is not None:
            color = self.descriptor.color
            prefix = f"\x1b[{color}[{self.name}]\x1b[0m" if color else f"[{self.name}]"
            self.output_stream.write(f"{prefix} {line}\n")
            self.output_stream.flush()

    async def _watch_exit(self) -> None:
        assert self.process is not None
        returncode = await self.process.wait()

        # grandchildren may keep the pipe open; do not wait on them forever
        if self._pump_task is not None:
            try:
                async with asyncio.timeout(_DRAIN_TIMEOUT):
                    await asyncio.shield(self._pump_task)
            except TimeoutError:
                logger.debug("%s: output still open after exit; detaching", self.name)
                self._pump_task.cancel()

        self.stats.exit_code = returncode
        self.stats.stopped_at = now_local()
        self._classify_exit(returncode)
        self._run_cleanup()
        self._exited.set()
        for detector in list(self._detectors):
            if detector is not self._ready_detector:
                detector.close()

    def _classify_exit(self, returncode: int) -> None:
        if self.state == ProcessState.FAILED:
            logger.info("Failed process reaped: %s (code=%s)", self.name, returncode)
            return

        if self._stop_requested:
            if returncode != 0 and not self._caused_by_own_signal(returncode):
                error = NonZeroExitError(self.name, returncode)
                logger.warning("%s", error)
                self.errors.append(error)
            self._set_state(ProcessState.EXITED)
            logger.info("Process exited: %s (code=%s)", self.name, returncode)
            return

        if self.state == ProcessState.STARTING:
            detector = self._ready_detector
            if detector is None or not detector.drain():
                early = ExitedBeforeReadyError(self.name, returncode)
                logger.error("%s", early)
                self._fail(early, record=False)
                return
            self._mark_ready()

        crash = UnexpectedExitError(self.name, returncode)
        logger.error("%s", crash)
        self._fail(crash)

    def _caused_by_own_signal(self, returncode: int) -> bool:
        if returncode < 0:
            return -returncode in self._signals_sent
        # shells report death-by-signal as 128 + signum
        return returncode > 128 and (returncode - 128) in self._signals_sent

    def discard(self) -> None:
        """Run the cleanup of a descriptor that was never spawned."""
        if self.process is None:
            self._run_cleanup()

    def _run_cleanup(self) -> None:
        if self._cleanup_done:
            return
        self._cleanup_done = True
        if self.descriptor.cleanup is None:
            return
        try:
            self.descriptor.cleanup()
        except Exception as exc:
            logger.exception("Cleanup failed for %s", self.name)
            self.errors.append(CleanupError(self.name, f"cleanup raised {exc!r}"))

    # ── Signals ──────────────────────────────────────────────────

    def send_signal(self, sig: int) -> bool:
        """Deliver *sig* to the process group of this process.

        Returns False if the process was never launched or already exited.
        """
        if self.process is None or self.has_exited:
            return False

        # reaped while output still drains: it died on its own, not from this stop
        if self.process.returncode is None:
            self._stop_requested = True
            if self.state in (ProcessState.STARTING, ProcessState.READY):
                self._set_state(ProcessState.STOPPING)
        self._signals_sent.append(int(sig))

        logger.info(
            "Sending %s to %s (PID %s)",
            signal.Signals(sig).name, self.name, self.process.pid,
        )
        try:
            os.killpg(self.process.pid, sig)
        except ProcessLookupError:
            logger.debug("%s already gone when signalled", self.name)
        except PermissionError:
            # the group leader may have been reaped and the pgid reused
            with contextlib.suppress(ProcessLookupError):
                self.process.send_signal(sig)
        return True

    async def wait_exited(self, timeout: float | None = None) -> bool:
        """Wait for the exit watcher to finish; return False on timeout."""
        if not self.launched:
            return True
        try:
            async with asyncio.timeout(timeout):
                await self._exited.wait()
        except TimeoutError:
            return False
        return True
