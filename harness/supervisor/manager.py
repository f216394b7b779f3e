"""
Process Supervisor - boots, observes and tears down process topologies.
"""

# Topoharness - Multi-process Topology Harness
# Copyright (C) 2026 Topoharness Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from signal import SIGINT, SIGKILL, Signals
from typing import TextIO

from harness.config import HarnessConfig, load_config
from harness.exceptions import ProcessError, ShutdownError
from harness.supervisor.descriptor import Group, Member, ProcessDescriptor
from harness.supervisor.process_handle import (
    ProcessHandle,
    ProcessSnapshot,
    ProcessState,
    StateTransition,
)

logger = logging.getLogger(__name__)


# ── Handles & snapshots ────────────────────────────────────────────

@dataclass(frozen=True)
class Handle:
    """Opaque reference to an invoked descriptor or group."""
    id: str
    name: str


@dataclass(frozen=True)
class GroupSnapshot:
    """Immutable view of a group; members in declaration order."""
    name: str
    ordered: bool
    members: tuple["ProcessSnapshot | GroupSnapshot", ...]

    @property
    def ready(self) -> bool:
        return all(m.ready for m in self.members)

    @property
    def exited(self) -> bool:
        return all(m.exited for m in self.members)


@dataclass
class _Node:
    """Arena record: one descriptor or group plus its runtime state."""
    handle: Handle
    member: Member
    process: ProcessHandle | None = None
    children: list["_Node"] = field(default_factory=list)
    propagations: list[asyncio.Task] = field(default_factory=list)

    @property
    def ordered(self) -> bool:
        return isinstance(self.member, Group) and self.member.ordered

    def leaves(self) -> list[ProcessHandle]:
        if self.process is not None:
            return [self.process]
        result: list[ProcessHandle] = []
        for child in self.children:
            result.extend(child.leaves())
        return result


# ── Process Supervisor ─────────────────────────────────────────────

class Supervisor:
    """
    Supervisor for one disposable multi-process topology.

    Responsibilities:
    - Launch descriptors and groups, blocking until ready or first failure
    - Unwind partially started groups in reverse start order
    - Propagate caller-chosen signals through group membership
    - Collect every exit, shutdown and cleanup error without short-circuiting

    Each instance owns its own arena of handles; there is no module-level
    process table.
    """

    def __init__(
        self,
        config: HarnessConfig | None = None,
        output: TextIO | None = None,
    ):
        self.config = config or load_config()
        self.output = output
        self._arena: dict[str, _Node] = {}
        self._invoked: list[str] = []
        self.transitions: asyncio.Queue[StateTransition] = asyncio.Queue()

    # ── Arena ────────────────────────────────────────────────────

    def _build(self, member: Member) -> _Node:
        handle = Handle(id=uuid.uuid4().hex[:12], name=member.name)
        node = _Node(handle=handle, member=member)
        if isinstance(member, ProcessDescriptor):
            node.process = ProcessHandle(
                member,
                ready_timeout=member.ready_timeout
                or self.config.timeouts.default_ready_timeout,
                output_buffer_lines=self.config.output_buffer_lines,
                output_stream=self.output,
                on_transition=self.transitions.put_nowait,
            )
        else:
            node.children = [self._build(child) for child in member.members]
        self._arena[handle.id] = node
        return node

    def _forget(self, node: _Node) -> None:
        self._arena.pop(node.handle.id, None)
        for child in node.children:
            self._forget(child)

    def _node(self, handle: Handle) -> _Node:
        try:
            return self._arena[handle.id]
        except KeyError:
            raise KeyError(f"Unknown handle: {handle.name} ({handle.id})") from None

    # ── Invoke ───────────────────────────────────────────────────

    async def invoke(
        self,
        member: Member,
        *,
        unwind_signal: int = SIGINT,
    ) -> Handle:
        """
        Launch *member* and block until all of it is ready.

        Args:
            member: A process descriptor or a (nested) group.
            unwind_signal: Signal sent to already-started processes when
                the launch fails.

        Returns:
            Handle for later :meth:`signal` / :meth:`wait` / :meth:`stop`.

        Raises:
            ProcessError: the first failure (readiness timeout, exit before
                ready, spawn failure).  Everything already started has been
                stopped and reaped by the time it propagates.
        """
        node = self._build(member)
        logger.info("Invoking %s", member.name)
        try:
            await self._start(node)
        except (ProcessError, asyncio.CancelledError) as exc:
            logger.error("Invoke of %s failed: %r", member.name, exc)
            await self._stop_node(node, unwind_signal, self.config.timeouts.stop_timeout)
            for error in self._collect_errors(node):
                logger.warning("Error while unwinding %s: %s", member.name, error)
            self._forget(node)
            raise
        self._invoked.append(node.handle.id)
        logger.info("Invoked %s: ready", member.name)
        return node.handle

    async def _start(self, node: _Node) -> None:
        if node.process is not None:
            await node.process.start()
            return

        if node.ordered:
            for child in node.children:
                await self._start(child)
            return

        tasks = [
            asyncio.create_task(self._start(child), name=f"start:{child.handle.name}")
            for child in node.children
        ]
        if not tasks:
            return
        try:
            done, pending = await asyncio.wait(
                tasks, return_when=asyncio.FIRST_EXCEPTION
            )
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        failed = [
            t for t in tasks
            if t in done and not t.cancelled() and t.exception() is not None
        ]
        if not failed:
            return
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        raise failed[0].exception()

    # ── Signal / Wait ────────────────────────────────────────────

    async def signal(self, handle: Handle, sig: int) -> None:
        """
        Deliver *sig* to every process under *handle*.

        Ordered groups are signalled depth-first in reverse start order,
        each member only after the later one has exited; parallel groups
        are signalled all at once.  Returns as soon as propagation is
        scheduled; :meth:`wait` blocks on it.
        """
        node = self._node(handle)
        logger.info("Signalling %s with %s", handle.name, Signals(sig).name)
        task = asyncio.create_task(
            self._propagate(node, sig), name=f"signal:{handle.name}"
        )
        node.propagations.append(task)
        # let the first signals go out before returning
        await asyncio.sleep(0)

    async def _propagate(self, node: _Node, sig: int) -> None:
        if node.process is not None:
            node.process.send_signal(sig)
            return

        if node.ordered:
            for child in reversed(node.children):
                await self._propagate(child, sig)
                await self._wait_node_exited(child)
            return

        await asyncio.gather(*(self._propagate(child, sig) for child in node.children))

    async def _wait_node_exited(self, node: _Node, timeout: float | None = None) -> bool:
        results = await asyncio.gather(
            *(leaf.wait_exited(timeout) for leaf in node.leaves())
        )
        return all(results)

    async def wait(self, handle: Handle) -> list[ProcessError]:
        """
        Block until every process under *handle* has exited.

        Returns:
            Every recorded error, one entry per failure (unexpected exits,
            nonzero statuses, unreaped processes, cleanup failures).
        """
        node = self._node(handle)
        while node.propagations:
            tasks = list(node.propagations)
            await asyncio.gather(*tasks)
            for task in tasks:
                node.propagations.remove(task)
        await self._wait_node_exited(node)
        return self._collect_errors(node)

    def _collect_errors(self, node: _Node) -> list[ProcessError]:
        errors: list[ProcessError] = []
        for leaf in node.leaves():
            errors.extend(leaf.errors)
        return errors

    # ── Stop ─────────────────────────────────────────────────────

    async def stop(
        self,
        handle: Handle,
        sig: int = SIGINT,
        timeout: float | None = None,
    ) -> list[ProcessError]:
        """
        Signal, wait, and escalate to SIGKILL where needed.

        Every member is visited regardless of earlier failures; the full
        error list is returned rather than raised.  Descriptors that were
        never launched still get their cleanup.  A stopped handle is no
        longer part of :meth:`shutdown_all`.
        """
        node = self._node(handle)
        if timeout is None:
            timeout = self.config.timeouts.stop_timeout
        await self._stop_node(node, sig, timeout)
        errors = await self.wait(handle)
        if handle.id in self._invoked:
            self._invoked.remove(handle.id)
        if errors:
            logger.warning("%d error(s) stopping %s", len(errors), handle.name)
        return errors

    async def _stop_node(self, node: _Node, sig: int, timeout: float) -> None:
        if node.process is not None:
            await self._stop_process(node.process, sig, timeout)
            return

        if node.ordered:
            for child in reversed(node.children):
                await self._stop_node(child, sig, timeout)
            return

        await asyncio.gather(
            *(self._stop_node(child, sig, timeout) for child in node.children)
        )

    async def _stop_process(self, proc: ProcessHandle, sig: int, timeout: float) -> None:
        if not proc.launched:
            proc.discard()
            return
        if proc.has_exited:
            return

        # a process that never became ready gets no grace period
        first = SIGKILL if proc.state == ProcessState.FAILED else sig
        proc.send_signal(first)
        if await proc.wait_exited(timeout):
            return

        logger.warning(
            "%s did not exit within %.1fs of %s; sending SIGKILL",
            proc.name, timeout, Signals(first).name,
        )
        proc.send_signal(SIGKILL)
        if await proc.wait_exited(self.config.timeouts.reap_timeout):
            return

        error = ShutdownError(
            proc.name,
            f"still running {self.config.timeouts.reap_timeout:.1f}s after SIGKILL "
            f"(PID {proc.get_pid()})",
        )
        logger.error("%s", error)
        proc.errors.append(error)

    async def shutdown_all(self, sig: int = SIGINT) -> list[ProcessError]:
        """Stop every invoked handle, most recent first; return all errors."""
        logger.info("Shutting down %d invoked topologies", len(self._invoked))
        errors: list[ProcessError] = []
        for handle_id in list(reversed(self._invoked)):
            node = self._arena[handle_id]
            errors.extend(await self.stop(node.handle, sig))
        self._invoked.clear()
        logger.info("All processes shut down")
        return errors

    # ── Observation ──────────────────────────────────────────────

    def snapshot(self, handle: Handle) -> ProcessSnapshot | GroupSnapshot:
        return self._snapshot(self._node(handle))

    def _snapshot(self, node: _Node) -> ProcessSnapshot | GroupSnapshot:
        if node.process is not None:
            return node.process.snapshot()
        return GroupSnapshot(
            name=node.handle.name,
            ordered=node.ordered,
            members=tuple(self._snapshot(child) for child in node.children),
        )

    def errors(self, handle: Handle) -> list[ProcessError]:
        """Errors recorded so far under *handle*, without blocking."""
        return self._collect_errors(self._node(handle))

    def find(self, handle: Handle, name: str) -> Handle:
        """Return the handle of the descendant process or group *name*."""
        pending = [self._node(handle)]
        while pending:
            node = pending.pop()
            if node.handle.name == name:
                return node.handle
            pending.extend(node.children)
        raise KeyError(f"{name!r} is not part of {handle.name}")

    async def expect_output(
        self,
        handle: Handle,
        marker: str,
        timeout: float | None = None,
    ) -> None:
        """Wait for *marker* in a single process's output."""
        node = self._node(handle)
        if node.process is None:
            raise TypeError(f"{handle.name} is a group; expect_output needs a process")
        await node.process.expect_output(
            marker, timeout or self.config.timeouts.default_ready_timeout
        )
