# Topoharness - Multi-process Topology Harness
# Copyright (C) 2026 Topoharness Authors
# SPDX-License-Identifier: Apache-2.0
"""
Immutable launch descriptors and composable process groups.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Union


@dataclass(frozen=True)
class ProcessDescriptor:
    """Everything needed to launch one child process.

    ``ready_marker`` is a literal substring the service prints once it is
    fully initialized; ``None`` means the process counts as ready as soon
    as it is spawned.  ``ready_timeout`` of ``None`` is resolved from the
    supervisor's configured default, so no readiness wait is unbounded.
    ``cleanup`` runs exactly once after the process exits.
    """

    name: str
    command: tuple[str, ...]
    ready_marker: str | None = None
    ready_timeout: float | None = None
    color: str | None = None
    env: Mapping[str, str] | None = None
    cwd: Path | None = None
    cleanup: Callable[[], None] | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("process name must not be empty")
        if not self.command:
            raise ValueError(f"process {self.name!r} has an empty command")
        # allow lists from callers while keeping the value hashable
        object.__setattr__(self, "command", tuple(str(c) for c in self.command))
        if self.ready_timeout is not None and self.ready_timeout <= 0:
            raise ValueError(f"process {self.name!r}: ready_timeout must be > 0")

    @property
    def executable(self) -> str:
        return self.command[0]


@dataclass(frozen=True)
class Group:
    """Ordered or parallel collection of descriptors and nested groups."""

    name: str
    members: tuple["Member", ...]
    ordered: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "members", tuple(self.members))
        seen: set[str] = set()
        for member in self.members:
            if member.name in seen:
                raise ValueError(
                    f"group {self.name!r} has duplicate member name {member.name!r}"
                )
            seen.add(member.name)

    def descriptors(self) -> list[ProcessDescriptor]:
        """All transitive process descriptors in declaration order."""
        result: list[ProcessDescriptor] = []
        for member in self.members:
            if isinstance(member, Group):
                result.extend(member.descriptors())
            else:
                result.append(member)
        return result


Member = Union[ProcessDescriptor, Group]


def ordered(name: str, *members: Member) -> Group:
    """Group whose members start one after another, stop in reverse."""
    return Group(name=name, members=members, ordered=True)


def parallel(name: str, *members: Member) -> Group:
    """Group whose members start and stop concurrently."""
    return Group(name=name, members=members, ordered=False)
