# Topoharness - Multi-process Topology Harness
# Copyright (C) 2026 Topoharness Authors
# SPDX-License-Identifier: Apache-2.0
"""
Readiness detection by scanning process output for a marker substring.

The output pump hands every line to :meth:`ReadinessDetector.feed`, which
only enqueues it on an unbounded queue and never blocks.  The scan itself
happens in :meth:`ReadinessDetector.wait`, on the waiter's side.
"""

from __future__ import annotations

import asyncio
import logging

from harness.exceptions import ExitedBeforeReadyError, ReadinessTimeoutError

logger = logging.getLogger(__name__)


class ReadinessDetector:
    """Single-fire detector for a literal marker in a line stream.

    May be created and fed before anyone waits on it; lines fed early are
    queued and scanned once :meth:`wait` runs, so there is no race between
    spawning a process and its first line of output.
    """

    def __init__(self, process_name: str, marker: str, timeout: float) -> None:
        if not marker:
            raise ValueError("readiness marker must not be empty")
        if timeout <= 0:
            raise ValueError("readiness timeout must be > 0")
        self.process_name = process_name
        self.marker = marker
        self.timeout = timeout
        self._lines: asyncio.Queue[str | None] = asyncio.Queue()
        self._fired = False
        self._closed = False

    @property
    def fired(self) -> bool:
        return self._fired

    def feed(self, line: str) -> None:
        """Queue *line* for scanning.  Ignored once the detector has fired."""
        if not self._fired and not self._closed:
            self._lines.put_nowait(line)

    def close(self) -> None:
        """Mark end of output.  A pending :meth:`wait` fails once the queue drains."""
        if not self._closed:
            self._closed = True
            self._lines.put_nowait(None)

    def drain(self) -> bool:
        """Scan whatever is queued without waiting; return whether it fired."""
        while not self._fired:
            try:
                line = self._lines.get_nowait()
            except asyncio.QueueEmpty:
                break
            if line is None:
                self._lines.put_nowait(None)
                break
            self._scan(line)
        return self._fired

    def _scan(self, line: str) -> None:
        if self.marker in line:
            self._fired = True
            logger.debug("Readiness marker seen for %s: %r", self.process_name, self.marker)

    async def wait(self) -> None:
        """Resolve once the marker has been seen.

        Raises:
            ReadinessTimeoutError: if ``timeout`` seconds elapse first.
            ExitedBeforeReadyError: if the output ends without the marker.
        """
        try:
            async with asyncio.timeout(self.timeout):
                while not self._fired:
                    line = await self._lines.get()
                    if line is None:
                        raise ExitedBeforeReadyError(self.process_name, None)
                    self._scan(line)
        except TimeoutError:
            # a line may have been queued right at the deadline
            if self.drain():
                return
            raise ReadinessTimeoutError(
                self.process_name, self.marker, self.timeout
            ) from None
