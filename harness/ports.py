# Topoharness - Multi-process Topology Harness
# Copyright (C) 2026 Topoharness Authors
# SPDX-License-Identifier: Apache-2.0
#
# This file is part of Topoharness, licensed under Apache-2.0.
# See LICENSE for the full license text.

"""Collision-free address allocation for concurrent test workers.

Each worker owns a block of ``worker_stride`` ports starting at
``base_port + worker_index * worker_stride``; inside the block every
service kind owns a slot of ``service_stride`` ports.  As long as the
slots fit in the block, ``(worker_index, service_offset)`` maps to a
unique port, so many copies of the topology can share one host.
"""

from __future__ import annotations

import os
import re

from pydantic import BaseModel

from harness.exceptions import AllocationError

_MIN_PORT = 1024

# ── Service slots ──────────────────────────────────────────────────

# Fixed slot per service kind inside a worker block.
SERVICE_OFFSETS: dict[str, int] = {
    "nats": 0,
    "consul": 1,
    "bbs": 2,
    "health": 3,
    "auctioneer": 4,
    "file_server": 5,
    "router": 6,
    "garden": 7,
    "ssh_proxy": 8,
    "ssh_proxy_health": 9,
    "local_driver": 10,
    "sql": 11,
}

# Cell agent instances get their own ranges: rep-N listens on
# REP_OFFSET + N and serves its TLS API on REP_SECURE_OFFSET + N.
REP_OFFSET = 20
REP_SECURE_OFFSET = 40
MAX_REP_INSTANCES = 20


def allocate_port(
    base_port: int,
    worker_index: int,
    service_offset: int,
    *,
    worker_stride: int = 1000,
    service_stride: int = 10,
    max_port: int = 32767,
) -> int:
    """Return the port for *service_offset* within *worker_index*'s block.

    Raises:
        AllocationError: if the inputs fall outside the domain on which the
            mapping is injective, or the port is outside ``[1024, max_port]``.
    """
    if worker_index < 0:
        raise AllocationError(f"worker_index must be >= 0, got {worker_index}")
    if service_offset < 0:
        raise AllocationError(f"service_offset must be >= 0, got {service_offset}")
    if service_offset * service_stride >= worker_stride:
        raise AllocationError(
            f"service_offset {service_offset} overflows the worker block "
            f"({worker_stride} ports, {service_stride} per service)"
        )

    port = base_port + worker_index * worker_stride + service_offset * service_stride
    if port < _MIN_PORT or port > max_port:
        raise AllocationError(
            f"port {port} for worker {worker_index} / offset {service_offset} "
            f"is outside [{_MIN_PORT}, {max_port}]"
        )
    return port


def worker_index_from_env() -> int:
    """Resolve the current worker index.

    ``HARNESS_WORKER_INDEX`` wins; otherwise pytest-xdist's
    ``PYTEST_XDIST_WORKER`` (``gw0``, ``gw1``, ...) is used; otherwise 0.
    """
    explicit = os.environ.get("HARNESS_WORKER_INDEX")
    if explicit:
        return int(explicit)
    xdist = os.environ.get("PYTEST_XDIST_WORKER", "")
    match = re.fullmatch(r"gw(\d+)", xdist)
    if match:
        return int(match.group(1))
    return 0


# ── Component addresses ────────────────────────────────────────────


class ComponentAddresses(BaseModel):
    """Concrete ``host:port`` addresses for one worker's topology."""

    host: str
    worker_index: int
    base_port: int
    worker_stride: int = 1000
    service_stride: int = 10
    max_port: int = 32767

    nats: str
    consul: str
    bbs: str
    health: str
    auctioneer: str
    file_server: str
    router: str
    garden: str
    ssh_proxy: str
    ssh_proxy_health: str
    local_driver: str
    sql: str

    @classmethod
    def for_worker(
        cls,
        worker_index: int,
        base_port: int = 10000,
        host: str = "127.0.0.1",
        *,
        worker_stride: int = 1000,
        service_stride: int = 10,
        max_port: int = 32767,
    ) -> "ComponentAddresses":
        fields = {
            name: f"{host}:"
            + str(
                allocate_port(
                    base_port,
                    worker_index,
                    offset,
                    worker_stride=worker_stride,
                    service_stride=service_stride,
                    max_port=max_port,
                )
            )
            for name, offset in SERVICE_OFFSETS.items()
        }
        return cls(
            host=host,
            worker_index=worker_index,
            base_port=base_port,
            worker_stride=worker_stride,
            service_stride=service_stride,
            max_port=max_port,
            **fields,
        )

    def _port(self, offset: int) -> int:
        return allocate_port(
            self.base_port,
            self.worker_index,
            offset,
            worker_stride=self.worker_stride,
            service_stride=self.service_stride,
            max_port=self.max_port,
        )

    def rep_address(self, n: int = 0) -> str:
        """Listen address of cell agent instance *n*."""
        _check_rep_instance(n)
        return f"{self.host}:{self._port(REP_OFFSET + n)}"

    def rep_secure_address(self, n: int = 0) -> str:
        """TLS listen address of cell agent instance *n*."""
        _check_rep_instance(n)
        return f"{self.host}:{self._port(REP_SECURE_OFFSET + n)}"

    def as_table(self) -> dict[str, str]:
        return {name: getattr(self, name) for name in SERVICE_OFFSETS}


def _check_rep_instance(n: int) -> None:
    if not 0 <= n < MAX_REP_INSTANCES:
        raise AllocationError(
            f"cell agent instance {n} outside [0, {MAX_REP_INSTANCES})"
        )


def split_host_port(address: str) -> tuple[str, int]:
    host, _, port = address.rpartition(":")
    return host, int(port)
