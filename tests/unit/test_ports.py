# Topoharness - Multi-process Topology Harness
# Copyright (C) 2026 Topoharness Authors
# SPDX-License-Identifier: Apache-2.0
"""Unit tests for harness/ports.py: worker-partitioned port allocation."""

from __future__ import annotations

import pytest

from harness.exceptions import AllocationError
from harness.ports import (
    MAX_REP_INSTANCES,
    SERVICE_OFFSETS,
    ComponentAddresses,
    allocate_port,
    split_host_port,
    worker_index_from_env,
)


# ── allocate_port ─────────────────────────────────────────


class TestAllocatePort:
    def test_formula(self):
        assert allocate_port(10000, 0, 0) == 10000
        assert allocate_port(10000, 2, 3) == 12030

    def test_distinct_workers_never_collide(self):
        for offset in (0, 5, 99):
            ports = {allocate_port(10000, w, offset) for w in range(20)}
            assert len(ports) == 20

    def test_distinct_offsets_never_collide(self):
        for worker in (0, 7):
            ports = {allocate_port(10000, worker, o) for o in range(100)}
            assert len(ports) == 100

    def test_worker_blocks_do_not_overlap(self):
        worker0 = {allocate_port(10000, 0, o) for o in range(100)}
        worker1 = {allocate_port(10000, 1, o) for o in range(100)}
        assert worker0.isdisjoint(worker1)

    def test_custom_strides(self):
        port = allocate_port(20000, 1, 2, worker_stride=100, service_stride=5)
        assert port == 20110

    @pytest.mark.parametrize("worker,offset", [(-1, 0), (0, -1)])
    def test_negative_inputs_rejected(self, worker, offset):
        with pytest.raises(AllocationError):
            allocate_port(10000, worker, offset)

    def test_offset_overflowing_worker_block_rejected(self):
        # offset 100 * stride 10 would land in worker 1's block
        with pytest.raises(AllocationError, match="overflows"):
            allocate_port(10000, 0, 100)

    def test_port_above_max_rejected(self):
        with pytest.raises(AllocationError, match="outside"):
            allocate_port(10000, 30, 0)

    def test_port_below_ephemeral_floor_rejected(self):
        with pytest.raises(AllocationError):
            allocate_port(500, 0, 0)

    def test_allocation_error_is_value_error(self):
        with pytest.raises(ValueError):
            allocate_port(10000, -1, 0)


# ── worker_index_from_env ─────────────────────────────────


class TestWorkerIndexFromEnv:
    def test_default_zero(self):
        assert worker_index_from_env() == 0

    def test_xdist_worker(self, monkeypatch):
        monkeypatch.setenv("PYTEST_XDIST_WORKER", "gw3")
        assert worker_index_from_env() == 3

    def test_explicit_env_wins(self, monkeypatch):
        monkeypatch.setenv("PYTEST_XDIST_WORKER", "gw3")
        monkeypatch.setenv("HARNESS_WORKER_INDEX", "5")
        assert worker_index_from_env() == 5

    def test_unrecognised_xdist_value(self, monkeypatch):
        monkeypatch.setenv("PYTEST_XDIST_WORKER", "master")
        assert worker_index_from_env() == 0


# ── ComponentAddresses ────────────────────────────────────


class TestComponentAddresses:
    def test_every_service_has_an_address(self):
        addrs = ComponentAddresses.for_worker(1)
        table = addrs.as_table()
        assert set(table) == set(SERVICE_OFFSETS)
        assert addrs.bbs == "127.0.0.1:11020"
        assert addrs.nats == "127.0.0.1:11000"

    def test_addresses_unique_within_worker(self):
        addrs = ComponentAddresses.for_worker(0)
        every = list(addrs.as_table().values())
        every += [addrs.rep_address(n) for n in range(MAX_REP_INSTANCES)]
        every += [addrs.rep_secure_address(n) for n in range(MAX_REP_INSTANCES)]
        assert len(every) == len(set(every))

    def test_workers_do_not_share_addresses(self):
        a = set(ComponentAddresses.for_worker(0).as_table().values())
        b = set(ComponentAddresses.for_worker(1).as_table().values())
        assert a.isdisjoint(b)

    def test_rep_instance_out_of_range(self):
        addrs = ComponentAddresses.for_worker(0)
        with pytest.raises(AllocationError):
            addrs.rep_address(MAX_REP_INSTANCES)

    def test_custom_host(self):
        addrs = ComponentAddresses.for_worker(0, host="10.0.0.5")
        assert addrs.router.startswith("10.0.0.5:")

    def test_worker_beyond_port_range_fails(self):
        with pytest.raises(AllocationError):
            ComponentAddresses.for_worker(40)


def test_split_host_port():
    assert split_host_port("127.0.0.1:10020") == ("127.0.0.1", 10020)
