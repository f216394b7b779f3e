"""CLI command for showing a worker's address table."""

# Topoharness - Multi-process Topology Harness
# Copyright (C) 2026 Topoharness Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import argparse
import sys


def cmd_ports(args: argparse.Namespace) -> None:
    """Print the ``service -> host:port`` table for one worker."""
    import orjson

    from harness.config import load_config
    from harness.exceptions import AllocationError
    from harness.ports import ComponentAddresses, worker_index_from_env

    config = load_config()
    worker = args.worker if args.worker is not None else worker_index_from_env()
    base_port = args.base_port if args.base_port is not None else config.ports.base_port

    try:
        addresses = ComponentAddresses.for_worker(
            worker,
            base_port=base_port,
            host=config.ports.host,
            worker_stride=config.ports.worker_stride,
            service_stride=config.ports.service_stride,
            max_port=config.ports.max_port,
        )
    except AllocationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    table = addresses.as_table()
    table["rep-0"] = addresses.rep_address(0)
    table["rep-0 (tls)"] = addresses.rep_secure_address(0)

    if args.json:
        print(orjson.dumps(table, option=orjson.OPT_INDENT_2).decode())
        return

    print(f"Worker {worker} (base port {base_port})")
    width = max(len(name) for name in table)
    for name, address in table.items():
        print(f"  {name:<{width}}  {address}")
