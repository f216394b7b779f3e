# Topoharness - Multi-process Topology Harness
# Copyright (C) 2026 Topoharness Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import argparse
import os
from pathlib import Path


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="harness",
        description="Topoharness - multi-process topology harness",
    )
    parser.add_argument(
        "--log-dir",
        default=None,
        help="Also write JSON logs to harness.log in this directory",
    )
    sub = parser.add_subparsers(dest="command")

    # ── Ports ─────────────────────────────────────────────
    p_ports = sub.add_parser("ports", help="Show the address table of a worker")
    p_ports.add_argument(
        "--worker", type=int, default=None,
        help="Worker index (default: HARNESS_WORKER_INDEX / PYTEST_XDIST_WORKER / 0)",
    )
    p_ports.add_argument(
        "--base-port", type=int, default=None,
        help="First port of worker 0's block (default from config)",
    )
    p_ports.add_argument("--json", action="store_true", help="Output as JSON")
    p_ports.set_defaults(func=_lazy_ports)

    # ── Certs ─────────────────────────────────────────────
    p_certs = sub.add_parser("certs", help="Create a CA and issue leaf certificates")
    p_certs.add_argument("depot", help="Directory receiving keys and certificates")
    p_certs.add_argument(
        "--common-name", required=True, help="Common name of the root CA",
    )
    p_certs.add_argument(
        "--leaf", action="append", default=[], metavar="NAME",
        help="Issue a leaf with this common name (repeatable)",
    )
    p_certs.add_argument(
        "--san", action="append", default=[], metavar="SAN",
        help="Subject alternative name for every leaf (repeatable)",
    )
    p_certs.add_argument(
        "--intermediate", action="store_true",
        help="Issue leaves as intermediate CAs",
    )
    p_certs.add_argument(
        "--key-size", type=int, default=None,
        help="RSA key size (default from config)",
    )
    p_certs.set_defaults(func=_lazy_certs)

    # ── Up ────────────────────────────────────────────────
    p_up = sub.add_parser("up", help="Boot a topology and hold it until interrupted")
    p_up.add_argument("topology", help="Topology JSON file")
    p_up.add_argument(
        "--signal", default="INT",
        help="Signal used to stop the topology (default: INT)",
    )
    p_up.add_argument(
        "--scenario", default=None,
        help="Scenario name tagged on every log line (default: topology name)",
    )
    p_up.set_defaults(func=_lazy_up)

    return parser


def cli_main(argv: list[str] | None = None) -> None:
    from dotenv import load_dotenv

    load_dotenv()

    from harness.config import load_config
    from harness.logging_config import setup_logging

    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(
        level=os.environ.get("HARNESS_LOG_LEVEL", load_config().log_level),
        log_dir=Path(args.log_dir) if args.log_dir else None,
    )

    if hasattr(args, "func"):
        args.func(args)
    else:
        parser.print_help()


# ── Lazy import wrappers ──────────────────────────────────


def _lazy_ports(args: argparse.Namespace) -> None:
    from cli.commands.ports import cmd_ports

    cmd_ports(args)


def _lazy_certs(args: argparse.Namespace) -> None:
    from cli.commands.certs import cmd_certs

    cmd_certs(args)


def _lazy_up(args: argparse.Namespace) -> None:
    from cli.commands.up import cmd_up

    cmd_up(args)
