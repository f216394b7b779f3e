"""CLI command for creating a CA and issuing leaf certificates."""

# Topoharness - Multi-process Topology Harness
# Copyright (C) 2026 Topoharness Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import argparse
import sys
from pathlib import Path


def cmd_certs(args: argparse.Namespace) -> None:
    """Create a root CA in ``args.depot`` and issue the requested leaves."""
    from harness.certauthority import CertAuthority
    from harness.config import load_config
    from harness.exceptions import IssuanceError

    key_size = args.key_size or load_config().certs.key_size
    depot = Path(args.depot)

    try:
        ca = CertAuthority.create(depot, args.common_name, key_size=key_size)
        key_path, cert_path = ca.ca_and_key()
        print(f"ca        key={key_path} cert={cert_path}")
        for leaf in args.leaf:
            pair = ca.issue_leaf(leaf, args.san, intermediate_ca=args.intermediate)
            kind = "intermediate" if args.intermediate else "leaf"
            print(f"{kind:<9} {leaf}: key={pair.key_path} cert={pair.cert_path}")
    except IssuanceError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
