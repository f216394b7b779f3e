# Topoharness - Multi-process Topology Harness
# Copyright (C) 2026 Topoharness Authors
# SPDX-License-Identifier: Apache-2.0
"""Unit tests for harness/certauthority.py: run-local CA and leaf issuance."""

from __future__ import annotations

import ipaddress
import stat
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.x509.oid import ExtendedKeyUsageOID

from harness.certauthority import CertAuthority, key_matches
from harness.exceptions import IssuanceError

# small keys keep the suite fast
KEY_SIZE = 2048


@pytest.fixture
def ca(tmp_path: Path) -> CertAuthority:
    return CertAuthority.create(tmp_path / "depot", "test-ca", key_size=KEY_SIZE)


def _load(path: Path) -> x509.Certificate:
    return x509.load_pem_x509_certificate(Path(path).read_bytes())


# ── Root ──────────────────────────────────────────────────


class TestCreate:
    def test_writes_deterministic_paths(self, ca: CertAuthority, tmp_path: Path):
        key_path, cert_path = ca.ca_and_key()
        assert key_path == tmp_path / "depot" / "test-ca.key"
        assert cert_path == tmp_path / "depot" / "test-ca.crt"
        assert key_path.exists() and cert_path.exists()

    def test_private_key_not_world_readable(self, ca: CertAuthority):
        key_path, _ = ca.ca_and_key()
        assert stat.S_IMODE(key_path.stat().st_mode) == 0o600

    def test_root_is_self_signed_ca(self, ca: CertAuthority):
        root = _load(ca.cert_path)
        assert root.subject == root.issuer
        constraints = root.extensions.get_extension_for_class(x509.BasicConstraints)
        assert constraints.value.ca is True
        root.verify_directly_issued_by(root)

    def test_root_key_matches_cert(self, ca: CertAuthority):
        assert key_matches(ca.key_path, ca.cert_path)

    def test_unwritable_depot_raises(self, tmp_path: Path):
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        with pytest.raises(IssuanceError):
            CertAuthority.create(blocker / "depot", "test-ca", key_size=KEY_SIZE)


# ── Leaves ────────────────────────────────────────────────


class TestIssueLeaf:
    def test_leaf_verifies_against_root(self, ca: CertAuthority):
        key_path, cert_path = ca.issue_leaf("bbs", ["bbs.service.internal"])
        assert ca.verify(cert_path)
        assert key_matches(key_path, cert_path)

    def test_leaf_fails_against_foreign_root(self, ca: CertAuthority, tmp_path: Path):
        other = CertAuthority.create(tmp_path / "other", "other-ca", key_size=KEY_SIZE)
        _, cert_path = ca.issue_leaf("bbs")
        assert not other.verify(cert_path)

    def test_mismatched_key_detected(self, ca: CertAuthority):
        key_a, _ = ca.issue_leaf("a")
        _, cert_b = ca.issue_leaf("b")
        assert not key_matches(key_a, cert_b)

    def test_sans_include_loopback(self, ca: CertAuthority):
        _, cert_path = ca.issue_leaf("rep", ["cell.internal", "10.1.2.3"])
        san = _load(cert_path).extensions.get_extension_for_class(
            x509.SubjectAlternativeName
        ).value
        assert san.get_values_for_type(x509.DNSName) == ["cell.internal"]
        ips = san.get_values_for_type(x509.IPAddress)
        assert ipaddress.ip_address("127.0.0.1") in ips
        assert ipaddress.ip_address("10.1.2.3") in ips

    def test_host_cert_usages(self, ca: CertAuthority):
        _, cert_path = ca.issue_leaf("auctioneer")
        cert = _load(cert_path)
        assert cert.extensions.get_extension_for_class(x509.BasicConstraints).value.ca is False
        usages = cert.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
        assert ExtendedKeyUsageOID.SERVER_AUTH in usages
        assert ExtendedKeyUsageOID.CLIENT_AUTH in usages

    def test_intermediate_ca(self, ca: CertAuthority):
        _, cert_path = ca.issue_leaf("intermediate", intermediate_ca=True)
        constraints = _load(cert_path).extensions.get_extension_for_class(
            x509.BasicConstraints
        ).value
        assert constraints.ca is True
        assert constraints.path_length == 0
        assert ca.verify(cert_path)

    def test_repeated_issuance_uses_fresh_files(self, ca: CertAuthority):
        first = ca.issue_leaf("bbs")
        second = ca.issue_leaf("bbs")
        assert first.cert_path != second.cert_path
        assert first.key_path != second.key_path
        assert first.cert_path.name.startswith("bbs-")

    def test_missing_root_raises(self, ca: CertAuthority):
        ca.key_path.unlink()
        with pytest.raises(IssuanceError):
            ca.issue_leaf("bbs")


def test_issue_ssl_config(ca: CertAuthority):
    ssl = ca.issue_ssl_config("bbs", ["bbs.service.internal"])
    assert ssl.ca_cert == ca.cert_path
    assert ca.verify(ssl.server_cert)
    assert ca.verify(ssl.client_cert)
    assert key_matches(ssl.server_key, ssl.server_cert)
    assert key_matches(ssl.client_key, ssl.client_cert)
    client = _load(ssl.client_cert)
    assert "bbs-client" in client.subject.rfc4514_string()
