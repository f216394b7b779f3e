# Topoharness - Multi-process Topology Harness
# Copyright (C) 2026 Topoharness Authors
# SPDX-License-Identifier: Apache-2.0
#
# This file is part of Topoharness, licensed under Apache-2.0.
# See LICENSE for the full license text.

"""Run-local certificate authority for mutual TLS between services.

A :class:`CertAuthority` owns one root key/certificate pair written to
deterministic paths inside a depot directory.  Leaf identities are signed
by that root and written to fresh temp files, so leaves never leak between
differently scoped runs.

Usage::

    ca = CertAuthority.create(tmp_path, "harness-ca")
    key_path, cert_path = ca.issue_leaf("bbs", ["bbs.service.internal"])
"""

from __future__ import annotations

import ipaddress
import logging
import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import NamedTuple

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID
from pydantic import BaseModel

from harness.exceptions import IssuanceError

logger = logging.getLogger(__name__)

_LOOPBACK = ipaddress.ip_address("127.0.0.1")
_VALIDITY = timedelta(days=365)


class IssuedPair(NamedTuple):
    key_path: Path
    cert_path: Path


class SSLConfig(BaseModel):
    """TLS file bundle handed to one TLS-speaking service and its clients."""

    server_cert: Path
    server_key: Path
    client_cert: Path
    client_key: Path
    ca_cert: Path


# ── Helpers ────────────────────────────────────────────────────────


def _generate_key(key_size: int) -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def _key_pem(key: rsa.RSAPrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _subject(common_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def _alt_names(sans: list[str]) -> list[x509.GeneralName]:
    """DNS names, with IP literals promoted to IP SANs, plus loopback."""
    names: list[x509.GeneralName] = []
    ips = {_LOOPBACK}
    for san in sans:
        try:
            ips.add(ipaddress.ip_address(san))
        except ValueError:
            names.append(x509.DNSName(san))
    names.extend(x509.IPAddress(ip) for ip in sorted(ips, key=str))
    return names


def _write_private(path: Path, data: bytes) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as fh:
        fh.write(data)


def _write_temp(depot_dir: Path, prefix: str, suffix: str, data: bytes) -> Path:
    # mkstemp creates the file 0600 with a name no other issuance can get
    fd, name = tempfile.mkstemp(prefix=f"{prefix}-", suffix=suffix, dir=depot_dir)
    with os.fdopen(fd, "wb") as fh:
        fh.write(data)
    return Path(name)


# ── Certificate Authority ──────────────────────────────────────────


class CertAuthority:
    """Root key/certificate pair plus a depot of issued leaves."""

    def __init__(
        self,
        depot_dir: Path,
        key_path: Path,
        cert_path: Path,
        key_size: int = 4096,
    ) -> None:
        self.depot_dir = depot_dir
        self.key_path = key_path
        self.cert_path = cert_path
        self.key_size = key_size

    @classmethod
    def create(
        cls,
        depot_dir: Path,
        common_name: str,
        key_size: int = 4096,
    ) -> "CertAuthority":
        """Generate a self-signed root valid for one year.

        Writes ``<common_name>.key`` and ``<common_name>.crt`` under
        *depot_dir*.

        Raises:
            IssuanceError: if key generation, signing or the writes fail.
        """
        try:
            depot_dir.mkdir(parents=True, exist_ok=True)
            key = _generate_key(key_size)
            name = _subject(common_name)
            now = datetime.now(timezone.utc)
            cert = (
                x509.CertificateBuilder()
                .subject_name(name)
                .issuer_name(name)
                .public_key(key.public_key())
                .serial_number(x509.random_serial_number())
                .not_valid_before(now - timedelta(minutes=1))
                .not_valid_after(now + _VALIDITY)
                .add_extension(
                    x509.BasicConstraints(ca=True, path_length=None), critical=True
                )
                .add_extension(
                    x509.KeyUsage(
                        digital_signature=True,
                        content_commitment=False,
                        key_encipherment=False,
                        data_encipherment=False,
                        key_agreement=False,
                        key_cert_sign=True,
                        crl_sign=True,
                        encipher_only=False,
                        decipher_only=False,
                    ),
                    critical=True,
                )
                .add_extension(
                    x509.SubjectKeyIdentifier.from_public_key(key.public_key()),
                    critical=False,
                )
                .sign(key, hashes.SHA256())
            )

            key_path = depot_dir / f"{common_name}.key"
            cert_path = depot_dir / f"{common_name}.crt"
            _write_private(key_path, _key_pem(key))
            cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
        except (OSError, ValueError, TypeError) as exc:
            raise IssuanceError(
                f"Failed to create certificate authority {common_name!r}: {exc}"
            ) from exc

        logger.info("Created certificate authority %s in %s", common_name, depot_dir)
        return cls(depot_dir, key_path, cert_path, key_size=key_size)

    def ca_and_key(self) -> tuple[Path, Path]:
        """Return ``(key_path, cert_path)`` of the root."""
        return self.key_path, self.cert_path

    def _load_root(self) -> tuple[rsa.RSAPrivateKey, x509.Certificate]:
        root_cert = x509.load_pem_x509_certificate(self.cert_path.read_bytes())
        root_key = serialization.load_pem_private_key(
            self.key_path.read_bytes(), password=None
        )
        if not isinstance(root_key, rsa.RSAPrivateKey):
            raise TypeError("root key is not an RSA key")
        return root_key, root_cert

    def issue_leaf(
        self,
        common_name: str,
        sans: list[str] | None = None,
        intermediate_ca: bool = False,
    ) -> IssuedPair:
        """Issue a key/certificate pair signed by the root.

        The certificate always carries ``127.0.0.1`` as an IP SAN in
        addition to *sans*.  With *intermediate_ca* the result may sign
        further certificates (pathlen 0); otherwise it is a host
        certificate usable for both server and client auth.

        Raises:
            IssuanceError: if any step fails; no partial pair is returned.
        """
        sans = list(sans or [])
        try:
            key = _generate_key(self.key_size)
            csr = (
                x509.CertificateSigningRequestBuilder()
                .subject_name(_subject(common_name))
                .add_extension(
                    x509.SubjectAlternativeName(_alt_names(sans)), critical=False
                )
                .sign(key, hashes.SHA256())
            )
            root_key, root_cert = self._load_root()
            cert = self._sign_request(csr, root_key, root_cert, intermediate_ca)

            key_path = _write_temp(self.depot_dir, common_name, ".key", _key_pem(key))
            cert_path = _write_temp(
                self.depot_dir,
                common_name,
                ".crt",
                cert.public_bytes(serialization.Encoding.PEM),
            )
        except (OSError, ValueError, TypeError) as exc:
            raise IssuanceError(
                f"Failed to issue certificate for {common_name!r}: {exc}"
            ) from exc

        logger.debug(
            "Issued %s certificate %s -> %s",
            "intermediate CA" if intermediate_ca else "host",
            common_name,
            cert_path,
        )
        return IssuedPair(key_path, cert_path)

    @staticmethod
    def _sign_request(
        csr: x509.CertificateSigningRequest,
        root_key: rsa.RSAPrivateKey,
        root_cert: x509.Certificate,
        intermediate_ca: bool,
    ) -> x509.Certificate:
        if not csr.is_signature_valid:
            raise ValueError("certificate signing request has an invalid signature")

        san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        now = datetime.now(timezone.utc)
        builder = (
            x509.CertificateBuilder()
            .subject_name(csr.subject)
            .issuer_name(root_cert.subject)
            .public_key(csr.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(minutes=1))
            .not_valid_after(now + _VALIDITY)
            .add_extension(san.value, critical=False)
            .add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(
                    root_key.public_key()
                ),
                critical=False,
            )
        )
        if intermediate_ca:
            builder = builder.add_extension(
                x509.BasicConstraints(ca=True, path_length=0), critical=True
            ).add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=True,
                    crl_sign=True,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
        else:
            builder = builder.add_extension(
                x509.BasicConstraints(ca=False, path_length=None), critical=True
            ).add_extension(
                x509.ExtendedKeyUsage(
                    [ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH]
                ),
                critical=False,
            )
        return builder.sign(root_key, hashes.SHA256())

    def issue_ssl_config(
        self,
        common_name: str,
        sans: list[str] | None = None,
    ) -> SSLConfig:
        """Issue a server pair and a client pair for one service."""
        server_key, server_cert = self.issue_leaf(common_name, sans)
        client_key, client_cert = self.issue_leaf(f"{common_name}-client", sans)
        return SSLConfig(
            server_cert=server_cert,
            server_key=server_key,
            client_cert=client_cert,
            client_key=client_key,
            ca_cert=self.cert_path,
        )

    # ── Verification ─────────────────────────────────────────────

    def verify(self, cert_path: Path) -> bool:
        """Return True if *cert_path* was directly signed by this root."""
        root_cert = x509.load_pem_x509_certificate(self.cert_path.read_bytes())
        leaf = x509.load_pem_x509_certificate(Path(cert_path).read_bytes())
        try:
            leaf.verify_directly_issued_by(root_cert)
        except (InvalidSignature, ValueError, TypeError):
            return False
        return True


def key_matches(key_path: Path, cert_path: Path) -> bool:
    """Return True if the private key at *key_path* belongs to *cert_path*."""
    key = serialization.load_pem_private_key(Path(key_path).read_bytes(), password=None)
    cert = x509.load_pem_x509_certificate(Path(cert_path).read_bytes())
    return key.public_key().public_numbers() == cert.public_key().public_numbers()
