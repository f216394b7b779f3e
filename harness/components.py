# Topoharness - Multi-process Topology Harness
# Copyright (C) 2026 Topoharness Authors
# SPDX-License-Identifier: Apache-2.0
#
# This file is part of Topoharness, licensed under Apache-2.0.
# See LICENSE for the full license text.

"""Launch descriptors for the services of the reference topology.

:class:`ComponentMaker` turns allocated addresses, issued TLS bundles and
the executable table into :class:`ProcessDescriptor` values.  It never
starts anything itself; descriptors are handed to a
:class:`~harness.supervisor.Supervisor`.

Services configured through a file (cell agent, router, SSH proxy) get a
generated config written under the maker's temp dir, removed again by the
descriptor's cleanup callback.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel

from harness.certauthority import CertAuthority, SSLConfig
from harness.config import HarnessConfig, load_config
from harness.exceptions import ConfigError
from harness.ports import ComponentAddresses, split_host_port
from harness.supervisor.descriptor import ProcessDescriptor

logger = logging.getLogger(__name__)


class ComponentSSL(BaseModel):
    """TLS bundles for the services that speak mutual TLS."""

    bbs: SSLConfig
    rep: SSLConfig
    auctioneer: SSLConfig


# ── Helpers ────────────────────────────────────────────────────────


def merge_config(base: dict[str, Any], overrides: dict[str, Any] | None) -> dict[str, Any]:
    """Return *base* with *overrides* merged in; nested dicts merge recursively."""
    merged = copy.deepcopy(base)
    for key, value in (overrides or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _remove_paths(*paths: Path) -> None:
    for path in paths:
        if path.is_dir():
            shutil.rmtree(path)
        else:
            path.unlink(missing_ok=True)


# ── Component Maker ────────────────────────────────────────────────


class ComponentMaker:
    """Factory of launch descriptors for one worker's topology."""

    def __init__(
        self,
        config: HarnessConfig | None,
        addresses: ComponentAddresses,
        executables: dict[str, str],
        ssl: ComponentSSL,
        tmp_dir: Path,
    ):
        self.config = config or load_config()
        self.addresses = addresses
        self.executables = dict(executables)
        self.ssl = ssl
        self.tmp_dir = Path(tmp_dir)

    @classmethod
    def for_run(
        cls,
        tmp_dir: Path,
        config: HarnessConfig | None = None,
        worker_index: int | None = None,
    ) -> "ComponentMaker":
        """Allocate addresses and issue certificates for a fresh run.

        Creates a CA under ``tmp_dir/certs`` and one server/client bundle
        per TLS-speaking service.
        """
        config = config or load_config()
        if worker_index is None:
            worker_index = config.worker_index
        ports = config.ports
        addresses = ComponentAddresses.for_worker(
            worker_index,
            base_port=ports.base_port,
            host=ports.host,
            worker_stride=ports.worker_stride,
            service_stride=ports.service_stride,
            max_port=ports.max_port,
        )

        tmp_dir = Path(tmp_dir)
        ca = CertAuthority.create(
            tmp_dir / "certs", config.certs.ca_common_name, key_size=config.certs.key_size
        )
        ssl = ComponentSSL(
            bbs=ca.issue_ssl_config("bbs", ["bbs.service.cf.internal"]),
            rep=ca.issue_ssl_config("cell", ["cell.service.cf.internal"]),
            auctioneer=ca.issue_ssl_config(
                "auctioneer", ["auctioneer.service.cf.internal"]
            ),
        )
        logger.info(
            "Prepared components for worker %d in %s", worker_index, tmp_dir
        )
        return cls(config, addresses, config.executables, ssl, tmp_dir)

    # ── Shared bits ──────────────────────────────────────────────

    def executable(self, name: str) -> str:
        """Path of the *name* executable.

        Raises:
            ConfigError: if no executable is configured under *name*.
        """
        try:
            return self.executables[name]
        except KeyError:
            raise ConfigError(
                f"No executable configured for {name!r} "
                f"(known: {', '.join(sorted(self.executables)) or 'none'})"
            ) from None

    def bbs_url(self) -> str:
        return f"https://{self.addresses.bbs}"

    def consul_cluster(self) -> str:
        return f"http://{self.addresses.consul}"

    def database_connection_string(self) -> str:
        """DSN of this worker's own database, ``diego_<worker>``."""
        database = self.config.database
        base = database.base_connection_string
        if base is None:
            base = f"{database.driver}://diego:diego_password@{self.addresses.sql}/"
        return f"{base}diego_{self.addresses.worker_index}"

    @property
    def _timeout(self) -> float:
        return self.config.timeouts.default_ready_timeout

    def _bbs_client_args(self) -> list[str]:
        return [
            "-bbsClientCert", str(self.ssl.bbs.client_cert),
            "-bbsClientKey", str(self.ssl.bbs.client_key),
            "-bbsCACert", str(self.ssl.bbs.ca_cert),
        ]

    def _write_config(self, prefix: str, suffix: str, text: str) -> Path:
        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        fd, name = tempfile.mkstemp(prefix=f"{prefix}-", suffix=suffix, dir=self.tmp_dir)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
        logger.debug("Wrote %s config to %s", prefix, name)
        return Path(name)

    def _mkdtemp(self, prefix: str) -> Path:
        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=f"{prefix}-", dir=self.tmp_dir))

    # ── Services ─────────────────────────────────────────────────

    def consul(self, *argv: str) -> ProcessDescriptor:
        """Single-node dev agent; its other ports follow the HTTP port."""
        executable = self.executable("consul")
        host, http_port = split_host_port(self.addresses.consul)
        return ProcessDescriptor(
            name="consul",
            command=(
                executable,
                "agent", "-dev",
                "-bind", host,
                "-client", host,
                "-http-port", str(http_port),
                "-dns-port", str(http_port + 1),
                "-serf-lan-port", str(http_port + 2),
                "-serf-wan-port", str(http_port + 3),
                "-server-port", str(http_port + 4),
                *argv,
            ),
            ready_marker="Synced node info",
            ready_timeout=self._timeout,
            color="94m",
        )

    def garden(self, *argv: str, include_default_stack: bool = True) -> ProcessDescriptor:
        """Container backend listening on the garden address.

        Helper binaries come from ``garden.bin_path``; the container depot
        is a fresh directory under tmp_dir, removed by cleanup.
        """
        garden = self.config.garden
        executable = self.executable("garden")
        host, port = split_host_port(self.addresses.garden)
        depot = self._mkdtemp("garden-depot")

        args = [
            "server",
            "--bind-ip", host,
            "--bind-port", str(port),
            "--depot", str(depot),
            "--port-pool-size", "1000",
            "--allow-host-access",
            "--deny-network", "0.0.0.0/0",
        ]
        if garden.bin_path:
            bin_path = Path(garden.bin_path)
            for flag, binary in (
                ("--runc-bin", "runc"),
                ("--init-bin", "init"),
                ("--nstar-bin", "nstar"),
                ("--dadoo-bin", "dadoo"),
                ("--tar-bin", "tar"),
            ):
                args += [flag, str(bin_path / binary)]
        if garden.graph_path:
            args += ["--graph", garden.graph_path]
        if include_default_stack and garden.default_rootfs:
            args += ["--default-rootfs", garden.default_rootfs]

        return ProcessDescriptor(
            name="garden",
            command=(executable, *args, *argv),
            ready_marker="guardian.started",
            ready_timeout=self.config.timeouts.slow_ready_timeout,
            color="91m",
            cleanup=lambda: _remove_paths(depot),
        )

    def garden_without_default_stack(self, *argv: str) -> ProcessDescriptor:
        return self.garden(*argv, include_default_stack=False)

    def nats(self, *argv: str) -> ProcessDescriptor:
        host, port = split_host_port(self.addresses.nats)
        return ProcessDescriptor(
            name="nats",
            command=(
                self.executable("nats"),
                "--addr", host,
                "--port", str(port),
                *argv,
            ),
            ready_marker="gnatsd is ready",
            ready_timeout=self._timeout,
            color="30m",
        )

    def bbs(self, *argv: str) -> ProcessDescriptor:
        bbs_ssl, rep_ssl, auc_ssl = self.ssl.bbs, self.ssl.rep, self.ssl.auctioneer
        return ProcessDescriptor(
            name="bbs",
            command=(
                self.executable("bbs"),
                "-activeKeyLabel=secure-key-1",
                "-advertiseURL", self.bbs_url(),
                "-auctioneerAddress", f"https://{self.addresses.auctioneer}",
                "-consulCluster", self.consul_cluster(),
                "-encryptionKey=secure-key-1:secure-passphrase",
                "-listenAddress", self.addresses.bbs,
                "-healthAddress", self.addresses.health,
                "-logLevel", "debug",
                "-requireSSL",
                "-certFile", str(bbs_ssl.server_cert),
                "-keyFile", str(bbs_ssl.server_key),
                "-caFile", str(bbs_ssl.ca_cert),
                "-repCACert", str(rep_ssl.ca_cert),
                "-repClientCert", str(rep_ssl.client_cert),
                "-repClientKey", str(rep_ssl.client_key),
                "-auctioneerCACert", str(auc_ssl.ca_cert),
                "-auctioneerClientCert", str(auc_ssl.client_cert),
                "-auctioneerClientKey", str(auc_ssl.client_key),
                "-databaseConnectionString", self.database_connection_string(),
                "-databaseDriver", self.config.database.driver,
                "-auctioneerRequireTLS=true",
                *argv,
            ),
            ready_marker="bbs.started",
            ready_timeout=self._timeout,
            color="32m",
        )

    def auctioneer(self, *argv: str) -> ProcessDescriptor:
        rep_ssl, auc_ssl = self.ssl.rep, self.ssl.auctioneer
        return ProcessDescriptor(
            name="auctioneer",
            command=(
                self.executable("auctioneer"),
                "-bbsAddress", self.bbs_url(),
                "-listenAddr", self.addresses.auctioneer,
                "-lockRetryInterval", "1s",
                "-consulCluster", self.consul_cluster(),
                "-logLevel", "debug",
                *self._bbs_client_args(),
                "-startingContainerWeight", "0.33",
                "-repCACert", str(rep_ssl.ca_cert),
                "-repClientCert", str(rep_ssl.client_cert),
                "-repClientKey", str(rep_ssl.client_key),
                "-caCertFile", str(auc_ssl.ca_cert),
                "-serverCertFile", str(auc_ssl.server_cert),
                "-serverKeyFile", str(auc_ssl.server_key),
                *argv,
            ),
            ready_marker='"auctioneer.started"',
            ready_timeout=self._timeout,
            color="35m",
        )

    def converger(self, *argv: str) -> ProcessDescriptor:
        return ProcessDescriptor(
            name="converger",
            command=(
                self.executable("converger"),
                "-bbsAddress", self.bbs_url(),
                "-lockRetryInterval", "1s",
                "-consulCluster", self.consul_cluster(),
                "-logLevel", "debug",
                *self._bbs_client_args(),
                *argv,
            ),
            ready_marker='"converger.started"',
            ready_timeout=self._timeout,
            color="34m",
        )

    def rep_config(self, n: int, work_dir: Path) -> dict[str, Any]:
        """Generated config of cell agent instance *n*, before overrides."""
        bbs_ssl, rep_ssl = self.ssl.bbs, self.ssl.rep
        return {
            "session_name": f"rep-{n}",
            "supported_providers": ["docker"],
            "bbs_address": self.bbs_url(),
            "listen_addr": self.addresses.rep_address(n),
            "listen_addr_securable": self.addresses.rep_secure_address(n),
            "cell_id": f"the-cell-id-{self.addresses.worker_index}-{n}",
            "polling_interval": "1s",
            "evacuation_polling_interval": "1s",
            "evacuation_timeout": "1s",
            "lock_ttl": "10s",
            "lock_retry_interval": "1s",
            "consul_cluster": self.consul_cluster(),
            "bbs_client_cert": str(bbs_ssl.client_cert),
            "bbs_client_key": str(bbs_ssl.client_key),
            "bbs_ca_cert": str(bbs_ssl.ca_cert),
            "server_cert_file": str(rep_ssl.server_cert),
            "server_key_file": str(rep_ssl.server_key),
            "ca_cert_file": str(rep_ssl.ca_cert),
            "require_tls": True,
            "enable_legacy_api_server": False,
            "garden_network": "tcp",
            "garden_addr": self.addresses.garden,
            "container_max_cpu_shares": 1024,
            "cache_path": str(work_dir / "cache"),
            "temp_dir": str(work_dir),
            "garden_healthcheck_process_path": "/bin/sh",
            "garden_healthcheck_process_args": ["-c", "echo", "foo"],
            "garden_healthcheck_process_user": "vcap",
            "log_level": "debug",
        }

    def rep(
        self,
        n: int = 0,
        overrides: dict[str, Any] | None = None,
    ) -> ProcessDescriptor:
        """Cell agent instance *n* with a generated JSON config.

        Cell agents boot slowly, so the descriptor uses the configured
        ``slow_ready_timeout``.
        """
        name = f"rep-{n}"
        executable = self.executable("rep")
        work_dir = self._mkdtemp("executor")
        rep_config = merge_config(self.rep_config(n, work_dir), overrides)
        config_file = self._write_config("rep-config", ".json", json.dumps(rep_config))

        return ProcessDescriptor(
            name=name,
            command=(executable, "-config", str(config_file)),
            ready_marker=f'"{name}.started"',
            ready_timeout=self.config.timeouts.slow_ready_timeout,
            color="33m",
            cleanup=lambda: _remove_paths(work_dir, config_file),
        )

    def route_emitter(self, *argv: str) -> ProcessDescriptor:
        return ProcessDescriptor(
            name="route-emitter",
            command=(
                self.executable("route-emitter"),
                "-natsAddresses", self.addresses.nats,
                "-bbsAddress", self.bbs_url(),
                "-lockRetryInterval", "1s",
                "-consulCluster", self.consul_cluster(),
                "-logLevel", "debug",
                *self._bbs_client_args(),
                *argv,
            ),
            ready_marker='"route-emitter.started"',
            ready_timeout=self._timeout,
            color="36m",
        )

    def file_server(self, *argv: str) -> tuple[ProcessDescriptor, Path]:
        """File server descriptor plus the directory it serves."""
        executable = self.executable("file-server")
        served_dir = self._mkdtemp("file-server-files")
        descriptor = ProcessDescriptor(
            name="file-server",
            command=(
                executable,
                "-address", self.addresses.file_server,
                "-consulCluster", self.consul_cluster(),
                "-logLevel", "debug",
                "-staticDirectory", str(served_dir),
                *argv,
            ),
            ready_marker='"file-server.ready"',
            ready_timeout=self._timeout,
            color="92m",
            cleanup=lambda: _remove_paths(served_dir),
        )
        return descriptor, served_dir

    def router_config(self) -> dict[str, Any]:
        _, router_port = split_host_port(self.addresses.router)
        nats_host, nats_port = split_host_port(self.addresses.nats)
        return {
            "port": router_port,
            "prune_stale_droplets_interval": "5s",
            "droplet_stale_threshold": "10s",
            "publish_active_apps_interval": "0s",
            "start_response_delay_interval": "1s",
            "nats": [{"host": nats_host, "port": nats_port}],
            "logging": {
                "file": "/dev/stdout",
                "level": "info",
                "metron_address": "127.0.0.1:65534",
            },
        }

    def router(self, overrides: dict[str, Any] | None = None) -> ProcessDescriptor:
        executable = self.executable("router")
        router_config = merge_config(self.router_config(), overrides)
        config_file = self._write_config(
            "router-config",
            ".yml",
            yaml.safe_dump(router_config, default_flow_style=False),
        )
        return ProcessDescriptor(
            name="router",
            command=(executable, "-c", str(config_file)),
            # the router sleeps for a second before it starts listening
            ready_marker="router.started",
            ready_timeout=self._timeout,
            color="93m",
            cleanup=lambda: _remove_paths(config_file),
        )

    def ssh_proxy_config(self, host_key: str = "") -> dict[str, Any]:
        bbs_ssl = self.ssl.bbs
        return {
            "address": self.addresses.ssh_proxy,
            "health_check_address": self.addresses.ssh_proxy_health,
            "bbs_address": self.bbs_url(),
            "bbs_ca_cert": str(bbs_ssl.ca_cert),
            "bbs_client_cert": str(bbs_ssl.client_cert),
            "bbs_client_key": str(bbs_ssl.client_key),
            "consul_cluster": self.consul_cluster(),
            "enable_diego_auth": True,
            "host_key": host_key,
            "log_level": "debug",
        }

    def ssh_proxy(
        self,
        *argv: str,
        host_key: str = "",
        overrides: dict[str, Any] | None = None,
    ) -> ProcessDescriptor:
        executable = self.executable("ssh-proxy")
        proxy_config = merge_config(self.ssh_proxy_config(host_key), overrides)
        config_file = self._write_config(
            "ssh-proxy-config", ".json", json.dumps(proxy_config)
        )
        return ProcessDescriptor(
            name="ssh-proxy",
            command=(executable, "-config", str(config_file), *argv),
            ready_marker="ssh-proxy.started",
            ready_timeout=self._timeout,
            color="96m",
            cleanup=lambda: _remove_paths(config_file),
        )

    def local_driver(self, *argv: str) -> ProcessDescriptor:
        """Volume driver; its mount and driver-spec dirs live under tmp_dir."""
        executable = self.executable("local-driver")
        mount_dir = self._mkdtemp("local-driver")
        drivers_path = mount_dir / f"node-{self.addresses.worker_index}"
        drivers_path.mkdir()
        return ProcessDescriptor(
            name="local-driver",
            command=(
                executable,
                "-listenAddr", self.addresses.local_driver,
                "-mountDir", str(mount_dir),
                "-driversPath", str(drivers_path),
                *argv,
            ),
            ready_marker="local-driver-server.started",
            ready_timeout=self._timeout,
            cleanup=lambda: _remove_paths(mount_dir),
        )
