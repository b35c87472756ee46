# Torwarden
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
#
# This file is part of Torwarden.
#
# Torwarden is dual-licensed:
#
# 1. Open Source: GNU Affero General Public License v3.0 (AGPL-3.0)
#    You may use, modify, and distribute this file under AGPL-3.0.
#    See LICENSE for the full text.
#
# 2. Commercial: Available from Phoenix Link (Pty) Ltd
#    For proprietary use, SaaS deployment, or enterprise licensing.
#    See LICENSE-ENTERPRISE.md or contact info@phoenixlink.co.za
#
# Contributions require a signed CLA. See COPYRIGHT.md and CLA.md.
"""Proxy container lifecycle.

``ProcessManager`` is the interface the health checker and the
recovery controller use. ``DockerProcessManager`` talks to the local
Docker engine through the docker SDK and, when the proxy is deployed
with compose, drives ``docker compose down/up`` so the container is
recreated from its definition rather than merely restarted.
"""

from __future__ import annotations

import logging
import subprocess
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any

import docker
from docker.errors import DockerException, NotFound

from torwarden.errors import ProcessManagerError

logger = logging.getLogger("torwarden.proxy.process")


class ProcessManager(ABC):
    """Start, stop and introspect the proxy process."""

    @abstractmethod
    def start(self, name: str) -> None:
        """Start the proxy. Raises ProcessManagerError."""

    @abstractmethod
    def stop(self, name: str) -> None:
        """Stop the proxy. Stopping a stopped proxy is not an error."""

    @abstractmethod
    def is_running(self, name: str) -> bool:
        """True if the proxy process is up."""

    def health(self, name: str) -> str | None:
        """Runtime health-check verdict ("healthy", "unhealthy", "starting"), or None."""
        return None

    @abstractmethod
    def recent_logs(
        self, name: str, since: datetime | float | None = None, tail: int | None = None
    ) -> list[str]:
        """Log lines newer than `since`, at most the last `tail` lines."""

    def inspect(self, name: str) -> dict[str, Any]:
        """Raw runtime metadata (used for isolation checks)."""
        return {}


class DockerProcessManager(ProcessManager):
    """Proxy running as a Docker container."""

    def __init__(
        self,
        compose_dir: str = "",
        timeout: float = 30.0,
        client: Any = None,
    ) -> None:
        self._compose_dir = Path(compose_dir) if compose_dir else None
        self._timeout = timeout
        self._client = client

    def _get_client(self):
        if self._client is None:
            try:
                self._client = docker.from_env(timeout=int(self._timeout))
            except DockerException as exc:
                raise ProcessManagerError(f"Docker engine unavailable: {exc}") from exc
        return self._client

    def _container(self, name: str):
        try:
            return self._get_client().containers.get(name)
        except NotFound:
            return None
        except DockerException as exc:
            raise ProcessManagerError(f"Cannot look up container {name}: {exc}") from exc

    def _use_compose(self) -> bool:
        return self._compose_dir is not None and self._compose_dir.is_dir()

    def _compose(self, *args: str) -> None:
        cmd = ["docker", "compose", *args]
        logger.info("Running %s in %s", " ".join(cmd), self._compose_dir)
        try:
            result = subprocess.run(
                cmd,
                cwd=str(self._compose_dir),
                capture_output=True,
                text=True,
                timeout=self._timeout * 4,
            )
        except (subprocess.TimeoutExpired, FileNotFoundError, OSError) as exc:
            raise ProcessManagerError(f"{' '.join(cmd)} failed: {exc}") from exc
        if result.returncode != 0:
            raise ProcessManagerError(
                f"{' '.join(cmd)} failed (rc={result.returncode}): {result.stderr.strip()[:300]}"
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, name: str) -> None:
        if self._use_compose():
            self._compose("up", "-d")
            return
        container = self._container(name)
        if container is None:
            raise ProcessManagerError(f"Container {name} does not exist")
        try:
            container.start()
        except DockerException as exc:
            raise ProcessManagerError(f"Cannot start {name}: {exc}") from exc

    def stop(self, name: str) -> None:
        if self._use_compose():
            try:
                self._compose("down")
                return
            except ProcessManagerError as exc:
                logger.warning("compose down failed, stopping %s directly: %s", name, exc)

        container = self._container(name)
        if container is None:
            return
        try:
            container.stop(timeout=10)
            if self._use_compose():
                container.remove(force=True)
        except NotFound:
            return
        except DockerException as exc:
            raise ProcessManagerError(f"Cannot stop {name}: {exc}") from exc

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def is_running(self, name: str) -> bool:
        container = self._container(name)
        if container is None:
            return False
        try:
            container.reload()
        except DockerException as exc:
            raise ProcessManagerError(f"Cannot refresh {name}: {exc}") from exc
        return container.status == "running"

    def health(self, name: str) -> str | None:
        container = self._container(name)
        if container is None:
            return None
        state = container.attrs.get("State", {}) or {}
        return (state.get("Health") or {}).get("Status")

    def recent_logs(
        self, name: str, since: datetime | float | None = None, tail: int | None = None
    ) -> list[str]:
        container = self._container(name)
        if container is None:
            raise ProcessManagerError(f"Container {name} does not exist")
        kwargs: dict[str, Any] = {"stdout": True, "stderr": True}
        if since is not None:
            kwargs["since"] = since if isinstance(since, datetime) else int(since)
        if tail is not None:
            kwargs["tail"] = tail
        try:
            raw = container.logs(**kwargs)
        except DockerException as exc:
            raise ProcessManagerError(f"Cannot read logs of {name}: {exc}") from exc
        return raw.decode("utf-8", "replace").splitlines()

    def inspect(self, name: str) -> dict[str, Any]:
        container = self._container(name)
        if container is None:
            raise ProcessManagerError(f"Container {name} does not exist")
        return dict(container.attrs)

    def exec_whoami(self, name: str) -> str:
        """User the proxy process runs as inside the container."""
        container = self._container(name)
        if container is None:
            raise ProcessManagerError(f"Container {name} does not exist")
        try:
            exit_code, output = container.exec_run(["whoami"])
        except DockerException as exc:
            raise ProcessManagerError(f"Cannot exec in {name}: {exc}") from exc
        if exit_code != 0:
            raise ProcessManagerError(f"whoami in {name} exited {exit_code}")
        return output.decode("utf-8", "replace").strip()
