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
"""
One-shot leak test for a deployed host.

Each check returns pass / warn / fail with a remedy, in the style of
`brew doctor`:

  1. Transparent redirection rules present and complete
  2. IPv6 blocked (drop chain and kernel sysctl)
  3. System resolver points at the local proxy
  4. Proxy health (same layered poll the watchdog runs)
  5. Traffic through the SOCKS port exits via Tor
  6. Traffic with no proxy configured still exits via Tor
  7. Proxy container isolation (non-root user, capabilities dropped)

Nothing here modifies the host.

Usage:
    harness = VerificationHarness(engine, checker, process_manager, config)
    report = harness.run()
    print(report.render_text())
"""

from __future__ import annotations

import ipaddress
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx

from torwarden.config import WatchdogConfig
from torwarden.firewall.engine import RedirectionRuleEngine
from torwarden.health.checker import HealthChecker
from torwarden.health.models import HealthState
from torwarden.proxy.process import ProcessManager

logger = logging.getLogger("torwarden.verify")

TOR_CHECK_URL = "https://check.torproject.org/api/ip"
RESOLV_CONF = Path("/etc/resolv.conf")
DISABLE_IPV6_SYSCTL = Path("/proc/sys/net/ipv6/conf/all/disable_ipv6")
HTTP_TIMEOUT = 30.0


@dataclass
class CheckResult:
    """Result of a single verification check."""

    name: str
    status: str  # "pass", "warn", "fail"
    message: str
    remedy: str = ""
    details: list[str] = field(default_factory=list)

    @property
    def icon(self) -> str:
        return {"pass": "✓", "warn": "⚠", "fail": "✗"}.get(self.status, "?")

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "message": self.message,
            "remedy": self.remedy,
            "details": self.details,
        }


@dataclass
class VerificationReport:
    """Full verification report."""

    checks: list[CheckResult] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)

    @property
    def passed(self) -> int:
        return sum(1 for c in self.checks if c.status == "pass")

    @property
    def warnings(self) -> int:
        return sum(1 for c in self.checks if c.status == "warn")

    @property
    def failures(self) -> int:
        return sum(1 for c in self.checks if c.status == "fail")

    @property
    def total(self) -> int:
        return len(self.checks)

    @property
    def healthy(self) -> bool:
        return self.failures == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at,
            "passed": self.passed,
            "warnings": self.warnings,
            "failures": self.failures,
            "healthy": self.healthy,
            "checks": [c.to_dict() for c in self.checks],
        }

    def render_text(self) -> str:
        stamp = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(self.started_at))
        lines = [f"Leak test report ({stamp})", ""]
        for check in self.checks:
            lines.append(f"  {check.icon} {check.name}: {check.message}")
            for detail in check.details:
                lines.append(f"      {detail}")
            if check.status != "pass" and check.remedy:
                lines.append(f"      -> {check.remedy}")
        lines.append("")
        lines.append(
            f"{self.passed}/{self.total} passed, {self.warnings} warning(s), {self.failures} failure(s)"
        )
        lines.append("RESULT: " + ("SECURE" if self.healthy else "LEAKS OR FAULTS DETECTED"))
        return "\n".join(lines) + "\n"

    def write(self, path: str | Path | None = None, as_json: bool = False) -> Path:
        """Write the report; defaults to /tmp/leak-test-report-<timestamp>.txt."""
        if path is None:
            stamp = time.strftime("%Y%m%d-%H%M%S", time.localtime(self.started_at))
            path = Path("/tmp") / f"leak-test-report-{stamp}.{'json' if as_json else 'txt'}"
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        if as_json:
            target.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")
        else:
            target.write_text(self.render_text(), encoding="utf-8")
        return target


def _default_client(proxy: str | None) -> httpx.Client:
    # A direct request must not pick up HTTP(S)_PROXY from the environment
    return httpx.Client(
        proxy=proxy,
        trust_env=proxy is not None,
        timeout=HTTP_TIMEOUT,
        follow_redirects=True,
    )


class VerificationHarness:
    """Read-only leak checks against the live host."""

    def __init__(
        self,
        engine: RedirectionRuleEngine,
        checker: HealthChecker,
        process_manager: ProcessManager,
        config: WatchdogConfig | None = None,
        client_factory: Callable[[str | None], httpx.Client] = _default_client,
        resolv_conf: Path = RESOLV_CONF,
        ipv6_sysctl: Path = DISABLE_IPV6_SYSCTL,
    ) -> None:
        self._engine = engine
        self._checker = checker
        self._pm = process_manager
        self._config = config or WatchdogConfig()
        self._client_factory = client_factory
        self._resolv_conf = resolv_conf
        self._ipv6_sysctl = ipv6_sysctl

    # =========================================================================
    # Individual Checks
    # =========================================================================

    def check_rules(self) -> CheckResult:
        status = self._engine.verify()
        details = [
            f"redirect rules: {status.redirect_count}",
            f"return rules: {status.return_count}",
            f"minimum: {status.min_rules}",
        ]
        if status.is_complete:
            return CheckResult(
                name="Transparent Redirection",
                status="pass",
                message=f"{status.rule_count} rules in {status.chain}",
                details=details,
            )
        return CheckResult(
            name="Transparent Redirection",
            status="fail",
            message=status.summary(),
            remedy="Run 'torwarden apply' as root",
            details=details,
        )

    def check_ipv6(self) -> CheckResult:
        status = self._engine.verify()
        ipv6_jumps_missing = [j for j in status.missing_jumps if j.startswith("ipv6/")]
        drop_ok = status.ipv6_drop and not ipv6_jumps_missing

        sysctl = None
        try:
            sysctl = self._ipv6_sysctl.read_text(encoding="utf-8").strip()
        except OSError as exc:
            logger.debug("Cannot read %s: %s", self._ipv6_sysctl, exc)
        details = [f"drop chain: {'yes' if drop_ok else 'no'}", f"disable_ipv6: {sysctl or 'unknown'}"]

        if not drop_ok:
            return CheckResult(
                name="IPv6 Blocking",
                status="fail",
                message="IPv6 traffic is not dropped",
                remedy="Run 'torwarden apply' as root",
                details=details,
            )
        if sysctl != "1":
            return CheckResult(
                name="IPv6 Blocking",
                status="warn",
                message="IPv6 dropped by the filter but not disabled in the kernel",
                remedy="sysctl -w net.ipv6.conf.all.disable_ipv6=1",
                details=details,
            )
        return CheckResult(
            name="IPv6 Blocking", status="pass", message="IPv6 dropped and disabled", details=details
        )

    def check_dns_resolver(self) -> CheckResult:
        try:
            text = self._resolv_conf.read_text(encoding="utf-8")
        except OSError as exc:
            return CheckResult(
                name="DNS Resolver",
                status="warn",
                message=f"Cannot read {self._resolv_conf}: {exc}",
                remedy="Point the resolver at 127.0.0.1",
            )

        servers = []
        for line in text.splitlines():
            parts = line.split()
            if len(parts) >= 2 and parts[0] == "nameserver":
                servers.append(parts[1])

        leaking = [s for s in servers if not _is_loopback(s)]
        if not servers:
            return CheckResult(
                name="DNS Resolver",
                status="warn",
                message="No nameserver configured",
                remedy="Add 'nameserver 127.0.0.1' to /etc/resolv.conf",
            )
        if leaking:
            return CheckResult(
                name="DNS Resolver",
                status="fail",
                message=f"Non-local resolvers configured: {', '.join(leaking)}",
                remedy="Use 'nameserver 127.0.0.1' only; port 53 is redirected to the proxy",
                details=servers,
            )
        return CheckResult(
            name="DNS Resolver", status="pass", message="Resolver is local", details=servers
        )

    def check_proxy_health(self) -> CheckResult:
        status = self._checker.poll()
        details = []
        if status.circuits is not None:
            details.append(f"built circuits: {status.circuits}")
        if status.bootstrap is not None:
            details.append(f"bootstrap: {status.bootstrap}%")
        if status.state == HealthState.HEALTHY:
            return CheckResult(name="Proxy Health", status="pass", message="healthy", details=details)
        return CheckResult(
            name="Proxy Health",
            status="warn" if status.state == HealthState.DEGRADED else "fail",
            message=status.describe(),
            remedy="Check 'docker logs " + self._config.proxy.container_name + "'",
            details=details,
        )

    def _fetch_is_tor(self, proxy: str | None) -> tuple[bool | None, str]:
        try:
            with self._client_factory(proxy) as client:
                resp = client.get(TOR_CHECK_URL)
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            return None, str(exc)
        return bool(data.get("IsTor")), str(data.get("IP", ""))

    def check_socks_routing(self) -> CheckResult:
        proxy = self._config.proxy
        url = f"socks5://{proxy.host}:{proxy.socks_port}"
        is_tor, info = self._fetch_is_tor(url)
        if is_tor is None:
            return CheckResult(
                name="SOCKS Routing",
                status="fail",
                message=f"Request through {url} failed: {info}",
                remedy="Check that the proxy is bootstrapped",
            )
        if not is_tor:
            return CheckResult(
                name="SOCKS Routing",
                status="fail",
                message=f"Exit {info} is not a Tor exit",
                remedy="The SOCKS port is not served by the onion proxy",
            )
        return CheckResult(name="SOCKS Routing", status="pass", message=f"Tor exit {info}")

    def check_transparent_routing(self) -> CheckResult:
        is_tor, info = self._fetch_is_tor(None)
        if is_tor is None:
            return CheckResult(
                name="Transparent Routing",
                status="warn",
                message=f"Direct request failed: {info}",
                remedy="Check the transparent and DNS ports of the proxy",
            )
        if not is_tor:
            return CheckResult(
                name="Transparent Routing",
                status="fail",
                message=f"Direct traffic exits from {info}, not Tor",
                remedy="Run 'torwarden apply' as root",
            )
        return CheckResult(name="Transparent Routing", status="pass", message=f"Tor exit {info}")

    def check_container_isolation(self) -> CheckResult:
        name = self._config.proxy.container_name
        try:
            attrs = self._pm.inspect(name)
        except Exception as exc:
            return CheckResult(
                name="Container Isolation",
                status="fail",
                message=f"Cannot inspect {name}: {exc}",
                remedy=f"Start the {name} container",
            )

        user = (attrs.get("Config") or {}).get("User") or ""
        host_config = attrs.get("HostConfig") or {}
        cap_drop = [c.upper() for c in host_config.get("CapDrop") or []]
        readonly = bool(host_config.get("ReadonlyRootfs"))
        if not user and hasattr(self._pm, "exec_whoami"):
            try:
                user = self._pm.exec_whoami(name)
            except Exception as exc:
                logger.debug("whoami in %s failed: %s", name, exc)

        details = [
            f"user: {user or 'root'}",
            f"cap_drop: {', '.join(cap_drop) or 'none'}",
            f"read-only rootfs: {'yes' if readonly else 'no'}",
        ]
        problems = []
        if not user or user in ("root", "0", "0:0"):
            problems.append("runs as root")
        if "ALL" not in cap_drop:
            problems.append("capabilities not dropped")
        if problems:
            return CheckResult(
                name="Container Isolation",
                status="fail",
                message="; ".join(problems),
                remedy="Run the proxy as an unprivileged user with cap_drop: [ALL]",
                details=details,
            )
        if not readonly:
            return CheckResult(
                name="Container Isolation",
                status="warn",
                message="Root filesystem is writable",
                remedy="Set read_only: true in the compose file",
                details=details,
            )
        return CheckResult(
            name="Container Isolation", status="pass", message=f"runs as {user}", details=details
        )

    # =========================================================================
    # Runner
    # =========================================================================

    def run(self, include_network: bool = True) -> VerificationReport:
        """Run every check. Network checks can be skipped for offline hosts."""
        report = VerificationReport()
        checks: list[Callable[[], CheckResult]] = [
            self.check_rules,
            self.check_ipv6,
            self.check_dns_resolver,
            self.check_proxy_health,
        ]
        if include_network:
            checks += [self.check_socks_routing, self.check_transparent_routing]
        checks.append(self.check_container_isolation)

        for check in checks:
            try:
                result = check()
            except Exception as exc:
                logger.error("Check %s crashed: %s", check.__name__, exc)
                result = CheckResult(
                    name=check.__name__.replace("check_", "").replace("_", " ").title(),
                    status="fail",
                    message=f"check crashed: {exc}",
                )
            report.checks.append(result)
        return report


def _is_loopback(address: str) -> bool:
    try:
        return ipaddress.ip_address(address.split("%")[0]).is_loopback
    except ValueError:
        return False
