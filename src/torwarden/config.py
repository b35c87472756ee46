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
"""Watchdog configuration schema.

The configuration is a single YAML file owned by root on the host.
Every section is optional; a missing or unreadable file yields the
defaults that match the stock proxy deployment.

Config location: /etc/torwarden/watchdog.yaml  (override with TORWARDEN_HOME)
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("torwarden.config")

# ---------------------------------------------------------------------------
# Default paths
# ---------------------------------------------------------------------------
_TORWARDEN_HOME = Path(os.environ.get("TORWARDEN_HOME", "/etc/torwarden"))
DEFAULT_CONFIG_PATH = _TORWARDEN_HOME / "watchdog.yaml"
DEFAULT_LOG_FILE = "/var/log/torwarden/watchdog.log"
DEFAULT_AUDIT_LOG = "/var/log/torwarden/audit.jsonl"

# ---------------------------------------------------------------------------
# Log phrases that mean the proxy is unusable even though it is running.
# Matched case-insensitively against the recent container log window.
# ---------------------------------------------------------------------------
DEFAULT_CRITICAL_PATTERNS: tuple[str, ...] = (
    "Connection refused",
    "Circuit establish timeout",
    "Failed to find node",
    "Directory server failure",
    "Consensus not signed",
    "Clock skew",
)


@dataclass
class ProxyConfig:
    """Where the onion-routing proxy lives and how to reach it."""

    container_name: str = "tor-proxy"
    host: str = "127.0.0.1"  # Address the probes connect to
    socks_port: int = 9050
    dns_port: int = 9053
    trans_port: int = 9040
    control_port: int = 9051
    control_password: str = ""  # Empty = null/cookie-less authentication
    uid: int | None = None  # Owner uid of the proxy process (host-network deployments)
    address: str = ""  # Container address on the bridge network, e.g. 172.20.0.10
    compose_dir: str = "/opt/tor-proxy"  # Empty = plain container start/stop


@dataclass
class FirewallConfig:
    """Managed packet-filter chains and the overlay network exemption."""

    chain: str = "TORPROXY"
    min_rules: int = 5
    overlay_interface: str = "tailscale0"
    overlay_cidr: str = "100.64.0.0/10"
    overlay_udp_ports: list[int] = field(default_factory=lambda: [41641])
    iptables: str = "iptables"
    ip6tables: str = "ip6tables"
    command_timeout: float = 10.0


@dataclass
class HealthConfig:
    """Thresholds for the layered health poll."""

    probe_timeout: float = 3.0
    min_circuits: int = 3
    log_window: int = 300  # Seconds of container log scanned for critical errors
    bootstrap_tail: int = 10  # Log lines inspected for the bootstrap marker
    critical_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_CRITICAL_PATTERNS))
    warning_patterns: list[str] = field(default_factory=list)  # Matches degrade instead of fail


@dataclass
class RecoveryConfig:
    """Timing and limits for the recovery state machine."""

    poll_interval: float = 60.0
    restart_threshold: int = 3
    grace_period: float = 10.0
    recovery_polls: int = 30
    recovery_poll_interval: float = 5.0
    max_restart_attempts: int = 3
    emergency_cooldown: float = 300.0
    rule_check_every: int = 5  # Ticks between rule-set verifications
    circuit_check_every: int = 5  # Ticks between circuit-count checks
    rule_repair_alert_after: int = 3  # Consecutive failed re-applies before alerting
    teardown_on_exit: bool = False


@dataclass
class AlertConfig:
    """Alert delivery targets. All delivery is best-effort."""

    syslog: bool = True
    syslog_address: str = "/dev/log"
    syslog_tag: str = "tor-watchdog"
    email_to: str = ""
    email_from: str = "torwarden@localhost"
    smtp_host: str = "localhost"
    smtp_port: int = 25
    email_subject: str = "Tor Exit Node Alert"
    webhook_url: str = ""
    webhook_timeout: float = 10.0


@dataclass
class WatchdogConfig:
    """Full watchdog configuration."""

    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    firewall: FirewallConfig = field(default_factory=FirewallConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)

    log_file: str = DEFAULT_LOG_FILE
    audit_log_path: str = DEFAULT_AUDIT_LOG
    metrics_textfile: str = ""  # e.g. /var/lib/node_exporter/textfile_collector/tor.prom

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def load_config(path: Path | str | None = None) -> WatchdogConfig:
    """Load watchdog configuration from YAML file.

    If the file does not exist or cannot be parsed, returns the
    default config.
    """
    config_path = Path(path) if path else DEFAULT_CONFIG_PATH

    if not config_path.exists():
        logger.info("No watchdog config at %s -- using defaults", config_path)
        return WatchdogConfig()

    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
        if raw is None:
            return WatchdogConfig()
        if not isinstance(raw, dict):
            logger.warning("Invalid watchdog config (not a dict) -- using defaults")
            return WatchdogConfig()
        return _parse_config(raw)
    except (OSError, yaml.YAMLError, TypeError, ValueError) as exc:
        logger.error("Failed to load watchdog config: %s -- using defaults", exc)
        return WatchdogConfig()


def save_config(config: WatchdogConfig, path: Path | str | None = None) -> None:
    """Save watchdog configuration to YAML file."""
    config_path = Path(path) if path else DEFAULT_CONFIG_PATH
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(
        yaml.dump(config.to_dict(), default_flow_style=False, sort_keys=False),
        encoding="utf-8",
    )
    logger.info("Saved watchdog config to %s", config_path)


def _parse_section(cls, raw: Any):
    """Build a section dataclass from a raw mapping, ignoring unknown keys."""
    if not isinstance(raw, dict):
        return cls()
    known = {f.name for f in fields(cls)}
    unknown = set(raw) - known
    if unknown:
        logger.warning("Ignoring unknown %s keys: %s", cls.__name__, ", ".join(sorted(unknown)))
    return cls(**{k: v for k, v in raw.items() if k in known})


def _parse_config(raw: dict) -> WatchdogConfig:
    """Parse raw YAML dict into WatchdogConfig."""
    health = _parse_section(HealthConfig, raw.get("health"))
    if not isinstance(health.critical_patterns, list) or not health.critical_patterns:
        health.critical_patterns = list(DEFAULT_CRITICAL_PATTERNS)
    if not isinstance(health.warning_patterns, list):
        health.warning_patterns = []

    firewall = _parse_section(FirewallConfig, raw.get("firewall"))
    firewall.overlay_udp_ports = [int(p) for p in firewall.overlay_udp_ports or []]

    proxy = _parse_section(ProxyConfig, raw.get("proxy"))
    if proxy.uid is not None:
        proxy.uid = int(proxy.uid)

    return WatchdogConfig(
        proxy=proxy,
        firewall=firewall,
        health=health,
        recovery=_parse_section(RecoveryConfig, raw.get("recovery")),
        alerts=_parse_section(AlertConfig, raw.get("alerts")),
        log_file=raw.get("log_file", DEFAULT_LOG_FILE),
        audit_log_path=raw.get("audit_log_path", DEFAULT_AUDIT_LOG),
        metrics_textfile=raw.get("metrics_textfile", "") or "",
    )
