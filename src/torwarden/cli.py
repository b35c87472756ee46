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
"""Command-line entry point.

Subcommands:
    run        watchdog daemon (root)
    apply      install the redirection rules (root)
    rules      show rule-set verification
    teardown   remove the managed chains (root)
    check      single health poll
    verify     one-shot leak test
    status     audit log summary
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
import time
from dataclasses import asdict, dataclass

from torwarden import __version__
from torwarden.audit import AuditLogger
from torwarden.config import DEFAULT_CONFIG_PATH, WatchdogConfig, load_config
from torwarden.errors import FirewallError
from torwarden.firewall.backend import IptablesBackend
from torwarden.firewall.engine import RedirectionRuleEngine
from torwarden.firewall.rules import ProxyIdentity
from torwarden.health.checker import HealthChecker
from torwarden.health.models import HealthState
from torwarden.log import configure_logging
from torwarden.metrics import MetricsTextfile
from torwarden.proxy.control import ControlPortClient
from torwarden.proxy.process import DockerProcessManager, ProcessManager
from torwarden.recovery.alerts import build_alert_sink
from torwarden.recovery.controller import RecoveryController
from torwarden.verify import VerificationHarness

logger = logging.getLogger("torwarden.cli")

ROOT_COMMANDS = frozenset({"run", "apply", "teardown"})


@dataclass
class Runtime:
    """Collaborators wired from one configuration."""

    config: WatchdogConfig
    engine: RedirectionRuleEngine
    process_manager: ProcessManager
    control: ControlPortClient
    checker: HealthChecker


def build_runtime(config: WatchdogConfig) -> Runtime:
    proxy = config.proxy
    fw = config.firewall
    backend = IptablesBackend(fw.iptables, fw.ip6tables, timeout=fw.command_timeout)
    engine = RedirectionRuleEngine(backend, fw, proxy_host=proxy.address or proxy.host)
    pm = DockerProcessManager(compose_dir=proxy.compose_dir)
    control = ControlPortClient(
        proxy.host, proxy.control_port, proxy.control_password, timeout=config.health.probe_timeout
    )
    checker = HealthChecker(pm, proxy, config.health, control=control)
    return Runtime(config=config, engine=engine, process_manager=pm, control=control, checker=checker)


def proxy_identity(config: WatchdogConfig) -> ProxyIdentity:
    """ProxyIdentity from config. Raises ValueError if neither uid nor address is set."""
    if config.proxy.uid is None and not config.proxy.address:
        raise ValueError(
            "no proxy identity configured; set proxy.address (container bridge address, "
            "e.g. 172.20.0.10) or proxy.uid (owner uid of a host-network proxy)"
        )
    return ProxyIdentity(uid=config.proxy.uid, address=config.proxy.address)


def _is_root() -> bool:
    return os.geteuid() == 0


# =============================================================================
# Commands
# =============================================================================


def cmd_run(args: argparse.Namespace, config: WatchdogConfig) -> int:
    if args.interval is not None:
        config.recovery.poll_interval = args.interval
    if args.teardown_on_exit:
        config.recovery.teardown_on_exit = True

    identity = proxy_identity(config)
    runtime = build_runtime(config)
    audit = AuditLogger(config.audit_log_path)
    metrics = MetricsTextfile(config.metrics_textfile) if config.metrics_textfile else None
    controller = RecoveryController(
        runtime.checker,
        runtime.engine,
        runtime.process_manager,
        identity,
        config=config,
        alerts=build_alert_sink(config.alerts),
        audit=audit,
        metrics=metrics,
    )

    def _shutdown(signum, frame):
        logger.info("Received signal %d, shutting down...", signum)
        controller.stop()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    logger.info("=" * 60)
    logger.info("Torwarden %s -- traffic redirection watchdog", __version__)
    logger.info("=" * 60)
    logger.info("  Container: %s", config.proxy.container_name)
    logger.info("  Chain: %s (min %d rules)", config.firewall.chain, config.firewall.min_rules)
    logger.info("  Interval: %.0fs, threshold: %d", config.recovery.poll_interval, config.recovery.restart_threshold)
    logger.info("  Audit log: %s", config.audit_log_path)
    logger.info("=" * 60)

    try:
        controller.run()
    finally:
        audit.close()
    return 0


def cmd_apply(args: argparse.Namespace, config: WatchdogConfig) -> int:
    runtime = build_runtime(config)
    try:
        ruleset = runtime.engine.apply(
            config.proxy.trans_port, config.proxy.dns_port, proxy_identity(config)
        )
    except FirewallError as exc:
        print(f"Failed to apply rules: {exc}", file=sys.stderr)
        return 1
    status = runtime.engine.verify()
    print(f"Applied {len(ruleset.rules)} rules and {len(ruleset.jumps)} jumps to {ruleset.chain}")
    print(status.summary())
    return 0 if status.is_complete else 1


def cmd_rules(args: argparse.Namespace, config: WatchdogConfig) -> int:
    status = build_runtime(config).engine.verify()
    if args.json:
        print(json.dumps(status.to_dict(), indent=2))
    else:
        print(f"{'OK' if status.is_complete else 'INCOMPLETE'}: {status.summary()}")
    return 0 if status.is_complete else 1


def cmd_teardown(args: argparse.Namespace, config: WatchdogConfig) -> int:
    try:
        removed = build_runtime(config).engine.teardown()
    except FirewallError as exc:
        print(f"Teardown failed: {exc}", file=sys.stderr)
        return 1
    print(f"Removed {config.firewall.chain} chains and {removed} jump rule(s)")
    return 0


def cmd_check(args: argparse.Namespace, config: WatchdogConfig) -> int:
    status = build_runtime(config).checker.poll()
    if args.json:
        print(json.dumps(status.to_dict(), indent=2))
    else:
        print(status.describe())
        if status.warnings:
            print("warnings: " + ", ".join(w.value for w in status.warnings))
    return {HealthState.HEALTHY: 0, HealthState.DEGRADED: 1}.get(status.state, 2)


def cmd_verify(args: argparse.Namespace, config: WatchdogConfig) -> int:
    runtime = build_runtime(config)
    harness = VerificationHarness(
        runtime.engine, runtime.checker, runtime.process_manager, config
    )
    report = harness.run(include_network=not args.offline)
    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print(report.render_text(), end="")
    if args.report is not None:
        path = report.write(args.report or None, as_json=args.json)
        print(f"Report written to {path}", file=sys.stderr)
    return 0 if report.healthy else 1


def cmd_status(args: argparse.Namespace, config: WatchdogConfig) -> int:
    audit = AuditLogger(config.audit_log_path)
    stats = audit.get_stats()
    recent = audit.read_recent(args.recent)
    if args.json:
        print(json.dumps({"stats": stats, "recent": [asdict(e) for e in recent]}, indent=2))
        return 0

    print(f"Audit log: {audit.path}")
    for key, value in stats.items():
        if key == "last_recovery_at" and value:
            value = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(value))
        print(f"  {key}: {value}")
    if recent:
        print("")
        print("Recent events:")
        for entry in recent:
            stamp = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(entry.timestamp))
            outcome = f" [{entry.outcome}]" if entry.outcome else ""
            print(f"  {stamp} {entry.event_type}{outcome} {entry.message}".rstrip())
    return 0


COMMANDS = {
    "run": cmd_run,
    "apply": cmd_apply,
    "rules": cmd_rules,
    "teardown": cmd_teardown,
    "check": cmd_check,
    "verify": cmd_verify,
    "status": cmd_status,
}


# =============================================================================
# Entry point
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="torwarden",
        description="Torwarden -- transparent onion-proxy redirection and health watchdog",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--config",
        default=None,
        help=f"Path to watchdog.yaml (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--container",
        default=None,
        help="Proxy container name (overrides config, default: tor-proxy)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run the watchdog loop")
    run.add_argument("--interval", type=float, default=None, help="Seconds between polls")
    run.add_argument(
        "--teardown-on-exit",
        action="store_true",
        help="Remove the rules on shutdown (default: leave the host fail-closed)",
    )

    sub.add_parser("apply", help="Install the redirection rules")

    rules = sub.add_parser("rules", help="Verify the installed rules")
    rules.add_argument("--json", action="store_true")

    sub.add_parser("teardown", help="Remove the managed chains")

    check = sub.add_parser("check", help="Poll proxy health once")
    check.add_argument("--json", action="store_true")

    verify = sub.add_parser("verify", help="Run the leak test")
    verify.add_argument("--json", action="store_true")
    verify.add_argument("--offline", action="store_true", help="Skip checks that need the network")
    verify.add_argument(
        "--report",
        nargs="?",
        const="",
        default=None,
        metavar="PATH",
        help="Write the report to PATH (default: /tmp/leak-test-report-<time>.txt)",
    )

    status = sub.add_parser("status", help="Summarise the audit log")
    status.add_argument("--recent", type=int, default=10)
    status.add_argument("--json", action="store_true")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Entry point for the torwarden command."""
    args = build_parser().parse_args(argv)
    config = load_config(args.config)
    if args.container:
        config.proxy.container_name = args.container

    configure_logging(args.log_level, config.log_file if args.command == "run" else None)

    if args.command in ROOT_COMMANDS and not _is_root():
        print(f"torwarden {args.command} must be run as root", file=sys.stderr)
        return 1

    try:
        return COMMANDS[args.command](args, config)
    except ValueError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
