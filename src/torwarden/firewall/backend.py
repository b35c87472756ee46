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
"""Packet-filter backends.

``PacketFilter`` is the narrow interface the rule engine needs.
``IptablesBackend`` implements it by shelling out to iptables /
ip6tables and their -restore companions. Managed chains are replaced
with a single ``iptables-restore --noflush`` transaction per table,
so a chain is never observed half-written.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from abc import ABC, abstractmethod

from torwarden.errors import FirewallError
from torwarden.firewall.rules import IPV6

logger = logging.getLogger("torwarden.firewall.backend")


class PacketFilter(ABC):
    """Interface to the kernel packet filter."""

    @abstractmethod
    def list_rules(self, family: str, table: str, chain: str) -> list[tuple[str, ...]] | None:
        """Return the rule specs of a chain, or None if the chain does not exist."""

    @abstractmethod
    def check_rule(self, family: str, table: str, chain: str, spec: tuple[str, ...]) -> bool:
        """True if an identical rule is present in the chain."""

    @abstractmethod
    def insert_rule(
        self, family: str, table: str, chain: str, spec: tuple[str, ...], position: int = 1
    ) -> None:
        """Insert a rule at the given 1-based position."""

    @abstractmethod
    def delete_rule(self, family: str, table: str, chain: str, spec: tuple[str, ...]) -> None:
        """Delete the first rule matching spec."""

    @abstractmethod
    def replace_chains(
        self, family: str, table: str, chains: dict[str, list[tuple[str, ...]]]
    ) -> None:
        """Atomically create-or-flush each chain and fill it with the given rules."""

    @abstractmethod
    def delete_chain(self, family: str, table: str, chain: str) -> None:
        """Flush and remove a chain. Missing chains are ignored."""

    def chain_exists(self, family: str, table: str, chain: str) -> bool:
        return self.list_rules(family, table, chain) is not None


class IptablesBackend(PacketFilter):
    """iptables/ip6tables via subprocess."""

    def __init__(
        self,
        iptables: str = "iptables",
        ip6tables: str = "ip6tables",
        timeout: float = 10.0,
    ) -> None:
        self._binaries = {"ipv4": iptables, "ipv6": ip6tables}
        self._timeout = timeout

    def _binary(self, family: str) -> str:
        return self._binaries[IPV6 if family == IPV6 else "ipv4"]

    def _run(
        self, cmd: list[str], input_text: str | None = None, check: bool = True
    ) -> subprocess.CompletedProcess:
        logger.debug("Running: %s", " ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                input=input_text,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise FirewallError(f"Timed out after {self._timeout}s: {' '.join(cmd)}", cmd) from exc
        except (FileNotFoundError, OSError) as exc:
            raise FirewallError(f"Cannot run {cmd[0]}: {exc}", cmd) from exc

        if check and result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise FirewallError(
                f"{' '.join(cmd)} failed (rc={result.returncode}): {stderr}", cmd, stderr
            )
        return result

    def _cmd(self, family: str, table: str, *args: str) -> list[str]:
        return [self._binary(family), "-w", "-t", table, *args]

    def list_rules(self, family: str, table: str, chain: str) -> list[tuple[str, ...]] | None:
        result = self._run(self._cmd(family, table, "-S", chain), check=False)
        if result.returncode != 0:
            stderr = (result.stderr or "").lower()
            if "no chain" in stderr or "does not exist" in stderr:
                return None
            raise FirewallError(
                f"Cannot list {table}/{chain}: {result.stderr.strip()}",
                self._cmd(family, table, "-S", chain),
                result.stderr or "",
            )

        rules: list[tuple[str, ...]] = []
        for line in result.stdout.splitlines():
            tokens = shlex.split(line)
            # "-N CHAIN" and "-P CHAIN POLICY" are headers, not rules
            if len(tokens) >= 2 and tokens[0] == "-A" and tokens[1] == chain:
                rules.append(tuple(tokens[2:]))
        return rules

    def check_rule(self, family: str, table: str, chain: str, spec: tuple[str, ...]) -> bool:
        result = self._run(self._cmd(family, table, "-C", chain, *spec), check=False)
        return result.returncode == 0

    def insert_rule(
        self, family: str, table: str, chain: str, spec: tuple[str, ...], position: int = 1
    ) -> None:
        self._run(self._cmd(family, table, "-I", chain, str(position), *spec))

    def delete_rule(self, family: str, table: str, chain: str, spec: tuple[str, ...]) -> None:
        self._run(self._cmd(family, table, "-D", chain, *spec))

    def replace_chains(
        self, family: str, table: str, chains: dict[str, list[tuple[str, ...]]]
    ) -> None:
        lines = [f"*{table}"]
        # With --noflush, declaring a chain creates it or flushes it
        lines.extend(f":{chain} - [0:0]" for chain in chains)
        for chain, specs in chains.items():
            lines.extend(f"-A {chain} " + " ".join(shlex.quote(t) for t in spec) for spec in specs)
        lines.append("COMMIT")
        payload = "\n".join(lines) + "\n"
        self._run([f"{self._binary(family)}-restore", "-w", "--noflush"], input_text=payload)

    def delete_chain(self, family: str, table: str, chain: str) -> None:
        if self.list_rules(family, table, chain) is None:
            return
        self._run(self._cmd(family, table, "-F", chain))
        self._run(self._cmd(family, table, "-X", chain))
