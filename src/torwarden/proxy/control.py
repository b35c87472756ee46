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
"""Minimal client for the proxy's control protocol.

Only what the watchdog needs: authenticate, then GETINFO. A fresh
connection is opened per query so a wedged proxy can never leave a
half-read socket behind.

Reply grammar (subset):
    250-key=value            single-line value
    250+key=                 multi-line value, terminated by a "." line
    250 OK                   end of reply
    5xx message              error
"""

from __future__ import annotations

import logging
import re
import socket

from torwarden.errors import ControlPortError

logger = logging.getLogger("torwarden.proxy.control")

_PROGRESS_RE = re.compile(r"PROGRESS=(\d+)")
_STATUS_LINE_RE = re.compile(r"^(\d{3})([ +-])(.*)$")


class ControlPortClient:
    """Query the proxy control port."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 9051,
        password: str = "",
        timeout: float = 5.0,
    ) -> None:
        self.host = host
        self.port = port
        self._password = password
        self._timeout = timeout

    # ------------------------------------------------------------------
    # Protocol
    # ------------------------------------------------------------------

    def _auth_command(self) -> bytes:
        if self._password:
            escaped = self._password.replace("\\", "\\\\").replace('"', '\\"')
            return f'AUTHENTICATE "{escaped}"\r\n'.encode()
        return b"AUTHENTICATE\r\n"

    @staticmethod
    def _read_reply(reader) -> list[tuple[str, str]]:
        """Read one reply; return [(status, text), ...] with data blocks folded in."""
        lines: list[tuple[str, str]] = []
        while True:
            raw = reader.readline()
            if not raw:
                raise ControlPortError("Control connection closed mid-reply")
            line = raw.decode("utf-8", "replace").rstrip("\r\n")
            match = _STATUS_LINE_RE.match(line)
            if not match:
                raise ControlPortError(f"Malformed control reply: {line!r}")
            status, sep, text = match.groups()
            if sep == "+":
                block = [text]
                while True:
                    data = reader.readline()
                    if not data:
                        raise ControlPortError("Control connection closed mid-data")
                    data_line = data.decode("utf-8", "replace").rstrip("\r\n")
                    if data_line == ".":
                        break
                    block.append(data_line[1:] if data_line.startswith("..") else data_line)
                text = "\n".join(block)
            lines.append((status, text))
            if sep == " ":
                return lines

    @staticmethod
    def _raise_on_error(reply: list[tuple[str, str]], what: str) -> None:
        status, text = reply[-1]
        if not status.startswith("2"):
            raise ControlPortError(f"{what} rejected: {status} {text}")

    def query(self, key: str) -> str:
        """GETINFO key and return its value. Raises ControlPortError."""
        try:
            with socket.create_connection((self.host, self.port), timeout=self._timeout) as sock:
                sock.settimeout(self._timeout)
                reader = sock.makefile("rb")
                sock.sendall(self._auth_command())
                self._raise_on_error(self._read_reply(reader), "AUTHENTICATE")

                sock.sendall(f"GETINFO {key}\r\n".encode())
                reply = self._read_reply(reader)
                self._raise_on_error(reply, f"GETINFO {key}")
                try:
                    sock.sendall(b"QUIT\r\n")
                except OSError:
                    pass
        except OSError as exc:
            raise ControlPortError(f"Control port {self.host}:{self.port}: {exc}") from exc

        prefix = f"{key}="
        for _status, text in reply:
            if text.startswith(prefix):
                return text[len(prefix) :]
        raise ControlPortError(f"GETINFO {key}: key missing from reply")

    # ------------------------------------------------------------------
    # Convenience queries
    # ------------------------------------------------------------------

    def count_built_circuits(self) -> int:
        """Number of circuits in the BUILT state."""
        return count_built(self.query("circuit-status"))

    def bootstrap_progress(self) -> int:
        """Bootstrap percentage (0-100)."""
        return parse_bootstrap_progress(self.query("status/bootstrap-phase"))


def count_built(circuit_status: str) -> int:
    """Count BUILT circuits in a circuit-status value.

    Each line is "<id> <STATUS> <path> ..."; the status is the second field.
    """
    count = 0
    for line in circuit_status.splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[1] == "BUILT":
            count += 1
    return count


def parse_bootstrap_progress(phase: str) -> int:
    match = _PROGRESS_RE.search(phase)
    if not match:
        raise ControlPortError(f"No PROGRESS in bootstrap phase: {phase!r}")
    return int(match.group(1))
