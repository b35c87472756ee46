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
"""Critical-log classification.

The watchdog does not hard-code which proxy log lines are fatal. A
LogPatternMatcher maps case-insensitive phrases (or regexes) to a
classification. A "critical" match fails the poll; a "warning" match
only degrades it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from torwarden.config import DEFAULT_CRITICAL_PATTERNS

CRITICAL = "critical"
WARNING = "warning"
CLASSIFICATIONS = (CRITICAL, WARNING)


@dataclass(frozen=True)
class LogMatch:
    pattern: str
    classification: str
    line: str

    @property
    def is_critical(self) -> bool:
        return self.classification == CRITICAL


class LogPatternMatcher:
    """Ordered list of (pattern, classification) pairs.

    Plain phrases are matched as case-insensitive substrings. Patterns
    prefixed with ``re:`` are compiled as case-insensitive regexes.
    """

    def __init__(self, patterns: list[tuple[str, str]] | None = None) -> None:
        if patterns is None:
            patterns = [(p, CRITICAL) for p in DEFAULT_CRITICAL_PATTERNS]
        self._patterns: list[tuple[str, re.Pattern[str], str]] = []
        for pattern, classification in patterns:
            self.add(pattern, classification)

    @classmethod
    def from_phrases(cls, phrases: list[str], classification: str = CRITICAL) -> LogPatternMatcher:
        return cls([(p, classification) for p in phrases])

    @classmethod
    def from_config(cls, critical: list[str], warning: list[str] | None = None) -> LogPatternMatcher:
        """Critical phrases first, so a line matching both counts as critical."""
        return cls([(p, CRITICAL) for p in critical] + [(p, WARNING) for p in warning or []])

    def add(self, pattern: str, classification: str = CRITICAL) -> None:
        if classification not in CLASSIFICATIONS:
            raise ValueError(f"Unknown log classification: {classification!r}")
        if pattern.startswith("re:"):
            compiled = re.compile(pattern[3:], re.IGNORECASE)
        else:
            compiled = re.compile(re.escape(pattern), re.IGNORECASE)
        self._patterns.append((pattern, compiled, classification))

    @property
    def patterns(self) -> list[str]:
        return [p for p, _, _ in self._patterns]

    def match(self, line: str) -> LogMatch | None:
        for pattern, compiled, classification in self._patterns:
            if compiled.search(line):
                return LogMatch(pattern=pattern, classification=classification, line=line)
        return None

    def scan(self, lines: list[str]) -> list[LogMatch]:
        """All matching lines, in log order."""
        matches = []
        for line in lines:
            found = self.match(line)
            if found is not None:
                matches.append(found)
        return matches
