"""Closed enumerations shared by policies and result records."""

from __future__ import annotations

from enum import Enum


class ValidationMode(str, Enum):
    """How a reply is judged."""

    STRICT_EXACT = "STRICT_EXACT"
    STRUCTURE_ONLY = "STRUCTURE_ONLY"
    PARSED_RANGE = "PARSED_RANGE"
    EXPECTED_NO_REPLY = "EXPECTED_NO_REPLY"


class ResultStatus(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    NO_REPLY = "NO_REPLY"
    SKIPPED = "SKIPPED"

    @property
    def color(self) -> str:
        if self is ResultStatus.PASS:
            return "GREEN"
        if self is ResultStatus.SKIPPED:
            return "GRAY"
        return "RED"


class TransportStatus(str, Enum):
    REPLY = "REPLY"
    NO_REPLY = "NO_REPLY"


# Statuses that make a record worth replaying
ISSUE_STATUSES = frozenset({ResultStatus.FAIL.value, ResultStatus.NO_REPLY.value, ResultStatus.SKIPPED.value})
