"""Centralized regex patterns for customer sync."""

import re


class Patterns:
    """Regex patterns used throughout the sync process."""

    # ISO-8601 timestamp: 2024-03-01T10:15:00Z, 2024-03-01T10:15:00.123+01:00
    ISO_TIMESTAMP = re.compile(
        r"^\d{4}-\d{2}-\d{2}"
        r"(?:[T ]\d{2}:\d{2}(?::\d{2}(?:\.\d{1,6})?)?)?"
        r"(?:Z|[+-]\d{2}:?\d{2})?$"
    )

    # Fractional seconds of any length up to microseconds: .1, .12345
    FRACTION = re.compile(r"\.(\d{1,6})")

    # UTC offset without colon at the end of a timestamp: +0100
    COMPACT_OFFSET = re.compile(r"([+-]\d{2})(\d{2})$")

    # Log level names accepted on the command line
    LOG_LEVEL = re.compile(r"^(TRACE|DEBUG|INFO|SUCCESS|WARNING|ERROR|CRITICAL)$", re.IGNORECASE)
