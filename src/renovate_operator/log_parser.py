"""
Renovate log parsing.

Renovate writes NDJSON when LOG_FORMAT=json. A finished run's log tells
us whether it produced warnings/errors and how the repository was
classified (the "Repository finished" summary line).
"""
import json
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

# Renovate log levels: 10=trace, 20=debug, 30=info, 40=warn, 50=error, 60=fatal
WARN_LEVEL = 40

MAX_LINE_BYTES = 1024 * 1024

FINISHED_MESSAGE = "Repository finished"

RESULT_LABELS = {
    "disabled-by-config": "Disabled",
    "disabled-closed-onboarding": "Onboarding Closed",
    "disabled-no-config": "No Config",
}


@dataclass
class LogParseResult:
    """Verdict over a run's log output."""
    has_issues: bool = False
    # None = no summary line seen
    renovate_result_status: Optional[str] = None


def classify_result(result: Optional[str]) -> str:
    """Map a 'Repository finished' result value to a human label."""
    if not result:
        return "Unknown"
    return RESULT_LABELS.get(result, result)


def parse_renovate_logs(logs: str) -> LogParseResult:
    """
    Parse Renovate NDJSON logs.

    Malformed lines are skipped. Lines of 1 MiB or more are treated as
    unparsable rather than decoded.

    Args:
        logs: Raw log output of a run

    Returns:
        LogParseResult
    """
    result = LogParseResult()
    if not logs:
        return result

    for line in logs.splitlines():
        if not line.strip():
            continue
        if len(line) >= MAX_LINE_BYTES:
            logger.debug(f"Skipping oversized log line ({len(line)} bytes)")
            continue

        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(entry, dict):
            continue

        level = entry.get("level")
        if isinstance(level, (int, float)) and not isinstance(level, bool) and level >= WARN_LEVEL:
            result.has_issues = True

        if entry.get("msg") == FINISHED_MESSAGE:
            raw_result = entry.get("result")
            result.renovate_result_status = classify_result(
                raw_result if isinstance(raw_result, str) else None
            )

    return result
