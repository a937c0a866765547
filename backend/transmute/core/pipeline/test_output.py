"""
Test Output Parser
==================

Extracts pass/fail counts from unit test (vitest) and browser test
(playwright) runner output, and decides whether a build succeeded.

JSON reporter output is preferred; plain text summaries are the fallback.
"""

import json
import re
from dataclasses import dataclass

import structlog

logger = structlog.get_logger()


@dataclass
class SuiteCounts:
    """Counts from one test suite run."""
    passed: int = 0
    failed: int = 0
    total: int = 0
    errors: str = ""

    @property
    def all_passed(self) -> bool:
        """At least one test ran and none failed."""
        return self.failed == 0 and self.passed > 0

    @classmethod
    def crashed(cls, output: str) -> "SuiteCounts":
        """Counts for a runner that could not be executed at all."""
        return cls(passed=0, failed=1, total=1, errors=output[:1000])


# Markers that a TypeScript/Next build failed
BUILD_ERROR_MARKERS = ("error TS", "Build error")

# Lines worth showing to the diagnosis step
ERROR_LINE_MARKERS = ("FAIL", "Error", "AssertionError")
MAX_ERROR_LINES = 20

_UNIT_JSON = re.compile(r"\{[\s\S]*\"testResults\"[\s\S]*\}")
_E2E_JSON = re.compile(r"\{[\s\S]*\"suites\"[\s\S]*\}")
_SUMMARY_LINE = re.compile(r"^\s*Tests\s+(.+)$", re.MULTILINE)
_PASSED = re.compile(r"(\d+)\s+pass(?:ed)?", re.IGNORECASE)
_FAILED = re.compile(r"(\d+)\s+fail(?:ed)?", re.IGNORECASE)
_TOTAL = re.compile(r"\((\d+)\)")


def build_succeeded(output: str) -> bool:
    return not any(marker in output for marker in BUILD_ERROR_MARKERS)


def _first_int(pattern: re.Pattern, text: str) -> int:
    match = pattern.search(text)
    return int(match.group(1)) if match else 0


def _error_lines(output: str) -> str:
    lines = [
        line for line in output.split("\n")
        if any(marker in line for marker in ERROR_LINE_MARKERS)
    ]
    return "\n".join(lines[:MAX_ERROR_LINES])


def parse_unit_results(output: str) -> SuiteCounts:
    """
    Parse vitest output.

    Args:
        output: Raw runner output (JSON or verbose reporter)

    Returns:
        Counts and the most relevant error lines
    """
    match = _UNIT_JSON.search(output)
    if match:
        try:
            data = json.loads(match.group(0))
            passed = int(data.get("numPassedTests") or 0)
            failed = int(data.get("numFailedTests") or 0)
            total = int(data.get("numTotalTests") or (passed + failed))
            errors = "\n".join(
                r["message"] for r in data.get("testResults", []) if r.get("message")
            )
            return SuiteCounts(passed, failed, total, errors)
        except (ValueError, TypeError, AttributeError) as e:
            logger.debug("Unit test JSON unreadable, parsing text", error=str(e))

    # Prefer the "Tests  2 failed | 6 passed (8)" summary over "Test Files" lines
    summary = _SUMMARY_LINE.search(output)
    source = summary.group(1) if summary else output

    passed = _first_int(_PASSED, source)
    failed = _first_int(_FAILED, source)
    total = _first_int(_TOTAL, source) if summary else 0
    return SuiteCounts(passed, failed, total or passed + failed, _error_lines(output))


def parse_e2e_results(output: str) -> SuiteCounts:
    """Parse playwright output (JSON or list reporter)."""
    match = _E2E_JSON.search(output)
    if match:
        try:
            stats = json.loads(match.group(0)).get("stats") or {}
            passed = int(stats.get("expected") or 0)
            failed = int(stats.get("unexpected") or 0)
            return SuiteCounts(passed, failed, passed + failed)
        except (ValueError, TypeError, AttributeError) as e:
            logger.debug("E2E JSON unreadable, parsing text", error=str(e))

    passed = _first_int(_PASSED, output)
    failed = _first_int(_FAILED, output)
    return SuiteCounts(passed, failed, passed + failed, _error_lines(output))
