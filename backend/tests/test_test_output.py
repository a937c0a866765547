"""
Test Output Parser Tests
========================
"""

import json

import pytest

from transmute.core.pipeline.test_output import (
    SuiteCounts,
    build_succeeded,
    parse_e2e_results,
    parse_unit_results,
)

from fakes import BROKEN_BUILD, FAILING_TESTS, PASSING_TESTS


class TestUnitResults:
    """vitest output."""

    def test_verbose_summary_with_failures(self):
        counts = parse_unit_results(FAILING_TESTS)

        assert (counts.passed, counts.failed, counts.total) == (6, 2, 8)
        assert not counts.all_passed
        assert "rejects a wrong password" in counts.errors
        assert "AssertionError" in counts.errors

    def test_verbose_summary_all_passing(self):
        counts = parse_unit_results(PASSING_TESTS)

        assert (counts.passed, counts.failed, counts.total) == (8, 0, 8)
        assert counts.all_passed

    def test_json_reporter(self):
        output = "noise before\n" + json.dumps({
            "numPassedTests": 5,
            "numFailedTests": 1,
            "numTotalTests": 6,
            "testResults": [{"message": "expected true to be false"}, {"message": ""}],
        })

        counts = parse_unit_results(output)

        assert (counts.passed, counts.failed, counts.total) == (5, 1, 6)
        assert counts.errors == "expected true to be false"

    def test_unreadable_json_falls_back_to_text(self):
        output = '{"testResults": [oops}\n      Tests  3 passed (3)\n'

        counts = parse_unit_results(output)

        assert (counts.passed, counts.total) == (3, 3)

    def test_no_summary_line(self):
        counts = parse_unit_results("4 passed, 1 failed")

        assert (counts.passed, counts.failed, counts.total) == (4, 1, 5)

    def test_nothing_ran_is_not_a_pass(self):
        counts = parse_unit_results("No test files found, exiting with code 1")

        assert counts.total == 0
        assert not counts.all_passed


class TestE2EResults:
    """playwright output."""

    def test_list_reporter(self):
        counts = parse_e2e_results("Running 4 tests using 2 workers\n  3 passed (4.2s)\n  1 failed\n")

        assert (counts.passed, counts.failed, counts.total) == (3, 1, 4)

    def test_json_reporter(self):
        output = json.dumps({"suites": [], "stats": {"expected": 7, "unexpected": 0}})

        counts = parse_e2e_results(output)

        assert (counts.passed, counts.failed) == (7, 0)
        assert counts.all_passed


class TestBuildSucceeded:
    """Build output classification."""

    @pytest.mark.parametrize(
        "output, expected",
        [
            ("Build completed in 2.1s", True),
            ("", True),
            (BROKEN_BUILD, False),
            ("Build error occurred\nFailed to compile.", False),
        ],
    )
    def test_markers(self, output: str, expected: bool):
        assert build_succeeded(output) is expected


class TestSuiteCounts:
    def test_crashed_runner_counts_as_failure(self):
        counts = SuiteCounts.crashed("sh: vitest: command not found")

        assert (counts.passed, counts.failed, counts.total) == (0, 1, 1)
        assert not counts.all_passed
        assert "command not found" in counts.errors
