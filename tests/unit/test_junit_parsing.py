from __future__ import annotations

from pathlib import Path

import pytest

from whetstone.errors import ErrorCode, TestRunnerError
from whetstone.tools.test_runner import (
    PytestRunner,
    detect_test_runner,
    extract_expected_actual,
    parse_junit_report,
    parse_summary,
)

REPORT = """<?xml version="1.0" encoding="utf-8"?>
<testsuites>
  <testsuite name="pytest" errors="1" failures="1" skipped="1" tests="6" time="0.250">
    <testcase classname="tests.test_calc" name="test_add" time="0.001" />
    <testcase classname="tests.test_calc" name="test_sub" time="0.001" />
    <testcase classname="tests.test_calc" name="test_mul" file="tests/test_calc.py" line="11" time="0.002">
      <failure message="assert 5 == 6">def test_mul():
&gt;       assert mul(2, 3) == 6
E       assert 5 == 6
E        +  where 5 = mul(2, 3)

tests/test_calc.py:12: AssertionError</failure>
    </testcase>
    <testcase classname="tests.test_calc" name="test_div" time="0.001">
      <error message="ZeroDivisionError: division by zero">tests/test_calc.py:20: ZeroDivisionError</error>
    </testcase>
    <testcase classname="tests.test_calc" name="test_skip" time="0.000">
      <skipped message="not today" />
    </testcase>
    <testcase classname="tests.test_calc" name="test_pow" time="0.001" />
  </testsuite>
</testsuites>
"""


def test_junit_counts_exclude_skipped_and_include_errors() -> None:
    outcome = parse_junit_report(REPORT)
    assert outcome.total == 5
    assert outcome.failed == 2
    assert outcome.passed == 3
    assert outcome.skipped == 1
    assert outcome.duration_ms == pytest.approx(250.0)
    assert outcome.all_passing is False


def test_junit_failures_carry_location_and_values() -> None:
    outcome = parse_junit_report(REPORT)
    mul, div = outcome.failures

    assert mul.name == "tests.test_calc::test_mul"
    assert mul.file == "tests/test_calc.py"
    assert mul.line == 12
    assert mul.expected == "6"
    assert mul.actual == "5"

    assert div.name == "tests.test_calc::test_div"
    assert div.line == 20
    assert div.expected is None
    assert div.message.startswith("ZeroDivisionError")


def test_single_testsuite_root_is_accepted() -> None:
    xml_text = '<testsuite tests="2" failures="0" errors="0" skipped="0" time="0.1">' \
        '<testcase classname="t" name="a"/><testcase classname="t" name="b"/></testsuite>'
    outcome = parse_junit_report(xml_text)
    assert outcome.summary() == "2/2 tests passing"
    assert outcome.all_passing


@pytest.mark.parametrize(
    "message, expected, actual",
    [
        ("assert 5 == 6", "6", "5"),
        ("E       AssertionError: assert [1, 2] == [1, 3]", "[1, 3]", "[1, 2]"),
        ("Expected 'abc', got 'abd'", "'abc'", "'abd'"),
        ("expected 10 but got 7", "10", "7"),
        ("something unrelated", None, None),
    ],
)
def test_extract_expected_actual(message, expected, actual) -> None:
    assert extract_expected_actual(message) == (expected, actual)


def test_summary_fallback_parses_counts() -> None:
    outcome = parse_summary("3 failed, 7 passed, 1 skipped, 2 warnings in 0.50s", "")
    assert outcome is not None
    assert (outcome.passed, outcome.failed, outcome.skipped, outcome.total) == (7, 3, 1, 10)

    collection = parse_summary("", "1 error in 0.10s")
    assert collection is not None
    assert collection.failed == 1
    assert collection.total == 1

    assert parse_summary("no tests ran", "") is None


def test_detect_requires_a_recognised_project(tmp_path: Path) -> None:
    runner = PytestRunner()
    assert runner.detect(tmp_path) is False
    with pytest.raises(TestRunnerError) as excinfo:
        detect_test_runner(tmp_path)
    assert excinfo.value.code == ErrorCode.TEST_RUNNER_NOT_FOUND

    (tmp_path / "test_example.py").write_text("def test_ok():\n    pass\n", encoding="utf-8")
    assert detect_test_runner(tmp_path).name == "pytest"


def test_missing_executable_reports_runner_not_found(tmp_path: Path) -> None:
    runner = PytestRunner(command=("whetstone-no-such-pytest",))
    with pytest.raises(TestRunnerError) as excinfo:
        runner.run(tmp_path, timeout=5)
    assert excinfo.value.code == ErrorCode.TEST_RUNNER_NOT_FOUND
