from __future__ import annotations

from cifix.classifier.rules import NO_MATCH_DETAIL, LogClassifier, detect_bug_type
from cifix.models import BugType, IssueStatus
from cifix.parsers.locations import parse_location

classify = LogClassifier().classify


def test_eslint_line_is_linting_with_location() -> None:
    issues = classify("ESLint: unexpected token at src/app.js:10:2")
    assert len(issues) == 1
    i = issues[0]
    assert i.bug_type == BugType.linting
    assert i.file == "src/app.js"
    assert i.line == 10
    assert i.status == IssueStatus.open


def test_location_grammars_first_match_wins() -> None:
    py = parse_location('  File "app/main.py", line 42, in handler')
    assert (py.file, py.line) == ("app/main.py", 42)

    tsc = parse_location("src/index.ts(7,5): error TS2322: Type 'string' is not assignable")
    assert (tsc.file, tsc.line) == ("src/index.ts", 7)

    generic = parse_location("tests/test_math.py:18: AssertionError")
    assert (generic.file, generic.line) == ("tests/test_math.py", 18)

    none = parse_location("Error: something exploded")
    assert (none.file, none.line) == ("unknown", None)


def test_bug_type_ordering() -> None:
    assert detect_bug_type("flake8 E501 line too long") == BugType.linting
    assert detect_bug_type("SyntaxError: invalid syntax") == BugType.syntax
    assert detect_bug_type("src/a.ts(3,1): error TS2345: Argument") == BugType.type_error
    assert detect_bug_type("ModuleNotFoundError: No module named 'requests'") == BugType.import_error
    assert detect_bug_type("IndentationError: unexpected indent") == BugType.indentation
    assert detect_bug_type("AssertionError: expected 3 got 4") == BugType.logic
    # plain words that merely contain "ts" are not compiler codes
    assert detect_bug_type("Error: 2 tests failed") == BugType.logic


def test_noise_lines_are_ignored() -> None:
    logs = "\n".join(
        [
            "> jest",
            "",
            "PASS tests/ok.test.js",
            "FAIL tests/math.test.js",
            "  Error: expected 3 to be 4 at tests/math.test.js:12:5",
        ]
    )
    issues = classify(logs)
    assert [i.detail for i in issues] == ["Error: expected 3 to be 4 at tests/math.test.js:12:5"]
    assert issues[0].file == "tests/math.test.js"
    assert issues[0].line == 12


def test_no_match_returns_synthetic_pipeline_issue() -> None:
    issues = classify("all good here\nnothing to see")
    assert len(issues) == 1
    assert issues[0].file == "pipeline"
    assert issues[0].line is None
    assert issues[0].bug_type == BugType.logic
    assert issues[0].detail == NO_MATCH_DETAIL


def test_issue_count_is_capped() -> None:
    logs = "\n".join(f"Error: failure number {n} at src/f{n}.js:{n + 1}" for n in range(50))
    assert len(classify(logs)) == 30
    assert len(LogClassifier(max_issues=5).classify(logs)) == 5


def test_classifier_is_deterministic() -> None:
    logs = "TypeError: x is not a function at src/a.js:3:1\nImportError: cannot import name 'y'"
    first = [i.model_dump() for i in classify(logs)]
    second = [i.model_dump() for i in classify(logs)]
    assert first == second


def test_timestamps_and_host_ports_are_not_locations() -> None:
    assert parse_location("[12:30:45] Error: boom") == parse_location("Error: boom")
    assert parse_location("server listening on http://localhost:3000").file == "unknown"
    assert parse_location("connect ECONNREFUSED 127.0.0.1:5432").file == "unknown"

    issues = classify("[12:30:45] Error: cannot read config at src/config.js:7:3")
    assert len(issues) == 1
    assert (issues[0].file, issues[0].line) == ("src/config.js", 7)

    issues = classify("[12:30:45] Error: request to http://localhost:3000 failed")
    assert (issues[0].file, issues[0].line) == ("unknown", None)
