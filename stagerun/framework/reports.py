"""Test-report and security-scan report ingestion.

Test reports are JUnit XML (`<testsuite>` or `<testsuites>`) or JSON of the
form `{"suite", "tests", "failures", "errors", "cases": [...]}`. Scan reports
are JSON `{"tool", "findings": [{"rule_id", "severity", ...}]}` or SARIF 2.1.
Optional fields may be absent everywhere.
"""

from __future__ import annotations

import json
import os
import xml.etree.ElementTree as ET
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from stagekit.engine.nodes import SEVERITY_ORDER
from stagerun.foundation.errors import ReportParseError

_SARIF_LEVELS = {"error": "high", "warning": "medium", "note": "low", "none": "info"}


@dataclass(frozen=True)
class TestCaseRecord:
    classname: str
    name: str
    duration: float = 0.0
    failure: str | None = None
    output: str | None = None

    __test__ = False

    @property
    def failed(self) -> bool:
        return self.failure is not None


@dataclass(frozen=True)
class TestReportSummary:
    suite: str
    tests: int
    failures: int
    errors: int = 0
    skipped: int = 0
    cases: tuple[TestCaseRecord, ...] = ()
    source: str | None = None

    __test__ = False

    @property
    def failed_count(self) -> int:
        return self.failures + self.errors

    def merge(self, other: "TestReportSummary") -> "TestReportSummary":
        return TestReportSummary(
            suite=self.suite if self.suite == other.suite else f"{self.suite}+{other.suite}",
            tests=self.tests + other.tests,
            failures=self.failures + other.failures,
            errors=self.errors + other.errors,
            skipped=self.skipped + other.skipped,
            cases=self.cases + other.cases,
            source=self.source,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "suite": self.suite,
            "tests": self.tests,
            "failures": self.failures,
            "errors": self.errors,
            "skipped": self.skipped,
            "source": self.source,
        }


@dataclass(frozen=True)
class Finding:
    rule_id: str
    severity: str
    message: str | None = None
    location: str | None = None


@dataclass(frozen=True)
class ScanReportSummary:
    tool: str
    findings: tuple[Finding, ...] = ()
    source: str | None = None

    def at_or_above(self, threshold: str) -> tuple[Finding, ...]:
        floor = SEVERITY_ORDER.index(threshold)
        return tuple(f for f in self.findings if SEVERITY_ORDER.index(f.severity) >= floor)

    def counts(self) -> dict[str, int]:
        out = {severity: 0 for severity in SEVERITY_ORDER}
        for finding in self.findings:
            out[finding.severity] += 1
        return out

    def to_dict(self) -> dict[str, Any]:
        return {"tool": self.tool, "findings": len(self.findings), "by_severity": self.counts(), "source": self.source}


def _int_attr(element: ET.Element, name: str) -> int | None:
    raw = element.get(name)
    if raw is None or not raw.strip():
        return None
    try:
        return int(float(raw))
    except ValueError:
        return None


def _float(raw: Any) -> float:
    try:
        return float(raw)
    except (TypeError, ValueError):
        return 0.0


def _parse_junit_suite(suite: ET.Element) -> TestReportSummary:
    cases: list[TestCaseRecord] = []
    skipped = 0
    errors = 0
    for case in suite.iter("testcase"):
        failure_el = case.find("failure")
        error_el = case.find("error")
        problem = failure_el if failure_el is not None else error_el
        if error_el is not None and failure_el is None:
            errors += 1
        if case.find("skipped") is not None:
            skipped += 1
        failure = None
        if problem is not None:
            failure = problem.get("message") or (problem.text or "").strip() or problem.tag
        output = case.findtext("system-out")
        cases.append(
            TestCaseRecord(
                classname=case.get("classname", ""),
                name=case.get("name", ""),
                duration=_float(case.get("time")),
                failure=failure,
                output=output.strip() if output else None,
            )
        )

    failed_cases = sum(1 for case in cases if case.failed) - errors
    tests = _int_attr(suite, "tests")
    failures = _int_attr(suite, "failures")
    declared_errors = _int_attr(suite, "errors")
    return TestReportSummary(
        suite=suite.get("name", "") or "suite",
        tests=tests if tests is not None else len(cases),
        failures=failures if failures is not None else failed_cases,
        errors=declared_errors if declared_errors is not None else errors,
        skipped=_int_attr(suite, "skipped") or skipped,
        cases=tuple(cases),
    )


def _parse_junit(path: str) -> TestReportSummary:
    try:
        root = ET.parse(path).getroot()
    except ET.ParseError as exc:
        raise ReportParseError(f"Invalid JUnit XML in {path}: {exc}") from exc

    if root.tag == "testsuite":
        suites = [root]
    elif root.tag == "testsuites":
        suites = list(root.iter("testsuite"))
    else:
        raise ReportParseError(f"Unrecognized test report root <{root.tag}> in {path}")

    if not suites:
        return TestReportSummary(suite=root.get("name", "") or "suite", tests=0, failures=0, source=path)

    summary = _parse_junit_suite(suites[0])
    for suite in suites[1:]:
        summary = summary.merge(_parse_junit_suite(suite))
    return TestReportSummary(
        suite=summary.suite,
        tests=summary.tests,
        failures=summary.failures,
        errors=summary.errors,
        skipped=summary.skipped,
        cases=summary.cases,
        source=path,
    )


def _parse_json_test_report(payload: Mapping[str, Any], path: str) -> TestReportSummary:
    raw_cases = payload.get("cases") or []
    if not isinstance(raw_cases, list):
        raise ReportParseError(f"Test report 'cases' must be a list in {path}")
    cases: list[TestCaseRecord] = []
    for item in raw_cases:
        if not isinstance(item, Mapping):
            raise ReportParseError(f"Test report case must be an object in {path}")
        failure = item.get("failure")
        cases.append(
            TestCaseRecord(
                classname=str(item.get("classname", "")),
                name=str(item.get("name", "")),
                duration=_float(item.get("time", item.get("duration"))),
                failure=None if failure in (None, "") else str(failure),
                output=None if item.get("output") is None else str(item.get("output")),
            )
        )

    def count(key: str, fallback: int) -> int:
        value = payload.get(key)
        if value is None:
            return fallback
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ReportParseError(f"Test report '{key}' must be a number in {path}")
        return int(value)

    return TestReportSummary(
        suite=str(payload.get("suite") or "suite"),
        tests=count("tests", len(cases)),
        failures=count("failures", sum(1 for case in cases if case.failed)),
        errors=count("errors", 0),
        skipped=count("skipped", 0),
        cases=tuple(cases),
        source=path,
    )


def _load_json(path: str) -> Any:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            return json.load(handle)
    except json.JSONDecodeError as exc:
        raise ReportParseError(f"Invalid JSON in {path}: {exc}") from exc


def ingest_test_report(path: str) -> TestReportSummary:
    if not os.path.isfile(path):
        raise ReportParseError(f"Test report not found: {path}")
    if path.lower().endswith(".json"):
        payload = _load_json(path)
        if not isinstance(payload, Mapping):
            raise ReportParseError(f"Test report must be a JSON object: {path}")
        return _parse_json_test_report(payload, path)
    return _parse_junit(path)


def _normalize_severity(raw: Any) -> str:
    value = str(raw or "medium").strip().lower()
    if value in SEVERITY_ORDER:
        return value
    if value in _SARIF_LEVELS:
        return _SARIF_LEVELS[value]
    if value in ("warn", "moderate"):
        return "medium"
    if value in ("error", "severe"):
        return "high"
    return "medium"


def _parse_sarif(payload: Mapping[str, Any], path: str) -> ScanReportSummary:
    runs = payload.get("runs") or []
    tools: list[str] = []
    findings: list[Finding] = []
    for run in runs:
        driver = ((run or {}).get("tool") or {}).get("driver") or {}
        tools.append(str(driver.get("name") or "sarif"))
        for result in run.get("results") or []:
            location = None
            locations = result.get("locations") or []
            if locations:
                physical = (locations[0] or {}).get("physicalLocation") or {}
                location = ((physical.get("artifactLocation") or {}).get("uri")) or None
            findings.append(
                Finding(
                    rule_id=str(result.get("ruleId") or "unknown"),
                    severity=_normalize_severity(result.get("level", "warning")),
                    message=((result.get("message") or {}).get("text")),
                    location=location,
                )
            )
    return ScanReportSummary(tool="+".join(tools) or "sarif", findings=tuple(findings), source=path)


def ingest_scan_report(path: str) -> ScanReportSummary:
    if not os.path.isfile(path):
        raise ReportParseError(f"Scan report not found: {path}")
    payload = _load_json(path)
    if not isinstance(payload, Mapping):
        raise ReportParseError(f"Scan report must be a JSON object: {path}")
    if "runs" in payload:
        return _parse_sarif(payload, path)

    tool = payload.get("tool")
    if not isinstance(tool, str) or not tool.strip():
        raise ReportParseError(f"Scan report requires a 'tool' identifier: {path}")
    raw_findings = payload.get("findings") or []
    if not isinstance(raw_findings, list):
        raise ReportParseError(f"Scan report 'findings' must be a list: {path}")

    findings: list[Finding] = []
    for idx, item in enumerate(raw_findings):
        if not isinstance(item, Mapping):
            raise ReportParseError(f"Scan finding {idx} must be an object: {path}")
        rule_id = item.get("rule_id") or item.get("ruleId") or item.get("id")
        if not rule_id:
            raise ReportParseError(f"Scan finding {idx} has no rule identifier: {path}")
        findings.append(
            Finding(
                rule_id=str(rule_id),
                severity=_normalize_severity(item.get("severity")),
                message=None if item.get("message") is None else str(item.get("message")),
                location=None if item.get("location") is None else str(item.get("location")),
            )
        )
    return ScanReportSummary(tool=tool.strip(), findings=tuple(findings), source=path)
