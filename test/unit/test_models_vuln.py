from pathlib import Path

import pytest

from vulvul_container_scanner.models_scan import ScanOutcome, ScanRequest, ScanStatus
from vulvul_container_scanner.models_vuln import (
    Finding,
    Severity,
    is_cve_id,
    normalize_severity,
    parse_severity,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("HIGH", Severity.HIGH),
        (" critical ", Severity.CRITICAL),
        ("Medium", Severity.MEDIUM),
        ("", Severity.UNKNOWN),
        (None, Severity.UNKNOWN),
        ("NEGLIGIBLE", Severity.UNKNOWN),
    ],
)
def test_normalize_severity(raw, expected):
    assert normalize_severity(raw) is expected


def test_parse_severity_is_strict():
    assert parse_severity(" low ") is Severity.LOW
    with pytest.raises(ValueError):
        parse_severity("bogus")


def test_finding_normalizes_severity_on_construction():
    f = Finding(identifier="CVE-2024-1", severity="high")
    assert f.severity is Severity.HIGH
    assert str(f.severity) == "HIGH"
    assert f.remediation_links == []
    assert f.exploitable is None


def test_is_cve_id():
    assert is_cve_id("CVE-2021-44228")
    assert is_cve_id(" cve-2021-44228")
    assert not is_cve_id("DS002")
    assert not is_cve_id("")
    assert not is_cve_id(None)


def test_scan_request_requires_exactly_one_target():
    with pytest.raises(ValueError):
        ScanRequest()
    with pytest.raises(ValueError):
        ScanRequest(image="alpine:3.19", rootfs=Path("/tmp/rootfs"))
    with pytest.raises(ValueError):
        ScanRequest(rootfs=Path("/tmp/rootfs"), dockerfile=Path("Dockerfile"))

    req = ScanRequest(image="alpine:3.19", severities=("high", "HIGH", "critical"))
    assert req.target == "alpine:3.19"
    assert req.severities == (Severity.HIGH, Severity.CRITICAL)


def test_scan_outcome_is_immutable():
    outcome = ScanOutcome(target="alpine", findings=3, duration=1.5)
    assert outcome.ok
    assert outcome.status is ScanStatus.OK
    with pytest.raises(AttributeError):
        outcome.findings = 4
