import json

import pytest

from vulvul_container_scanner import enrich as enrich_mod
from vulvul_container_scanner.enrich import SEVERITY_RATIONALE, enrich
from vulvul_container_scanner.errors import ExploitFeedError
from vulvul_container_scanner.kev import ExploitCache
from vulvul_container_scanner.models_vuln import Exploitability, Finding, Severity

FEED = {
    "vulnerabilities": [
        {
            "cveID": "CVE-2021-44228",
            "vulnerabilityName": "Log4Shell",
            "shortDescription": "Log4j2 JNDI lookup allows RCE.",
            "knownRansomwareCampaignUse": "Known",
        },
        {"cveID": "CVE-2023-0001", "shortDescription": "", "vulnerabilityName": "", "knownRansomwareCampaignUse": "Unknown"},
    ]
}


@pytest.fixture
def cache():
    c = ExploitCache(fetch=lambda url: json.dumps(FEED).encode("utf-8"))
    c.ensure_fresh()
    return c


def test_remediation_text_with_fixed_version(cache):
    f = Finding(identifier="CVE-2024-1", package="openssl", installed_version="3.0.1", fixed_version="3.0.13")
    (out,) = enrich([f], cache)
    assert out.remediation_text == "Upgrade openssl from 3.0.1 to 3.0.13"


def test_remediation_text_without_fixed_version(cache):
    f = Finding(identifier="CVE-2024-1", package="zlib", installed_version="1.2.11")
    (out,) = enrich([f], cache)
    assert out.remediation_text == "Upgrade or patch zlib (currently 1.2.11); no fixed version in catalog"


def test_existing_remediation_text_is_kept(cache):
    f = Finding(identifier="DS002", package="Dockerfile", remediation_text="Add a USER line")
    (out,) = enrich([f], cache)
    assert out.remediation_text == "Add a USER line"


def test_links_added_only_when_empty(cache):
    cve = Finding(identifier="CVE-2024-1234", package="p")
    misconfig = Finding(identifier="DS002", package="Dockerfile")
    with_links = Finding(identifier="CVE-2024-9", remediation_links=["https://example.com"])
    blank = Finding(identifier="", package="p")

    out = enrich([cve, misconfig, with_links, blank], cache)

    assert out[0].remediation_links == [
        "https://nvd.nist.gov/vuln/detail/CVE-2024-1234",
        "https://avd.aquasec.com/nvd/cve-2024-1234",
    ]
    assert out[1].remediation_links == ["https://avd.aquasec.com/misconfig/ds002"]
    assert out[2].remediation_links == ["https://example.com"]
    assert out[3].remediation_links == []


@pytest.mark.parametrize("severity", list(Severity))
def test_known_exploited_escalates_to_critical(cache, severity):
    f = Finding(identifier="cve-2021-44228", package="log4j-core", severity=severity)
    (out,) = enrich([f], cache)

    assert out.severity is Severity.CRITICAL
    assert out.exploitable is Exploitability.YES
    assert out.severity_rationale == SEVERITY_RATIONALE[Severity.CRITICAL]
    if severity is Severity.CRITICAL:
        assert out.original_severity is None
    else:
        assert out.original_severity is severity


def test_known_exploited_rationale_uses_cached_detail(cache):
    (out,) = enrich([Finding(identifier="CVE-2021-44228")], cache)
    assert out.exploit_info == "Log4j2 JNDI lookup allows RCE. (Log4Shell) Known ransomware campaign use."


def test_known_exploited_without_description_uses_generic_message(cache):
    (out,) = enrich([Finding(identifier="CVE-2023-0001", severity="LOW")], cache)
    assert out.exploit_info == enrich_mod.KEV_HIT_INFO


def test_not_in_catalog(cache):
    (out,) = enrich([Finding(identifier="CVE-2020-0001", severity="MEDIUM")], cache)
    assert out.exploitable is Exploitability.NO
    assert out.exploit_info == enrich_mod.KEV_MISS_INFO
    assert out.severity is Severity.MEDIUM
    assert out.severity_rationale == SEVERITY_RATIONALE[Severity.MEDIUM]


def test_non_cve_is_unknown(cache):
    (out,) = enrich([Finding(identifier="DS002", severity="HIGH")], cache)
    assert out.exploitable is Exploitability.UNKNOWN
    assert out.exploit_info == enrich_mod.NON_CVE_INFO


def test_offline_skips_refresh():
    calls = []

    def fetch(url):
        calls.append(url)
        return json.dumps(FEED).encode("utf-8")

    cache = ExploitCache(fetch=fetch)
    (out,) = enrich([Finding(identifier="CVE-2021-44228", severity="LOW")], cache, offline=True)

    assert calls == []
    assert out.exploitable is Exploitability.UNKNOWN
    assert out.exploit_info == enrich_mod.OFFLINE_INFO
    assert out.severity is Severity.LOW


def test_feed_failure_is_not_fatal(capsys):
    def fetch(url):
        raise ExploitFeedError("HTTP 503")

    cache = ExploitCache(fetch=fetch)
    (out,) = enrich([Finding(identifier="CVE-2021-44228", severity="LOW")], cache)

    assert out.exploitable is Exploitability.UNKNOWN
    assert out.exploit_info == enrich_mod.FEED_UNAVAILABLE_INFO
    assert "WARN: exploit feed unavailable" in capsys.readouterr().err


def test_enrich_preserves_order_length_and_input(cache):
    findings = [
        Finding(identifier=f"CVE-2024-{i}", package="p", installed_version="1", severity="LOW")
        for i in range(5)
    ] + [Finding(identifier="CVE-2021-44228", severity="LOW")]

    out = enrich(findings, cache)

    assert [f.identifier for f in out] == [f.identifier for f in findings]
    # 入力は書き換えない
    assert findings[-1].severity is Severity.LOW
    assert findings[-1].exploitable is None
    assert findings[0].remediation_links == []
    assert out[-1].severity is Severity.CRITICAL


def test_duplicates_across_targets_are_kept(cache):
    f = Finding(identifier="CVE-2024-1", package="p")
    assert len(enrich([f, f], cache)) == 2


def test_mistyped_feed_entry_is_not_fatal():
    feed = {"vulnerabilities": [{"cveID": "CVE-2021-44228", "knownRansomwareCampaignUse": 1}]}
    cache = ExploitCache(fetch=lambda url: json.dumps(feed).encode("utf-8"))

    (out,) = enrich([Finding(identifier="CVE-2021-44228", severity="LOW")], cache)

    assert out.exploitable is Exploitability.YES
    assert out.severity is Severity.CRITICAL
    assert out.exploit_info == enrich_mod.KEV_HIT_INFO


def test_unparseable_feed_is_not_fatal(capsys):
    cache = ExploitCache(fetch=lambda url: b"<html>maintenance</html>")

    (out,) = enrich([Finding(identifier="CVE-2021-44228", severity="LOW")], cache)

    assert out.exploitable is Exploitability.UNKNOWN
    assert out.exploit_info == enrich_mod.FEED_UNAVAILABLE_INFO
    assert "WARN: exploit feed unavailable" in capsys.readouterr().err
