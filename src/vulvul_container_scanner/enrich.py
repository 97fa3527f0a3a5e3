from dataclasses import replace
from typing import Iterable, List, Optional

from .errors import ExploitFeedError
from .infra import log_warn
from .kev import ExploitCache
from .models_vuln import Exploitability, Finding, Severity, is_cve_id

NVD_URL = "https://nvd.nist.gov/vuln/detail/{id}"
AVD_NVD_URL = "https://avd.aquasec.com/nvd/{id}"
AVD_MISCONFIG_URL = "https://avd.aquasec.com/misconfig/{id}"

OFFLINE_INFO = "Offline mode; check NVD and vendor advisories for exploit status."
FEED_UNAVAILABLE_INFO = "CISA KEV catalog could not be loaded; exploit status unknown."
KEV_HIT_INFO = (
    "Listed in CISA Known Exploited Vulnerabilities catalog; "
    "active exploitation observed. Prioritize remediation."
)
KEV_MISS_INFO = "Not in CISA KEV; check NVD and vendor advisories for exploit availability."
NON_CVE_INFO = "Non-CVE finding; see vendor/misconfig docs for impact."
RANSOMWARE_NOTE = " Known ransomware campaign use."

SEVERITY_RATIONALE = {
    Severity.CRITICAL: "Critical: often RCE, auth bypass, or severe impact; check NVD/CVSS for details.",
    Severity.HIGH: "High: significant impact; may allow privilege escalation or data exposure.",
    Severity.MEDIUM: "Medium: moderate impact; may require specific conditions to exploit.",
    Severity.LOW: "Low: limited impact or difficult to exploit.",
    Severity.UNKNOWN: "Severity from scanner; verify with NVD.",
}


def severity_rationale(severity: Severity) -> str:
    return SEVERITY_RATIONALE.get(severity, SEVERITY_RATIONALE[Severity.UNKNOWN])


def enrich(
    findings: Iterable[Finding],
    cache: Optional[ExploitCache],
    offline: bool = False,
) -> List[Finding]:
    """
    remediation / exploit 情報 / severity 理由を付与したコピーを返す。
    入力は変更しない。件数・順序は入力と同じ。
    KEV の取得失敗は致命的にしない（exploitable=unknown 扱い）。
    """
    feed_available = False
    if not offline and cache is not None:
        try:
            cache.ensure_fresh()
        except ExploitFeedError as exc:
            log_warn(f"exploit feed unavailable: {exc}")
        feed_available = cache.has_data()

    return [_enrich_one(f, cache, offline, feed_available) for f in findings]


def _enrich_one(
    finding: Finding,
    cache: Optional[ExploitCache],
    offline: bool,
    feed_available: bool,
) -> Finding:
    out = replace(finding, remediation_links=list(finding.remediation_links))

    if not out.remediation_text:
        out.remediation_text = _remediation_text(out)

    if not out.remediation_links and out.identifier.strip():
        out.remediation_links = _default_links(out.identifier.strip())

    if is_cve_id(out.identifier):
        if offline:
            out.exploitable = Exploitability.UNKNOWN
            out.exploit_info = OFFLINE_INFO
        elif not feed_available:
            out.exploitable = Exploitability.UNKNOWN
            out.exploit_info = FEED_UNAVAILABLE_INFO
        elif cache.is_known_exploited(out.identifier):
            out.exploitable = Exploitability.YES
            out.exploit_info = _exploit_info(cache, out.identifier)
            if out.severity is not Severity.CRITICAL:
                # 昇格前の値は監査用に残す
                out.original_severity = out.original_severity or out.severity
                out.severity = Severity.CRITICAL
        else:
            out.exploitable = Exploitability.NO
            out.exploit_info = KEV_MISS_INFO
    else:
        out.exploitable = Exploitability.UNKNOWN
        out.exploit_info = NON_CVE_INFO

    out.severity_rationale = severity_rationale(out.severity)
    return out


def _remediation_text(finding: Finding) -> str:
    if finding.fixed_version:
        return (
            f"Upgrade {finding.package} from {finding.installed_version} "
            f"to {finding.fixed_version}"
        )
    if finding.package or finding.installed_version:
        return (
            f"Upgrade or patch {finding.package} (currently {finding.installed_version}); "
            "no fixed version in catalog"
        )
    return ""


def _default_links(identifier: str) -> List[str]:
    if is_cve_id(identifier):
        return [
            NVD_URL.format(id=identifier),
            AVD_NVD_URL.format(id=identifier.lower()),
        ]
    return [AVD_MISCONFIG_URL.format(id=identifier.lower())]


def _exploit_info(cache: ExploitCache, identifier: str) -> str:
    detail = cache.get_detail(identifier)
    if detail is None:
        return KEV_HIT_INFO

    info = detail.short_description or KEV_HIT_INFO
    if detail.name:
        info += f" ({detail.name})"
    if detail.ransomware:
        info += RANSOMWARE_NOTE
    return info
