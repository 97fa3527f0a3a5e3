import json
import os
from pathlib import Path
from typing import Iterable, List

from .errors import ScanError, ScanParseError, TargetNotFoundError
from .models_scan import ScanRequest
from .models_vuln import Finding, Severity, normalize_severity
from .trivy_runner import run_trivy


def scan(request: ScanRequest) -> List[Finding]:
    """
    1 ターゲット分のスキャン。image / rootfs を Trivy で走査し、
    dockerfile 指定があれば config スキャン結果を後ろに連結する。
    どの失敗もこの呼び出しで終端し、リトライはしない。
    """
    if request.rootfs:
        return _scan_rootfs(request)

    findings = _scan_image(request)
    if request.dockerfile:
        try:
            findings.extend(_scan_dockerfile(request))
        except ScanError as exc:
            raise type(exc)(f"dockerfile scan: {exc}") from exc
    return findings


def _scan_image(request: ScanRequest) -> List[Finding]:
    stdout = run_trivy(
        "image",
        request.image,
        cache_dir=request.cache_dir,
        offline=request.offline,
        severities=request.severities,
        timeout=request.timeout,
    )
    return filter_by_severity(parse_trivy_json(stdout, "image"), request.severities)


def _scan_rootfs(request: ScanRequest) -> List[Finding]:
    path = Path(request.rootfs).absolute()
    if not path.exists():
        raise TargetNotFoundError(f"rootfs not found: {request.rootfs}")
    if not path.is_dir():
        raise TargetNotFoundError(f"rootfs path is not a directory: {request.rootfs}")

    stdout = run_trivy(
        "rootfs",
        str(path),
        cache_dir=request.cache_dir,
        offline=request.offline,
        severities=request.severities,
        timeout=request.timeout,
    )
    return filter_by_severity(parse_trivy_json(stdout, "rootfs"), request.severities)


def _scan_dockerfile(request: ScanRequest) -> List[Finding]:
    path = Path(request.dockerfile).absolute()
    if not path.exists():
        raise TargetNotFoundError(f"dockerfile not found: {request.dockerfile}")

    # trivy config はディレクトリを渡すと Dockerfile を自動検出する
    stdout = run_trivy(
        "config",
        str(path.parent),
        cache_dir=request.cache_dir,
        offline=request.offline,
        severities=request.severities,
        timeout=request.timeout,
    )
    return filter_by_severity(parse_trivy_config_json(stdout), request.severities)


def filter_by_severity(findings: Iterable[Finding], severities: Iterable[Severity]) -> List[Finding]:
    wanted = {normalize_severity(s) for s in severities}
    if not wanted:
        return list(findings)
    return [f for f in findings if f.severity in wanted]


def _load_report(raw: str, label: str) -> dict:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ScanParseError(f"parse trivy {label} json: {exc}") from exc
    if not isinstance(data, dict):
        raise ScanParseError(f"parse trivy {label} json: top-level value is not an object")
    return data


def parse_trivy_json(raw: str, label: str = "image") -> List[Finding]:
    data = _load_report(raw, label)

    findings: List[Finding] = []
    for result in _results(data, label):
        target = _text(result, "Target").strip()
        for entry in _entries(result, "Vulnerabilities", label):
            findings.append(_parse_vuln_entry(entry, target))
    return findings


def parse_trivy_config_json(raw: str) -> List[Finding]:
    data = _load_report(raw, "config")

    findings: List[Finding] = []
    for result in _results(data, "config"):
        target = os.path.basename(_text(result, "Target"))
        for entry in _entries(result, "Misconfigurations", "config"):
            findings.append(_parse_misconfig_entry(entry, target))
    return findings


def _results(data: dict, label: str) -> List[dict]:
    results = data.get("Results") or []
    if not isinstance(results, list):
        raise ScanParseError(f"parse trivy {label} json: Results is not a list")
    if not all(isinstance(r, dict) for r in results):
        raise ScanParseError(f"parse trivy {label} json: Results entry is not an object")
    return results


def _entries(result: dict, key: str, label: str) -> List[dict]:
    entries = result.get(key) or []
    if not isinstance(entries, list) or not all(isinstance(e, dict) for e in entries):
        raise ScanParseError(f"parse trivy {label} json: {key} is not a list of objects")
    return entries


def _text(entry: dict, key: str) -> str:
    # 文字列以外（数値・null など）は空文字扱い
    value = entry.get(key)
    return value if isinstance(value, str) else ""


def _parse_vuln_entry(entry: dict, target: str) -> Finding:
    return Finding(
        identifier=_text(entry, "VulnerabilityID"),
        package=_text(entry, "PkgName"),
        installed_version=_text(entry, "InstalledVersion"),
        fixed_version=_text(entry, "FixedVersion") or None,
        severity=normalize_severity(entry.get("Severity")),
        title=_text(entry, "Title"),
        description=_text(entry, "Description"),
        location=_text(entry, "PkgPath") or target,
        remediation_links=_collect_links(entry),
    )


def _parse_misconfig_entry(entry: dict, target: str) -> Finding:
    # misconfiguration は Package / Location ともに対象ファイル名
    return Finding(
        identifier=_text(entry, "ID"),
        package=target,
        severity=normalize_severity(entry.get("Severity")),
        title=_text(entry, "Title"),
        description=_text(entry, "Description"),
        location=target,
        remediation_text=_text(entry, "Resolution"),
        remediation_links=_collect_links(entry),
    )


def _collect_links(entry: dict) -> List[str]:
    links: List[str] = []
    primary = _text(entry, "PrimaryURL")
    if primary:
        links.append(primary)
    references = entry.get("References")
    if isinstance(references, list):
        links.extend(r for r in references if isinstance(r, str) and r)
    return links
