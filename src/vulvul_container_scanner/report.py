from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from jinja2 import Environment, FileSystemLoader, select_autoescape

from .errors import ReportError
from .infra import dump_json, dump_quoted_csv, dump_text, log_warn
from .models_scan import ImageFinding, ScanOutcome
from .models_vuln import ALL_SEVERITIES, Exploitability, Finding, normalize_severity

TOOL_NAME = "vulvul-container-scanner"
TOOL_VERSION = "0.1.0"
SARIF_SCHEMA = "https://raw.githubusercontent.com/oasis-tcs/sarif-spec/master/Schemata/sarif-schema-2.1.0.json"

CSV_HEADER = [
    "CVE",
    "Title",
    "Description",
    "Package",
    "CurrentVersion",
    "FixedVersion",
    "Severity",
    "Exploitable",
    "WhySeverity",
    "ExploitInfo",
    "Path/Location",
    "Remediation",
    "RemediationLinks",
]

SEVERITY_NOTE = (
    "Findings include severities: CRITICAL, HIGH, MEDIUM, LOW, UNKNOWN (default: all). "
    "Count depends on Trivy DB and image."
)

_SARIF_LEVELS = {
    "CRITICAL": "error",
    "HIGH": "error",
    "MEDIUM": "warning",
    "LOW": "note",
    "UNKNOWN": "note",
}

_env = Environment(
    loader=FileSystemLoader(Path(__file__).resolve().parent / "templates"),
    autoescape=select_autoescape(["html"]),
    trim_blocks=True,
    lstrip_blocks=True,
)
# ダッシュボードの severity 順（CRITICAL → UNKNOWN）を保つ
_env.policies["json.dumps_kwargs"] = {"sort_keys": False}


@dataclass
class ReportOptions:
    formats: Sequence[str] = field(default_factory=lambda: ["sarif", "markdown"])
    output_dir: Path = Path("reports")
    base_name: str = "report"


def generate(findings: Sequence[Finding], options: ReportOptions) -> List[Path]:
    """
    要求された形式ごとに <base>.<ext> を書き出す。
    途中で失敗しても書き出し済みのファイルは残す。
    """
    output_dir = Path(options.output_dir)
    base = options.base_name or "report"
    try:
        output_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ReportError(f"create output dir {output_dir}: {exc}") from exc

    written: List[Path] = []
    for fmt in options.formats:
        key = fmt.strip().lower()
        if key == "sarif":
            path, writer = output_dir / f"{base}.sarif", write_sarif
        elif key in ("markdown", "md"):
            path, writer = output_dir / f"{base}.md", write_markdown
        elif key == "html":
            path, writer = output_dir / f"{base}.html", write_html
        elif key == "csv":
            path, writer = output_dir / f"{base}.csv", write_csv
        else:
            log_warn(f"unknown report format skipped: {fmt}")
            continue

        try:
            writer(findings, path)
        except OSError as exc:
            raise ReportError(f"write {path}: {exc}") from exc
        written.append(path)
    return written


def sarif_level(severity: object) -> str:
    key = str(severity or "").strip().upper()
    return _SARIF_LEVELS.get(key, "warning")


def rule_id(finding: Finding) -> str:
    if finding.identifier.strip():
        return finding.identifier
    return f"vuln-{finding.package}-{finding.installed_version}"


def build_sarif(findings: Iterable[Finding]) -> dict:
    rules: List[dict] = []
    seen: set[str] = set()
    results: List[dict] = []

    for f in findings:
        rid = rule_id(f)
        if rid not in seen:
            seen.add(rid)
            help_text = f.remediation_text
            if f.remediation_links:
                help_text += "\n\n" + "\n".join(f.remediation_links)
            rules.append(
                {
                    "id": rid,
                    "name": f.title,
                    "shortDescription": {"text": f.title},
                    "help": {"text": help_text},
                }
            )

        message = f"{f.identifier} in {f.package} {f.installed_version}: {f.title}"
        if f.remediation_text:
            message += f". {f.remediation_text}"
        result = {
            "ruleId": rid,
            "level": sarif_level(f.severity),
            "message": {"text": message},
        }
        if f.location:
            result["locations"] = [
                {"physicalLocation": {"artifactLocation": {"uri": f.location}}}
            ]
        results.append(result)

    return {
        "$schema": SARIF_SCHEMA,
        "version": "2.1.0",
        "runs": [
            {
                "tool": {
                    "driver": {
                        "name": TOOL_NAME,
                        "version": TOOL_VERSION,
                        "rules": rules,
                    }
                },
                "results": results,
            }
        ],
    }


def write_sarif(findings: Sequence[Finding], out_path: Path) -> None:
    dump_json(build_sarif(findings), out_path)


def _or_dash(value: object) -> str:
    text = str(value) if value is not None else ""
    return text or "-"


def _md_cell(value: object) -> str:
    return _or_dash(value).replace("|", "\\|").replace("\r", " ").replace("\n", " ")


def _truncate(text: str, limit: int) -> str:
    if len(text) > limit:
        return text[: limit - 3] + "..."
    return text


def _remediation_summary(f: Finding) -> str:
    rem = f.remediation_text
    if f.remediation_links:
        rem += " " + f.remediation_links[0]
    return rem


def render_markdown(findings: Sequence[Finding]) -> str:
    lines = [
        "# Container scan report",
        "",
        SEVERITY_NOTE,
        "",
        "| CVE | Package | Severity | Exploitable | Why severity | Exploit info | Path / location | Remediation |",
        "|-----|---------|----------|-------------|--------------|--------------|-----------------|-------------|",
    ]
    for f in findings:
        cells = [
            f.identifier,
            f"{f.package} {f.installed_version}".strip(),
            f.severity,
            f.exploitable,
            f.severity_rationale,
            f.exploit_info,
            f.location,
            _remediation_summary(f),
        ]
        lines.append("| " + " | ".join(_md_cell(c) for c in cells) + " |")

    lines += ["", "## Remediation details", ""]
    for f in findings:
        lines.append(f"### {f.identifier} - {f.package}")
        lines.append("")
        lines.append(f"- **Severity:** {f.severity}")
        if f.original_severity and f.original_severity is not f.severity:
            lines.append(f"- **Reported severity:** {f.original_severity}")
        if f.exploitable:
            lines.append(f"- **Exploitable:** {f.exploitable}")
        if f.severity_rationale:
            lines.append(f"- **Why severity:** {f.severity_rationale}")
        if f.exploit_info:
            lines.append(f"- **Exploit info:** {f.exploit_info}")
        if f.location:
            lines.append(f"- **Path / location:** {f.location}")
        lines.append(f"- **Installed:** {f.installed_version}")
        if f.fixed_version:
            lines.append(f"- **Fixed in:** {f.fixed_version}")
        lines.append(f"- **Remediation:** {f.remediation_text}")
        lines.extend(f"- {link}" for link in f.remediation_links)
        lines.append("")
    return "\n".join(lines) + "\n"


def write_markdown(findings: Sequence[Finding], out_path: Path) -> None:
    dump_text(render_markdown(findings), out_path)


def render_html(findings: Sequence[Finding]) -> str:
    template = _env.get_template("report.html")
    return template.render(findings=findings, note=SEVERITY_NOTE, or_dash=_or_dash)


def write_html(findings: Sequence[Finding], out_path: Path) -> None:
    dump_text(render_html(findings), out_path)


def _csv_row(f: Finding) -> List[str]:
    return [
        f.identifier,
        f.title,
        f.description,
        f.package,
        f.installed_version,
        f.fixed_version or "",
        str(f.severity),
        str(f.exploitable or ""),
        f.severity_rationale,
        f.exploit_info,
        f.location,
        f.remediation_text,
        " ".join(f.remediation_links),
    ]


def write_csv(findings: Sequence[Finding], out_path: Path) -> None:
    dump_quoted_csv(CSV_HEADER, (_csv_row(f) for f in findings), out_path)


def write_findings_csv_with_image(entries: Sequence[ImageFinding], out_path: Path) -> None:
    dump_quoted_csv(
        ["Image", *CSV_HEADER],
        ([e.target, *_csv_row(e.finding)] for e in entries),
        out_path,
    )


def write_findings_markdown_with_image(
    entries: Sequence[ImageFinding],
    out_path: Path,
    report_time: str,
) -> None:
    lines = [
        f"# Baseline findings - {report_time}",
        "",
        "One row per finding across all scanned images. Columns: Image, CVE, Title, Package, "
        "Severity, Exploitable, Why severity, Exploit info, Remediation.",
        "",
        "| Image | CVE | Title | Package | Severity | Exploitable | Why severity | Exploit info | Remediation |",
        "|-------|-----|-------|---------|----------|-------------|--------------|--------------|-------------|",
    ]
    for e in entries:
        f = e.finding
        cells = [
            e.target,
            f.identifier,
            _truncate(_or_dash(f.title), 50),
            f"{f.package} {f.installed_version}".strip(),
            f.severity,
            f.exploitable,
            f.severity_rationale,
            _truncate(_or_dash(f.exploit_info), 80),
            _truncate(_remediation_summary(f), 60),
        ]
        lines.append("| " + " | ".join(_md_cell(c) for c in cells) + " |")
    dump_text("\n".join(lines) + "\n", out_path)


def build_dashboard_data(
    outcomes: Sequence[ScanOutcome],
    entries: Sequence[ImageFinding],
    report_time: str,
) -> dict:
    severity = {str(s): 0 for s in ALL_SEVERITIES}
    exploitable = {str(e): 0 for e in Exploitability}
    for e in entries:
        severity[str(normalize_severity(e.finding.severity))] += 1
        key = str(e.finding.exploitable or Exploitability.UNKNOWN)
        exploitable[key if key in exploitable else str(Exploitability.UNKNOWN)] += 1

    return {
        "images": [
            {
                "image": o.target,
                "findings": o.findings,
                "duration_sec": round(o.duration, 3),
                "status": str(o.status),
            }
            for o in outcomes
        ],
        "severity": severity,
        "exploitable": exploitable,
        "reportTime": report_time,
    }


def write_dashboard_html(
    outcomes: Sequence[ScanOutcome],
    entries: Sequence[ImageFinding],
    out_path: Path,
    report_time: str,
    chart_js_url: Optional[str] = None,
) -> None:
    data = build_dashboard_data(outcomes, entries, report_time)
    template = _env.get_template("dashboard.html")
    html = template.render(
        data=data,
        report_time=report_time,
        chart_js_url=chart_js_url or "https://cdn.jsdelivr.net/npm/chart.js@4.4.0/dist/chart.umd.min.js",
    )
    dump_text(html, out_path)
