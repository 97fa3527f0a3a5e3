from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class Severity(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    UNKNOWN = "UNKNOWN"

    def __str__(self) -> str:
        return self.value


ALL_SEVERITIES = (
    Severity.CRITICAL,
    Severity.HIGH,
    Severity.MEDIUM,
    Severity.LOW,
    Severity.UNKNOWN,
)


class Exploitability(str, Enum):
    YES = "yes"
    NO = "no"
    UNKNOWN = "unknown"

    def __str__(self) -> str:
        return self.value


def normalize_severity(value: object) -> Severity:
    """
    Trivy の severity 表記ゆれ（大小文字・前後空白・空文字）を吸収する。
    未知の値は UNKNOWN に寄せる。
    """
    if isinstance(value, Severity):
        return value
    text = str(value or "").strip().upper()
    try:
        return Severity(text)
    except ValueError:
        return Severity.UNKNOWN


def parse_severity(value: str) -> Severity:
    """Strict variant for user input; raises ValueError on unknown names."""
    text = (value or "").strip().upper()
    try:
        return Severity(text)
    except ValueError:
        raise ValueError(f"unknown severity: {value!r}") from None


def is_cve_id(identifier: str | None) -> bool:
    return (identifier or "").strip().upper().startswith("CVE-")


@dataclass
class Finding:
    # CVE ID、もしくは misconfiguration のチェック ID（例: DS002）
    identifier: str

    package: str = ""
    installed_version: str = ""
    fixed_version: Optional[str] = None

    severity: Severity = Severity.UNKNOWN
    title: str = ""
    description: str = ""

    # PkgPath / Result.Target
    location: str = ""

    remediation_text: str = ""
    remediation_links: List[str] = field(default_factory=list)

    # enrich で埋める
    exploitable: Optional[Exploitability] = None
    exploit_info: str = ""
    severity_rationale: str = ""

    # KEV による昇格前の値（監査用）
    original_severity: Optional[Severity] = None

    def __post_init__(self) -> None:
        self.severity = normalize_severity(self.severity)
        if self.original_severity is not None:
            self.original_severity = normalize_severity(self.original_severity)
