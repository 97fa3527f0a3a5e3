from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple, Union

from .models_vuln import Finding, Severity, normalize_severity

DEFAULT_SCAN_TIMEOUT = 1800.0


class ScanStatus(str, Enum):
    OK = "OK"
    FAIL = "FAIL"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ScanRequest:
    image: Optional[str] = None
    rootfs: Optional[Path] = None
    # image と併用する場合のみ
    dockerfile: Optional[Path] = None

    # 空なら全 severity
    severities: Tuple[Severity, ...] = ()
    offline: bool = False
    cache_dir: Optional[Path] = None
    timeout: Optional[float] = DEFAULT_SCAN_TIMEOUT

    def __post_init__(self) -> None:
        if bool(self.image) == bool(self.rootfs):
            raise ValueError("exactly one of image or rootfs must be set")
        if self.dockerfile and not self.image:
            raise ValueError("dockerfile can only be combined with an image target")
        object.__setattr__(
            self,
            "severities",
            tuple(dict.fromkeys(normalize_severity(s) for s in self.severities)),
        )

    @property
    def target(self) -> str:
        return self.image or str(self.rootfs)


@dataclass(frozen=True)
class ScanOutcome:
    target: str
    findings: int = 0
    duration: float = 0.0
    status: ScanStatus = ScanStatus.OK
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is ScanStatus.OK


@dataclass(frozen=True)
class ImageFinding:
    target: str
    finding: Finding


@dataclass(frozen=True)
class ExploitCacheEntry:
    short_description: str = ""
    name: str = ""
    ransomware: bool = False


@dataclass(frozen=True)
class SeverityPresenceRule:
    severity: Severity


@dataclass(frozen=True)
class ThresholdRule:
    severity: Severity
    minimum: int


PolicyRule = Union[SeverityPresenceRule, ThresholdRule]


@dataclass
class BatchResult:
    outcomes: List[ScanOutcome] = field(default_factory=list)
    findings: List[ImageFinding] = field(default_factory=list)

    @property
    def ok_count(self) -> int:
        return sum(1 for o in self.outcomes if o.ok)

    @property
    def fail_count(self) -> int:
        return len(self.outcomes) - self.ok_count
