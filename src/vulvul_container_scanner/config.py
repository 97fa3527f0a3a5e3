import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Mapping, Optional

from .infra import log_warn
from .models_scan import DEFAULT_SCAN_TIMEOUT

CONFIG_FILE_NAMES = ("scanner.yaml", ".scanner.yaml")


@dataclass
class FileConfig:
    """
    scanner.yaml の既定値。空文字は「CLI の既定値を使う」の意味。
    秘密情報は置かない（パスとオプションのみ）。
    """

    severity: str = ""
    format: str = ""
    output_dir: str = ""
    output_name: str = ""
    cache_dir: str = ""
    fail_on_severity: str = ""
    fail_on_count: str = ""


_FILE_KEYS = {f.name.replace("_", "-"): f.name for f in fields(FileConfig)}


def find_config(directory: Path) -> Optional[Path]:
    for name in CONFIG_FILE_NAMES:
        candidate = directory / name
        if candidate.is_file():
            return candidate
    return None


def load_config(path: Optional[Path]) -> Optional[FileConfig]:
    """Missing file returns None; unreadable file raises OSError."""
    if path is None:
        return None
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    return parse_config(text)


def parse_config(text: str) -> FileConfig:
    # フラットな key: value のみ対応（YAML 依存を増やさない）
    config = FileConfig()
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition(":")
        key = key.strip()
        if not sep or not key:
            continue
        attr = _FILE_KEYS.get(key)
        if attr is None:
            log_warn(f"unknown config key ignored: {key}")
            continue
        setattr(config, attr, value.strip().strip("\"'"))
    return config


@dataclass
class BatchConfig:
    images_path: Path = Path("tests/baseline/images.txt")
    hardened_path: Optional[Path] = None
    hardened_limit: int = 5
    shuffle: bool = False
    limit: int = 0
    workers: int = 5
    output_dir: Path = Path("test-results")
    delay: float = 0.0
    pull_first: bool = False
    offline: bool = False
    timeout: Optional[float] = DEFAULT_SCAN_TIMEOUT

    def __post_init__(self) -> None:
        self.workers = max(1, int(self.workers))
        self.hardened_limit = max(0, int(self.hardened_limit))
        self.delay = max(0.0, float(self.delay))

    @staticmethod
    def from_env(environ: Optional[Mapping[str, str]] = None) -> "BatchConfig":
        env = os.environ if environ is None else environ
        config = BatchConfig()

        if env.get("BASELINE_IMAGES"):
            config.images_path = Path(env["BASELINE_IMAGES"])
        if env.get("BASELINE_IMAGES_HARDENED"):
            config.hardened_path = Path(env["BASELINE_IMAGES_HARDENED"])
        if env.get("BASELINE_OUT"):
            config.output_dir = Path(env["BASELINE_OUT"])

        config.shuffle = bool(env.get("BASELINE_RANDOM"))
        config.pull_first = bool(env.get("BASELINE_PULL_FIRST"))

        # 不正な値は既定値のまま
        workers = _env_int(env, "BASELINE_WORKERS", minimum=1)
        if workers is not None:
            config.workers = workers
        limit = _env_int(env, "BASELINE_LIMIT", minimum=1)
        if limit is not None:
            config.limit = limit
        hardened_limit = _env_int(env, "BASELINE_HARDENED_LIMIT", minimum=0)
        if hardened_limit is not None:
            config.hardened_limit = hardened_limit
        delay = _env_int(env, "BASELINE_DELAY_SEC", minimum=0)
        if delay is not None:
            config.delay = float(delay)
        return config


def _env_int(env: Mapping[str, str], name: str, minimum: int) -> Optional[int]:
    raw = (env.get(name) or "").strip()
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError:
        log_warn(f"{name}={raw!r} is not an integer; using default")
        return None
    if value < minimum:
        log_warn(f"{name}={raw!r} is below {minimum}; using default")
        return None
    return value
