import os
import subprocess
from pathlib import Path
from typing import Iterable, Optional

from .errors import ScanInvocationError, ScanTimeoutError
from .models_vuln import Severity

TRIVY_BIN = "trivy"

# config モードは DB ではなく policy bundle を更新する
_SKIP_UPDATE_FLAGS = {
    "image": "--skip-db-update",
    "rootfs": "--skip-db-update",
    "config": "--skip-policy-update",
}


def build_trivy_command(
    mode: str,
    target: str,
    cache_dir: Optional[Path] = None,
    offline: bool = False,
    severities: Iterable[Severity] = (),
) -> list[str]:
    if mode not in _SKIP_UPDATE_FLAGS:
        raise ValueError(f"unsupported trivy mode: {mode}")

    cmd = [TRIVY_BIN, mode, "--format", "json"]
    if cache_dir:
        cmd.extend(["--cache-dir", str(cache_dir)])
    if offline:
        cmd.append(_SKIP_UPDATE_FLAGS[mode])
    severities = [str(s) for s in severities]
    if severities:
        cmd.extend(["--severity", ",".join(severities)])
    cmd.append(target)
    return cmd


def run_trivy(
    mode: str,
    target: str,
    cache_dir: Optional[Path] = None,
    offline: bool = False,
    severities: Iterable[Severity] = (),
    timeout: Optional[float] = None,
) -> str:
    """
    Trivy を 1 回実行し、JSON の stdout を返す。
    タイムアウト時は subprocess.run が子プロセスを kill する。
    """
    cmd = build_trivy_command(mode, target, cache_dir, offline, severities)
    try:
        proc = subprocess.run(
            cmd,
            check=True,
            capture_output=True,
            text=True,
            env=_trivy_env(),
            timeout=timeout,
        )
    except subprocess.CalledProcessError as exc:
        raise ScanInvocationError(
            f"trivy {mode}: exit status {exc.returncode}", _as_text(exc.stderr)
        ) from exc
    except subprocess.TimeoutExpired as exc:
        raise ScanTimeoutError(
            f"trivy {mode}: timed out after {timeout}s", _as_text(exc.stderr)
        ) from exc
    except FileNotFoundError as exc:
        raise ScanInvocationError(f"trivy {mode}: executable not found: {exc}") from exc
    return proc.stdout


def _as_text(value: object) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value if isinstance(value, str) else ""


def _trivy_env() -> dict[str, str]:
    env = dict(**os.environ)
    env.setdefault("TRIVY_NON_INTERACTIVE", "true")
    return env
