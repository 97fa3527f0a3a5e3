import queue
import random
import subprocess
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from .config import BatchConfig
from .enrich import enrich
from .errors import ScanError, ScanInvocationError, ScanTimeoutError
from .get_vuls import scan
from .infra import dump_csv, dump_text, log_error, log_info, log_warn
from .kev import ExploitCache
from .models_scan import BatchResult, ImageFinding, ScanOutcome, ScanRequest, ScanStatus
from .models_vuln import ALL_SEVERITIES
from .report import (
    write_dashboard_html,
    write_findings_csv_with_image,
    write_findings_markdown_with_image,
)

CACHE_DIR_NAME = "trivy-cache-baseline"
SUMMARY_FIELDS = ["Image", "Findings", "Duration_sec", "Status", "Error"]


def load_targets(path: Path) -> List[str]:
    targets: List[str] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        targets.append(line)
    return targets


def select_targets(config: BatchConfig, rng: Optional[random.Random] = None) -> List[str]:
    """
    対象リストを読み、必要ならシャッフル・件数制限し、
    hardened リストからのサンプルを末尾に足す。
    """
    rng = rng or random.Random()
    targets = load_targets(config.images_path)

    if config.shuffle:
        rng.shuffle(targets)
    if config.limit > 0:
        targets = targets[: config.limit]

    if config.hardened_path:
        try:
            hardened = load_targets(config.hardened_path)
        except OSError as exc:
            log_warn(f"hardened list ignored: {exc}")
            hardened = []
        rng.shuffle(hardened)
        targets.extend(hardened[: config.hardened_limit])
    return targets


def docker_pull(image: str, timeout: Optional[float] = None) -> None:
    try:
        subprocess.run(
            ["docker", "pull", image],
            check=True,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.CalledProcessError as exc:
        stderr = exc.stderr if isinstance(exc.stderr, str) else ""
        raise ScanInvocationError(f"exit status {exc.returncode}", stderr) from exc
    except subprocess.TimeoutExpired as exc:
        raise ScanTimeoutError(f"timed out after {timeout}s") from exc
    except FileNotFoundError as exc:
        raise ScanInvocationError(f"docker executable not found: {exc}") from exc


class BatchOrchestrator:
    """
    固定数のワーカーで事前に詰め終えたキューを捌く。
    ワーカーごとに Trivy キャッシュを分け、DB ロックの取り合いを避ける。
    集計への追加だけをロック下で行い、スキャン自体はロック外。
    """

    def __init__(
        self,
        config: BatchConfig,
        cache: Optional[ExploitCache],
        scan_fn: Callable[[ScanRequest], list] = scan,
        enrich_fn: Callable[..., list] = enrich,
        pull_fn: Callable[..., None] = docker_pull,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self._cache = cache
        self._scan = scan_fn
        self._enrich = enrich_fn
        self._pull = pull_fn
        self._sleep = sleep
        self._clock = clock

    @property
    def cache_root(self) -> Path:
        return self.config.output_dir / CACHE_DIR_NAME

    def worker_cache_dir(self, index: int) -> Path:
        return self.cache_root / f"w{index}"

    def run(self, targets: Sequence[str]) -> BatchResult:
        work: "queue.Queue[str]" = queue.Queue()
        for target in targets:
            work.put(target)

        workers = self.config.workers
        for i in range(workers):
            self.worker_cache_dir(i).mkdir(parents=True, exist_ok=True)

        result = BatchResult()
        lock = threading.Lock()

        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [
                executor.submit(self._worker, i, work, result, lock)
                for i in range(workers)
            ]
            for future in as_completed(futures):
                future.result()

        return result

    def _worker(
        self,
        index: int,
        work: "queue.Queue[str]",
        result: BatchResult,
        lock: threading.Lock,
    ) -> None:
        cache_dir = self.worker_cache_dir(index)
        while True:
            try:
                target = work.get_nowait()
            except queue.Empty:
                return

            outcome, entries = self._process(target, cache_dir)
            with lock:
                result.outcomes.append(outcome)
                result.findings.extend(entries)

            if self.config.delay > 0:
                self._sleep(self.config.delay)

    def _process(self, target: str, cache_dir: Path) -> Tuple[ScanOutcome, List[ImageFinding]]:
        if self.config.pull_first:
            try:
                self._pull(target, timeout=self.config.timeout)
            except ScanError as exc:
                log_error(f"docker pull failed for {target}: {exc}")
                return (
                    ScanOutcome(target=target, status=ScanStatus.FAIL, error=f"docker pull: {exc}"),
                    [],
                )

        log_info(f"start scanning {target}")
        request = ScanRequest(
            image=target,
            severities=ALL_SEVERITIES,
            offline=self.config.offline,
            cache_dir=cache_dir,
            timeout=self.config.timeout,
        )
        start = self._clock()
        try:
            findings = self._scan(request)
        except ScanError as exc:
            duration = self._clock() - start
            log_error(f"scan failed for {target}: {exc}")
            return (
                ScanOutcome(target=target, duration=duration, status=ScanStatus.FAIL, error=str(exc)),
                [],
            )
        except Exception as exc:
            # 想定外の例外もこのターゲットだけの失敗にとどめ、他ワーカーは続行
            duration = self._clock() - start
            log_error(f"unexpected error scanning {target}: {exc!r}")
            return (
                ScanOutcome(target=target, duration=duration, status=ScanStatus.FAIL, error=f"unexpected error: {exc!r}"),
                [],
            )
        duration = self._clock() - start

        try:
            enriched = self._enrich(findings, self._cache, self.config.offline)
        except Exception as exc:
            log_error(f"enrich failed for {target}: {exc!r}")
            return (
                ScanOutcome(target=target, duration=duration, status=ScanStatus.FAIL, error=f"enrich: {exc!r}"),
                [],
            )
        log_info(f"finished scanning {target}: {len(enriched)} finding(s)")
        return (
            ScanOutcome(target=target, findings=len(enriched), duration=duration),
            [ImageFinding(target=target, finding=f) for f in enriched],
        )


def _short_error(error: Optional[str], limit: int = 60) -> str:
    text = (error or "").replace("\n", " ").replace("|", "\\|")
    if len(text) > limit:
        return text[: limit - 3] + "..."
    return text


def render_summary_markdown(result: BatchResult, base_name: str, workers: int, report_time: str) -> str:
    lines = [
        f"# Baseline scan report - {report_time}",
        "",
        f"Total images: {len(result.outcomes)}. Workers: {workers}.",
        "",
        "| # | Image | Findings | Duration (s) | Status | Error |",
        "|---|-------|----------|--------------|--------|-------|",
    ]
    total = 0.0
    for i, o in enumerate(result.outcomes, 1):
        if o.ok:
            total += o.duration
        lines.append(
            f"| {i} | {o.target} | {o.findings} | {o.duration:.2f} | {o.status} | {_short_error(o.error)} |"
        )
    lines += [
        "",
        "## Summary",
        "",
        f"- **OK:** {result.ok_count} | **FAIL:** {result.fail_count}",
        f"- **Total time:** {total:.3f}s",
        f"- **CSV:** `{base_name}.csv`",
        f"- **Full findings (CVE, Exploitable, etc.):** `{base_name}-findings.csv`, `{base_name}-findings.md`",
    ]
    return "\n".join(lines) + "\n"


def write_batch_reports(
    result: BatchResult,
    output_dir: Path,
    base_name: str,
    workers: int,
    report_time: str,
) -> List[Path]:
    """
    各ファイルを独立に書き出す。1 つ失敗してもログに残して次へ進む。
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    written: List[Path] = []

    def _write(path: Path, writer: Callable[[Path], None]) -> None:
        try:
            writer(path)
        except OSError as exc:
            log_error(f"write {path}: {exc}")
            return
        written.append(path)

    summary_rows = [
        {
            "Image": o.target,
            "Findings": o.findings,
            "Duration_sec": f"{o.duration:.2f}",
            "Status": str(o.status),
            "Error": o.error or "",
        }
        for o in result.outcomes
    ]
    _write(output_dir / f"{base_name}.csv", lambda p: dump_csv(summary_rows, p, SUMMARY_FIELDS))
    _write(
        output_dir / f"{base_name}.md",
        lambda p: dump_text(render_summary_markdown(result, base_name, workers, report_time), p),
    )

    if result.findings:
        _write(
            output_dir / f"{base_name}-findings.csv",
            lambda p: write_findings_csv_with_image(result.findings, p),
        )
        _write(
            output_dir / f"{base_name}-findings.md",
            lambda p: write_findings_markdown_with_image(result.findings, p, report_time),
        )

    _write(
        output_dir / f"{base_name}-dashboard.html",
        lambda p: write_dashboard_html(result.outcomes, result.findings, p, report_time),
    )
    return written


def run_baseline(
    config: BatchConfig,
    cache: Optional[ExploitCache],
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
    orchestrator: Optional[BatchOrchestrator] = None,
) -> BatchResult:
    targets = select_targets(config, rng)
    report_time = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
    base_name = f"baseline-{report_time}"
    config.output_dir.mkdir(parents=True, exist_ok=True)

    mode = []
    if config.pull_first:
        mode.append("pull-before-scan")
    if config.delay > 0:
        mode.append(f"{config.delay:g}s delay between scans")
    print(
        f"Baseline: {len(targets)} images, {config.workers} workers"
        + (f", {', '.join(mode)}" if mode else "")
        + f". Output: {config.output_dir / base_name}.*"
    )

    orchestrator = orchestrator or BatchOrchestrator(config, cache)
    result = orchestrator.run(targets)

    write_batch_reports(result, config.output_dir, base_name, config.workers, report_time)
    print(
        f"Done. OK={result.ok_count} FAIL={result.fail_count}. "
        f"Report: {config.output_dir / (base_name + '.md')}"
    )
    if result.fail_count:
        print("WARN: some images failed:", file=sys.stderr)
        for o in result.outcomes:
            if not o.ok:
                print(f" - {o.target}: {o.error or 'unknown error'}", file=sys.stderr)
    return result
