import argparse
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence

from .batch import run_baseline
from .config import BatchConfig, FileConfig, find_config, load_config
from .enrich import enrich
from .errors import ReportError, ScanError
from .get_vuls import scan
from .kev import ExploitCache
from .models_scan import DEFAULT_SCAN_TIMEOUT, ScanRequest
from .models_vuln import parse_severity
from .policy import evaluate
from .report import ReportOptions, generate

DEFAULT_SEVERITY = "CRITICAL,HIGH,MEDIUM,LOW,UNKNOWN"
DEFAULT_FORMAT = "sarif,markdown"
DEFAULT_OUTPUT_DIR = "./reports"
DEFAULT_OUTPUT_NAME = "report"


def split_trim(value: Optional[str], sep: str = ",") -> List[str]:
    return [v.strip() for v in (value or "").split(sep) if v.strip()]


def _pick(cli_value: Optional[str], file_value: str, default: str) -> str:
    # CLI > config file > default
    if cli_value is not None:
        return cli_value
    return file_value or default


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vulvul-container-scanner")
    sub = parser.add_subparsers(dest="command", required=True)

    p_scan = sub.add_parser("scan", help="Scan one image or root filesystem")
    target = p_scan.add_mutually_exclusive_group(required=True)
    target.add_argument("--image", help="Image to scan (e.g. alpine:latest)")
    target.add_argument("--rootfs", help="Root filesystem directory to scan instead of an image")
    p_scan.add_argument("--dockerfile", help="Optional Dockerfile path (image only)")
    p_scan.add_argument("--severity", help=f"Comma-separated severities to include (default: {DEFAULT_SEVERITY})")
    p_scan.add_argument("--offline", action="store_true", help="Skip DB update and KEV fetch")
    p_scan.add_argument("--cache-dir", help="Trivy cache directory (default: system cache)")
    p_scan.add_argument("--output-dir", help=f"Output directory for reports (default: {DEFAULT_OUTPUT_DIR})")
    p_scan.add_argument("--output-name", help=f"Base name for report files (default: {DEFAULT_OUTPUT_NAME})")
    p_scan.add_argument(
        "--timestamp",
        action="store_true",
        help="Append a timestamp to the report base name so each run writes unique files.",
    )
    p_scan.add_argument("--format", help=f"Comma-separated formats: sarif, markdown, html, csv (default: {DEFAULT_FORMAT})")
    p_scan.add_argument("--fail-on-severity", help="Exit 1 if any finding has one of these severities (e.g. CRITICAL,HIGH)")
    p_scan.add_argument("--fail-on-count", help="Exit 1 if count for severity >= N (e.g. HIGH:5)")
    p_scan.add_argument("--config", help="Config file (default: scanner.yaml or .scanner.yaml in cwd)")
    p_scan.add_argument("--timeout", type=float, default=DEFAULT_SCAN_TIMEOUT, help="Per-invocation timeout in seconds")

    p_base = sub.add_parser("baseline", help="Scan a list of images in parallel")
    p_base.add_argument("--images", help="Target list file, one image per line (env: BASELINE_IMAGES)")
    p_base.add_argument("--hardened", help="Extra list sampled after the main list (env: BASELINE_IMAGES_HARDENED)")
    p_base.add_argument("--hardened-limit", type=int, help="Images sampled from the hardened list (default: 5)")
    p_base.add_argument("--random", action="store_true", help="Shuffle the target list (env: BASELINE_RANDOM)")
    p_base.add_argument("--limit", type=int, help="Scan at most N targets from the main list (env: BASELINE_LIMIT)")
    p_base.add_argument("--workers", type=int, help="Worker pool size (default: 5, env: BASELINE_WORKERS)")
    p_base.add_argument("--out", help="Output directory (default: test-results, env: BASELINE_OUT)")
    p_base.add_argument("--delay", type=float, help="Seconds to wait after each target (env: BASELINE_DELAY_SEC)")
    p_base.add_argument("--pull-first", action="store_true", help="docker pull each image before scanning")
    p_base.add_argument("--offline", action="store_true", help="Skip DB update and KEV fetch")
    p_base.add_argument("--timeout", type=float, help="Per-invocation timeout in seconds")
    return parser


def run_scan(args: argparse.Namespace, cache: Optional[ExploitCache] = None) -> int:
    config_path = Path(args.config) if args.config else find_config(Path.cwd())
    try:
        file_conf = load_config(config_path) or FileConfig()
    except OSError as exc:
        print(f"Config failed: {exc}", file=sys.stderr)
        return 1

    severities = split_trim(_pick(args.severity, file_conf.severity, DEFAULT_SEVERITY))
    formats = split_trim(_pick(args.format, file_conf.format, DEFAULT_FORMAT))
    output_dir = Path(_pick(args.output_dir, file_conf.output_dir, DEFAULT_OUTPUT_DIR))
    base_name = _pick(args.output_name, file_conf.output_name, DEFAULT_OUTPUT_NAME)
    cache_dir = _pick(args.cache_dir, file_conf.cache_dir, "")
    fail_on_severity = split_trim(_pick(args.fail_on_severity, file_conf.fail_on_severity, ""))
    fail_on_count = _pick(args.fail_on_count, file_conf.fail_on_count, "")

    if args.timestamp:
        base_name = f"{base_name}-{datetime.now().strftime('%Y%m%d-%H%M%S')}"

    try:
        request = ScanRequest(
            image=args.image,
            rootfs=Path(args.rootfs) if args.rootfs else None,
            dockerfile=Path(args.dockerfile) if args.dockerfile else None,
            severities=tuple(parse_severity(s) for s in severities),
            offline=args.offline,
            cache_dir=Path(cache_dir) if cache_dir else None,
            timeout=args.timeout,
        )
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    try:
        findings = scan(request)
    except ScanError as exc:
        print(f"Scan failed: {exc}", file=sys.stderr)
        return 1

    if cache is None and not args.offline:
        cache = ExploitCache()
    enriched = enrich(findings, cache, offline=args.offline)

    try:
        generate(enriched, ReportOptions(formats=formats, output_dir=output_dir, base_name=base_name))
    except ReportError as exc:
        print(f"Report failed: {exc}", file=sys.stderr)
        return 1
    print(f"Scan complete: {len(enriched)} findings. Reports written to {output_dir}")

    # CI ゲート: ポリシー違反は exit 1
    should_fail, reason = evaluate(enriched, fail_on_severity, fail_on_count)
    if should_fail:
        print(reason, file=sys.stderr)
        return 1
    return 0


def baseline_config(args: argparse.Namespace) -> BatchConfig:
    config = BatchConfig.from_env()
    if args.images:
        config.images_path = Path(args.images)
    if args.hardened:
        config.hardened_path = Path(args.hardened)
    if args.hardened_limit is not None:
        config.hardened_limit = max(0, args.hardened_limit)
    if args.random:
        config.shuffle = True
    if args.limit is not None:
        config.limit = args.limit
    if args.workers is not None:
        config.workers = max(1, args.workers)
    if args.out:
        config.output_dir = Path(args.out)
    if args.delay is not None:
        config.delay = max(0.0, args.delay)
    if args.pull_first:
        config.pull_first = True
    if args.offline:
        config.offline = True
    if args.timeout is not None:
        config.timeout = args.timeout
    return config


def run_baseline_command(args: argparse.Namespace, cache: Optional[ExploitCache] = None) -> int:
    config = baseline_config(args)
    try:
        run_baseline(config, cache if cache is not None else ExploitCache())
    except OSError as exc:
        print(f"Baseline failed: {exc}", file=sys.stderr)
        return 1
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.command == "scan":
        return run_scan(args)
    return run_baseline_command(args)


if __name__ == "__main__":
    sys.exit(main())
