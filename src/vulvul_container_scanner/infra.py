import csv
import json
import sys
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence


def dump_json(data: Any, out_path: Path) -> None:
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with out_path.open("w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False, indent=2)


def dump_csv(
    rows: Iterable[Mapping[str, Any]],
    out_path: Path,
    fieldnames: Optional[Sequence[str]] = None,
) -> None:
    rows = list(rows)
    out_path.parent.mkdir(parents=True, exist_ok=True)

    if not rows and not fieldnames:
        out_path.write_text("", encoding="utf-8")
        return

    with out_path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=list(fieldnames or rows[0].keys()))
        writer.writeheader()
        writer.writerows(rows)


def dump_quoted_csv(header: Sequence[str], rows: Iterable[Sequence[Any]], out_path: Path) -> None:
    """
    全フィールドをクォートして書き出す。空文字も "" として残し列数を固定する。
    """
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with out_path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f, quoting=csv.QUOTE_ALL, lineterminator="\n")
        writer.writerow(header)
        for row in rows:
            writer.writerow(["" if v is None else str(v) for v in row])


def dump_text(text: str, out_path: Path) -> None:
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(text, encoding="utf-8")


def log_error(message: str) -> None:
    print(f"ERROR: {message}", file=sys.stderr)


def log_warn(message: str) -> None:
    print(f"WARN: {message}", file=sys.stderr)


def log_info(message: str) -> None:
    print(f"INFO: {message}", file=sys.stderr)
