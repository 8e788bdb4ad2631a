"""Export of the accumulated record set to CSV, JSON or Excel.

CSV is written with a UTF-8 BOM so spreadsheet tools detect the encoding of
Chinese titles; JSON wraps the rows with export metadata; Excel goes through
pandas with the xlsxwriter engine.
"""
from __future__ import annotations

import csv
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Sequence

import structlog

from .errors import ExportError
from .models import Record

logger = structlog.get_logger(__name__)

EXPORT_VERSION = "1.0"
FILENAME_PREFIX = "feed_records"
FORMATS = {"csv": "csv", "json": "json", "excel": "xlsx", "xlsx": "xlsx"}

COLUMNS = [
    "Index",
    "Title",
    "Author",
    "Likes",
    "Collects",
    "Comments",
    "Image URL",
    "Note URL",
    "Published",
    "Collected At",
]


@dataclass(slots=True)
class ExportResult:
    filename: str
    path: str
    count: int
    size: int
    format: str

    def to_dict(self) -> dict[str, Any]:
        return {"filename": self.filename, "path": self.path, "count": self.count, "size": self.size, "format": self.format}


def _format_ms(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def to_rows(records: Sequence[Record]) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for index, r in enumerate(records, start=1):
        rows.append({
            "Index": index,
            "Title": r.title or "",
            "Author": r.author or "",
            "Likes": r.likes if r.likes is not None else "",
            "Collects": r.collects if r.collects is not None else "",
            "Comments": r.comments if r.comments is not None else "",
            "Image URL": r.image_url or "",
            "Note URL": r.url,
            "Published": r.publish_time or "",
            "Collected At": _format_ms(r.collected_at),
        })
    return rows


def build_filename(fmt: str, now: Optional[datetime] = None) -> str:
    ext = FORMATS[fmt]
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%d_%H%M%S")
    return f"{FILENAME_PREFIX}_{stamp}.{ext}"


def _write_csv(path: Path, records: Sequence[Record]) -> None:
    with path.open("w", encoding="utf-8-sig", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=COLUMNS)
        writer.writeheader()
        writer.writerows(to_rows(records))


def _write_json(path: Path, records: Sequence[Record], now: datetime) -> None:
    payload = {
        "metadata": {
            "export_time": now.isoformat(),
            "total_count": len(records),
            "version": EXPORT_VERSION,
            "source": FILENAME_PREFIX,
        },
        "data": [r.to_dict() for r in records],
    }
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")


def _write_excel(path: Path, records: Sequence[Record]) -> None:
    import pandas as pd  # heavy import, only needed here

    df = pd.DataFrame(to_rows(records), columns=COLUMNS)
    with pd.ExcelWriter(path, engine="xlsxwriter") as writer:
        df.to_excel(writer, index=False, sheet_name="Records")
        sheet = writer.sheets["Records"]
        sheet.set_column(1, 1, 40)  # title
        sheet.set_column(6, 7, 60)  # urls


def export_records(
    records: Sequence[Record],
    fmt: str,
    directory: str | Path,
    *,
    now: Optional[datetime] = None,
) -> ExportResult:
    fmt = (fmt or "").lower()
    if fmt not in FORMATS:
        raise ExportError(f"unsupported export format: {fmt!r}")
    if not records:
        raise ExportError("nothing to export")
    now = now or datetime.now(timezone.utc)
    out_dir = Path(directory)
    out_dir.mkdir(parents=True, exist_ok=True)
    filename = build_filename(fmt, now)
    path = out_dir / filename
    try:
        if fmt == "csv":
            _write_csv(path, records)
        elif fmt == "json":
            _write_json(path, records, now)
        else:
            _write_excel(path, records)
    except OSError as exc:
        raise ExportError(f"cannot write {path}: {exc}") from exc
    result = ExportResult(
        filename=filename,
        path=str(path),
        count=len(records),
        size=path.stat().st_size,
        format=FORMATS[fmt],
    )
    logger.info("export_complete", filename=filename, count=result.count, size=result.size)
    return result
