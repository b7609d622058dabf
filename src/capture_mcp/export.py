"""Export of captured transaction records to JSON and CSV files."""

from __future__ import annotations

import csv
import io
import json
import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path

from capture_mcp.models import CaptureError, ErrorCode, ExportIOError, TransactionRecord

logger = logging.getLogger(__name__)

EXPORT_FORMATS = ("json", "csv")

# Fixed CSV column order (export field names)
CSV_COLUMNS = ("timestamp", "method", "statusCode", "protocol", "host", "url", "duration")


def to_json(records: Iterable[TransactionRecord]) -> str:
    """Serialize records as a pretty-printed JSON array."""
    return json.dumps([record.to_export() for record in records], indent=2, ensure_ascii=False)


def to_csv(records: Iterable[TransactionRecord]) -> str:
    """Serialize records as CSV with a header row.

    Values containing commas, quotes or newlines are quoted.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    for record in records:
        data = record.to_export()
        writer.writerow([data[column] for column in CSV_COLUMNS])
    return buffer.getvalue()


def generate_filename(fmt: str, prefix: str = "capture-data", now: datetime | None = None) -> str:
    """Build a default export file name such as ``capture-data-2024-01-01T10-00-00-000Z.json``."""
    moment = now or datetime.now(UTC)
    stamp = moment.astimezone(UTC).strftime("%Y-%m-%dT%H-%M-%S-") + f"{moment.microsecond // 1000:03d}Z"
    return f"{prefix}-{stamp}.{fmt}"


def export_records(records: list[TransactionRecord], path: str | Path, fmt: str = "json") -> Path:
    """Write records to a file, creating its parent directory.

    Args:
        records: Records to export
        path: Destination file path
        fmt: "json" or "csv"

    Returns:
        Resolved path of the written file

    Raises:
        CaptureError: If the format is not supported
        ExportIOError: If the file cannot be written
    """
    fmt = fmt.lower()
    if fmt not in EXPORT_FORMATS:
        raise CaptureError(
            f"Unsupported export format: {fmt}",
            code=ErrorCode.INVALID_INPUT,
            details={"supported": list(EXPORT_FORMATS)},
        )

    content = to_json(records) if fmt == "json" else to_csv(records)
    target = Path(path).expanduser()
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8", newline="")
    except OSError as e:
        raise ExportIOError(f"Failed to write export file {target}: {e}", details={"path": str(target)}) from e

    logger.info(f"Exported {len(records)} records to {target} ({fmt})")
    return target.resolve()
