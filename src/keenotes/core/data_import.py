"""Bulk import of NDJSON note exports for KeeNotes.

Each non-blank line of an import file is one JSON object:

    {"content": "...", "channel": "...", "created_at": "YYYY-MM-DD HH:MM:SS"}

"ts" is accepted in place of "created_at". Lines with "encrypted": true
carry an envelope in "content" and are submitted as is; all other lines are
encrypted before submission. Notes go through the normal post path, so they
reach the local cache via sync like any other new note.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from .api_client import ApiClient
from .timestamp_utils import WIRE_FORMAT

logger = logging.getLogger(__name__)

__all__ = [
    "ValidationResult",
    "ImportResult",
    "ImportInProgressError",
    "DataImporter",
    "validate_file",
]

ProgressCallback = Callable[[int, int], None]


@dataclass
class ValidationResult:
    valid: bool
    error_message: Optional[str] = None
    line_count: int = 0


@dataclass
class ImportResult:
    """Outcome of an import run.

    Attributes:
        total: Non-blank lines in the file
        success: Notes accepted by the server
        failed: Lines that could not be parsed or were rejected
        failed_lines: "Line N: reason | Data: line" for each failure
        cancelled: True if cancel() stopped the run early
        report_file: Path of the failed-lines report, if one was written
    """

    total: int = 0
    success: int = 0
    failed: int = 0
    failed_lines: List[str] = field(default_factory=list)
    cancelled: bool = False
    report_file: Optional[Path] = None


class ImportInProgressError(RuntimeError):
    """import_file() was called while another import is running."""


def _non_blank_lines(path: Path) -> Iterator[Tuple[int, str]]:
    number = 0
    with open(path, "r", encoding="utf-8") as f:
        for raw in f:
            line = raw.strip()
            if not line:
                continue
            number += 1
            yield number, line


def _has_text(data: Dict[str, Any], key: str) -> bool:
    value = data.get(key)
    return isinstance(value, str) and bool(value.strip())


def _check_line(line: str) -> Optional[str]:
    """Return an error message for an invalid line, or None."""
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        return f"Invalid JSON format - {e}"
    if not isinstance(data, dict):
        return "Invalid JSON format - expected an object"
    if not _has_text(data, "content"):
        return "Missing or empty 'content' field"
    if not _has_text(data, "channel"):
        return "Missing or empty 'channel' field"
    if not (_has_text(data, "created_at") or _has_text(data, "ts")):
        return "Missing 'created_at' or 'ts' field"
    return None


def validate_file(path: Union[Path, str]) -> ValidationResult:
    """Check that every non-blank line of an NDJSON file is an importable note.

    Stops at the first invalid line.
    """
    path = Path(path)
    if not path.is_file():
        return ValidationResult(False, "File does not exist")

    count = 0
    try:
        for number, line in _non_blank_lines(path):
            count = number
            error = _check_line(line)
            if error is not None:
                return ValidationResult(False, f"Line {number}: {error}")
    except (OSError, UnicodeDecodeError) as e:
        return ValidationResult(False, f"Error reading file: {e}")

    if count == 0:
        return ValidationResult(False, "File is empty")
    return ValidationResult(True, None, count)


class DataImporter:
    """Submits the notes of an NDJSON file one by one."""

    def __init__(
        self,
        api: ApiClient,
        delay: float = 0.1,
        report_dir: Optional[Path] = None,
    ) -> None:
        """Initialize importer.

        Args:
            api: Post path used for every note
            delay: Pause between submissions in seconds
            report_dir: Where to write the failed-lines report (no report if None)
        """
        self.api = api
        self.delay = delay
        self.report_dir = report_dir
        self._lock = threading.Lock()
        self._importing = False
        self._cancel = threading.Event()

    def is_importing(self) -> bool:
        return self._importing

    def cancel(self) -> None:
        """Stop the running import after the current line."""
        self._cancel.set()

    def import_file(
        self, path: Union[Path, str], progress: Optional[ProgressCallback] = None
    ) -> ImportResult:
        """Import every note in an NDJSON file.

        Args:
            path: NDJSON file
            progress: Called with (current, total) after each line

        Returns:
            ImportResult

        Raises:
            ImportInProgressError: If an import is already running
            OSError: If the file cannot be read
        """
        with self._lock:
            if self._importing:
                raise ImportInProgressError("An import is already in progress")
            self._importing = True
            self._cancel.clear()

        try:
            return self._run(Path(path), progress)
        finally:
            with self._lock:
                self._importing = False

    def _run(self, path: Path, progress: Optional[ProgressCallback]) -> ImportResult:
        result = ImportResult(total=sum(1 for _ in _non_blank_lines(path)))
        logger.info(f"Importing {result.total} notes from {path}")

        for number, line in _non_blank_lines(path):
            if self._cancel.is_set():
                result.cancelled = True
                logger.info(f"Import cancelled after {number - 1} lines")
                break

            error = self._import_line(line)
            if error is None:
                result.success += 1
            else:
                result.failed += 1
                result.failed_lines.append(f"Line {number}: {error} | Data: {line}")

            if progress is not None:
                progress(number, result.total)
            if self.delay > 0 and number < result.total:
                time.sleep(self.delay)

        if result.failed_lines and self.report_dir is not None:
            result.report_file = self._write_report(path, result.failed_lines)

        logger.info(f"Import finished: success={result.success}, failed={result.failed}")
        return result

    def _import_line(self, line: str) -> Optional[str]:
        error = _check_line(line)
        if error is not None:
            return error

        data = json.loads(line)
        ts = data.get("created_at") if _has_text(data, "created_at") else data.get("ts")
        if data.get("encrypted") is True:
            outcome = self.api.post_encrypted(data["content"], data["channel"], ts)
        else:
            outcome = self.api.post_note(data["content"], data["channel"], ts)
        return None if outcome.success else outcome.message

    def _write_report(self, source: Path, failed_lines: List[str]) -> Optional[Path]:
        now = datetime.now()
        report = self.report_dir / f"import_failed_{now.strftime('%Y%m%d_%H%M%S')}.txt"
        lines = [
            "Import Failed Lines Report",
            f"Original File: {source.resolve()}",
            f"Timestamp: {now.strftime(WIRE_FORMAT)}",
            f"Total Failed: {len(failed_lines)}",
            "=" * 80,
            "",
            *failed_lines,
        ]
        try:
            self.report_dir.mkdir(parents=True, exist_ok=True)
            report.write_text("\n".join(lines) + "\n", encoding="utf-8")
        except OSError as e:
            logger.error(f"Failed to write import report: {e}")
            return None
        return report
