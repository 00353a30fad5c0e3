"""Drop-folder watcher for card statement CSVs.

Watches a folder for new statements, waits for the file to stop changing,
checks it is complete, then runs:
  stable -> validate -> parse -> append to card-import cache -> recompute

Uses PollingObserver rather than inotify so it behaves the same on network
shares and container volumes. Files are processed one at a time.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from watchdog.events import FileSystemEventHandler

from taxshield.parsers.card_csv import CardStatementParser

if TYPE_CHECKING:
    from taxshield.engine import Ledger, LedgerView

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = {".csv"}

DEFAULT_STABILITY_SECONDS = 10
DEFAULT_CHECK_INTERVAL = 2.0
DEFAULT_POLL_INTERVAL = 30


@dataclass
class ImportResult:
    """Result of importing a single statement file."""
    file_name: str
    status: str  # "success", "error"
    new_count: int = 0
    duplicate_count: int = 0
    skipped_count: int = 0
    error_message: str | None = None


class FileStabilityError(Exception):
    """A settled statement file still looks truncated or unrecognised."""


# ── File stability & validation ──────────────────────────


def wait_for_stable(
    filepath: Path,
    stability_seconds: int = DEFAULT_STABILITY_SECONDS,
    check_interval: float = DEFAULT_CHECK_INTERVAL,
    max_wait: float = 300.0,
) -> None:
    """Block until the file's size and mtime hold still for stability_seconds.

    Raises:
        TimeoutError: If the file is still changing after max_wait seconds.
    """
    last: tuple[int, float] | None = None
    stable_since: float | None = None
    start = time.monotonic()

    while time.monotonic() - start <= max_wait:
        stat = filepath.stat()
        current = (stat.st_size, stat.st_mtime)
        if current == last:
            if stable_since is None:
                stable_since = time.monotonic()
            elif time.monotonic() - stable_since >= stability_seconds:
                return
        else:
            stable_since = None
        last = current
        time.sleep(check_interval)

    raise TimeoutError(f"File did not stabilize within {max_wait}s: {filepath}")


def validate_file_completeness(filepath: Path) -> None:
    """A statement CSV must be non-empty, end with a newline and have a
    recognisable header.

    Raises:
        FileStabilityError: If the file looks truncated or isn't a statement.
    """
    data = filepath.read_bytes()
    if not data:
        raise FileStabilityError(f"Empty CSV file: {filepath}")
    if data[-1:] not in (b"\n", b"\r"):
        raise FileStabilityError(f"CSV file does not end with newline: {filepath}")
    if not CardStatementParser().detect(filepath):
        raise FileStabilityError(f"Not a recognised card statement: {filepath}")


# ── Import pipeline ──────────────────────────────────────


class ImportPipeline:
    """Parse a statement, append it to the card-import batch, recompute.

    Args:
        ledger: Tenant ledger the statements are imported into.
        on_recompute: Optional callback receiving the fresh LedgerView.
    """

    def __init__(
        self,
        ledger: Ledger,
        on_recompute: Callable[[LedgerView], None] | None = None,
    ):
        self.ledger = ledger
        self.on_recompute = on_recompute

    def process_file(self, filepath: Path) -> ImportResult:
        file_name = filepath.name
        if filepath.suffix.lower() not in SUPPORTED_EXTENSIONS:
            return ImportResult(
                file_name=file_name,
                status="error",
                error_message=f"Unsupported file extension: {filepath.suffix}",
            )

        try:
            # Card name defaults to the file stem, e.g. "chase-sapphire-2026-03.csv"
            added, duplicates, skipped = self.ledger.import_card(filepath)
        except (OSError, ValueError) as e:
            logger.error("Import failed for %s: %s", file_name, e)
            return ImportResult(file_name=file_name, status="error", error_message=str(e))

        if skipped:
            logger.warning("Parser skipped %d row(s) in %s", skipped, file_name)

        if added:
            view = self.ledger.view()
            if self.on_recompute is not None:
                self.on_recompute(view)

        return ImportResult(
            file_name=file_name,
            status="success",
            new_count=added,
            duplicate_count=duplicates,
            skipped_count=skipped,
        )


# ── File watcher ─────────────────────────────────────────


class FileWatcher(FileSystemEventHandler):
    """Watch a drop folder for card statements using PollingObserver.

    Args:
        watch_dir: Drop folder; created on start() if missing.
        pipeline: Receives each settled, validated statement.
        stability_seconds: How long size and mtime must hold still.
        check_interval: Seconds between stat() polls.
    """

    def __init__(
        self,
        watch_dir: Path,
        pipeline: ImportPipeline,
        stability_seconds: int = DEFAULT_STABILITY_SECONDS,
        check_interval: float = DEFAULT_CHECK_INTERVAL,
    ):
        self.watch_dir = Path(watch_dir)
        self.pipeline = pipeline
        self.stability_seconds = stability_seconds
        self.check_interval = check_interval
        self._observer = None

    def start(self) -> None:
        from watchdog.observers.polling import PollingObserver

        self.watch_dir.mkdir(parents=True, exist_ok=True)
        self._observer = PollingObserver(timeout=DEFAULT_POLL_INTERVAL)
        self._observer.schedule(self, str(self.watch_dir), recursive=False)
        self._observer.start()
        logger.info("Watching %s for card statements", self.watch_dir)

    def stop(self) -> None:
        if self._observer is not None:
            self._observer.stop()
            self._observer.join()
            self._observer = None
            logger.info("Stopped watching %s", self.watch_dir)

    def on_created(self, event) -> None:
        if event.is_directory:
            return
        filepath = Path(event.src_path)
        if filepath.suffix.lower() not in SUPPORTED_EXTENSIONS:
            return
        logger.info("New statement detected: %s", filepath.name)
        self._process_file(filepath)

    def _process_file(self, filepath: Path) -> ImportResult:
        """Import one dropped statement once it has settled and checks out."""
        try:
            wait_for_stable(
                filepath,
                stability_seconds=self.stability_seconds,
                check_interval=self.check_interval,
            )
            validate_file_completeness(filepath)
        except (FileStabilityError, TimeoutError, OSError) as e:
            logger.error("Skipping %s: %s", filepath.name, e)
            return ImportResult(
                file_name=filepath.name, status="error", error_message=str(e),
            )

        result = self.pipeline.process_file(filepath)
        logger.info(
            "Import result for %s: %s (new=%d, dup=%d, skipped=%d)",
            filepath.name, result.status,
            result.new_count, result.duplicate_count, result.skipped_count,
        )
        return result
