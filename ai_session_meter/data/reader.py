"""
Usage log discovery and loading.

Finds JSONL usage logs on disk and reads them into a sorted, deduplicated,
time-filtered event list for the core.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional

from .models import UsageEvent
from .parser import deduplicate_events, filter_by_time, parse_jsonl_line, sort_events

logger = logging.getLogger(__name__)

DEFAULT_DATA_PATH = Path.home() / ".claude" / "projects"


@dataclass(frozen=True)
class ReadStats:
    """Counters from one load, for diagnostics."""
    files_found: int
    files_read: int
    events: int
    skipped_lines: int
    duplicates: int


class UsageReader:
    """Reader for on-disk usage logs.

    Every call re-reads the logs; nothing is cached between refreshes.
    """

    def __init__(self, data_path: Optional[str] = None):
        """Initialize the reader.

        Args:
            data_path: Directory to scan (defaults to ~/.claude/projects)
        """
        self.data_path = Path(data_path) if data_path else DEFAULT_DATA_PATH
        self.last_stats: Optional[ReadStats] = None

    def find_files(self) -> List[Path]:
        """Recursively find all ``.jsonl`` files under the data path.

        Raises:
            FileNotFoundError: If the data path does not exist
        """
        if not self.data_path.exists():
            raise FileNotFoundError(f"Usage data directory not found: {self.data_path}")

        files = []
        for root, _dirs, names in os.walk(self.data_path):
            for name in names:
                if name.lower().endswith(".jsonl"):
                    files.append(Path(root) / name)
        return sorted(files)

    def load_events(self, now: datetime, hours_back: int = 0) -> List[UsageEvent]:
        """Load every usage event newer than ``now - hours_back``.

        Files not modified since the cutoff are skipped without opening them.
        Unreadable files and malformed lines are skipped.

        Args:
            now: Reference time for the cutoff
            hours_back: How far back to read (0 reads everything)

        Returns:
            Events sorted oldest first, deduplicated by message and request id
        """
        files = self.find_files()
        cutoff = now - timedelta(hours=hours_back) if hours_back > 0 else None

        parsed: List[UsageEvent] = []
        files_read = 0
        skipped = 0

        for path in files:
            if cutoff is not None:
                try:
                    modified = datetime.fromtimestamp(path.stat().st_mtime, tz=now.tzinfo)
                except OSError:
                    continue
                if modified < cutoff:
                    continue

            try:
                with open(path, "r", encoding="utf-8") as f:
                    for line in f:
                        if not line.strip():
                            continue
                        try:
                            event = parse_jsonl_line(line)
                        except (ValueError, TypeError):
                            skipped += 1
                            continue
                        if event is not None:
                            parsed.append(event)
            except (OSError, UnicodeDecodeError) as e:
                logger.debug("Skipping unreadable usage log %s: %s", path, e)
                continue
            files_read += 1

        recent = filter_by_time(parsed, hours_back, now)
        events = deduplicate_events(recent)
        duplicates = len(recent) - len(events)

        self.last_stats = ReadStats(
            files_found=len(files),
            files_read=files_read,
            events=len(events),
            skipped_lines=skipped,
            duplicates=duplicates,
        )
        logger.debug(
            "Loaded %d events from %d/%d files (%d malformed lines, %d duplicates)",
            len(events), files_read, len(files), skipped, duplicates,
        )
        return sort_events(events)
