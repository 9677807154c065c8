"""
Repository pattern for data access.

The interaction log is an append-only JSON Lines file. Each record is one
line, written with a single unbuffered append so concurrent readers never
see interleaved records. Oversized logs are rotated by renaming them with
an epoch-millisecond suffix.
"""

import json
import logging
import re
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .models import InteractionRecord, SpendTotals, month_key, parse_timestamp

logger = logging.getLogger(__name__)

DEFAULT_ROTATE_BYTES = 5 * 1024 * 1024


@dataclass(frozen=True)
class MonthSummary:
    """Aggregates over every record of one calendar month."""
    month_key: str
    totals: SpendTotals = field(default_factory=SpendTotals)
    interaction_count: int = 0
    coding_interactions: int = 0
    average_quality_score: Optional[float] = None
    average_effectiveness_score: Optional[float] = None


def _month_start(key: str) -> float:
    year, month = key.split("-")
    return datetime(int(year), int(month), 1, tzinfo=timezone.utc).timestamp()


def _collect_score(value: Any, scores: List[float]) -> None:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        scores.append(float(value))


def _average(values: List[float]) -> Optional[float]:
    return sum(values) / len(values) if values else None


class InteractionRepository:
    """Append-only store of InteractionRecords.

    Appends are serialized with a lock; reads take no lock and skip
    malformed or partially written lines.
    """

    def __init__(self, log_path: str, rotate_bytes: int = DEFAULT_ROTATE_BYTES):
        """Initialize the repository with a log file path.

        Args:
            log_path: Path to the JSON Lines interaction log
            rotate_bytes: Size above which the log is rotated after an append
        """
        self.log_path = Path(log_path)
        self.rotate_bytes = rotate_bytes
        self._lock = threading.Lock()
        self._rotated_name = re.compile(
            rf"^{re.escape(self.log_path.stem)}\.(\d+){re.escape(self.log_path.suffix)}$"
        )

    def append(self, record: InteractionRecord) -> Optional[Path]:
        """Append one record, rotating the log if it grew past the limit.

        Returns:
            Path of the rotated file, or None when no rotation happened
        """
        line = (json.dumps(record.to_dict(), ensure_ascii=False) + "\n").encode("utf-8")
        with self._lock:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.log_path, "ab", buffering=0) as f:
                f.write(line)
            return self._rotate_if_needed()

    def _rotate_if_needed(self) -> Optional[Path]:
        try:
            size = self.log_path.stat().st_size
        except FileNotFoundError:
            return None
        if size <= self.rotate_bytes:
            return None

        stamp = int(time.time() * 1000)
        target = self.log_path.with_name(f"{self.log_path.stem}.{stamp}{self.log_path.suffix}")
        while target.exists():
            stamp += 1
            target = self.log_path.with_name(f"{self.log_path.stem}.{stamp}{self.log_path.suffix}")
        self.log_path.rename(target)
        logger.info("Rotated interaction log to %s (%d bytes)", target, size)
        return target

    def rotated_files(self) -> List[Path]:
        """Rotated siblings of the log, oldest first."""
        directory = self.log_path.parent
        if not directory.exists():
            return []
        found = []
        for candidate in directory.iterdir():
            match = self._rotated_name.match(candidate.name)
            if match and candidate.is_file():
                found.append((int(match.group(1)), candidate))
        return [path for _, path in sorted(found)]

    def log_files(self, modified_since: Optional[float] = None) -> List[Path]:
        """Rotated files (optionally only those modified since a POSIX time) then the live log."""
        files = []
        for path in self.rotated_files():
            if modified_since is not None:
                try:
                    if path.stat().st_mtime < modified_since:
                        continue
                except FileNotFoundError:
                    # deleted after listing
                    continue
            files.append(path)
        if self.log_path.exists():
            files.append(self.log_path)
        return files

    @staticmethod
    def _iter_entries(path: Path) -> Iterator[Dict[str, Any]]:
        try:
            with open(path, "r", encoding="utf-8", errors="replace") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entry = json.loads(line)
                    except ValueError:
                        continue
                    if isinstance(entry, dict):
                        yield entry
        except FileNotFoundError:
            # rotated away between listing and opening
            return

    def iter_records(self, modified_since: Optional[float] = None) -> Iterator[InteractionRecord]:
        """Every well-formed record across the rotated files and the live log."""
        for path in self.log_files(modified_since):
            for entry in self._iter_entries(path):
                try:
                    yield InteractionRecord.from_dict(entry)
                except (KeyError, TypeError, ValueError) as e:
                    logger.debug("Skipping malformed interaction record in %s: %s", path, e)

    def month_summary(self, key: str) -> MonthSummary:
        """Totals and counts for records whose timestamp falls in the month.

        Rotated files last modified before the month began cannot hold any
        of its records and are not read.
        """
        total = 0.0
        by_provider: Dict[str, float] = {}
        count = 0
        coding = 0
        quality_scores: List[float] = []
        effectiveness_scores: List[float] = []
        for path in self.log_files(modified_since=_month_start(key)):
            for entry in self._iter_entries(path):
                try:
                    if month_key(parse_timestamp(entry["timestamp"])) != key:
                        continue
                    cost = float(entry.get("costUSD") or 0.0)
                except (KeyError, TypeError, ValueError, AttributeError):
                    continue
                provider = str(entry.get("provider", "unknown"))
                total += cost
                by_provider[provider] = by_provider.get(provider, 0.0) + cost
                count += 1
                if entry.get("taskType") == "coding":
                    coding += 1
                    _collect_score(entry.get("codeQualityScore"), quality_scores)
                    _collect_score(entry.get("effectivenessScore"), effectiveness_scores)
        return MonthSummary(
            month_key=key,
            totals=SpendTotals(total=total, by_provider=by_provider),
            interaction_count=count,
            coding_interactions=coding,
            average_quality_score=_average(quality_scores),
            average_effectiveness_score=_average(effectiveness_scores),
        )

    def monthly_spend(self, key: str) -> SpendTotals:
        return self.month_summary(key).totals

    def recent(self, limit: int = 10) -> List[InteractionRecord]:
        """The newest ``limit`` records, oldest first."""
        if limit <= 0:
            return []
        return list(deque(self.iter_records(), maxlen=limit))
