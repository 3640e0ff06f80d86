"""
Day-partitioned detection history.

- One JSON file per calendar day: <directory>/detections_YYYY-MM-DD.json,
  a list of Detection dicts sorted by timestamp.
- add_detection() only buffers (bounded, oldest dropped); a periodic auto-save
  drains the buffer, merges each day's new entries with that day's stored
  list, re-sorts and rewrites the whole file.
- Many concurrent readers, one writer at a time (ReadWriteLock).
- Retention: a daily task deletes files dated before today - retention_days.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from collections import deque
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Iterable, Iterator

from activity_capture.log import log_structured
from activity_capture.models import Detection
from activity_capture.tasks import TaskScheduler

logger = logging.getLogger(__name__)

FILE_PREFIX = "detections_"
DATE_FORMAT = "%Y-%m-%d"


class ReadWriteLock:
    """Shared read / exclusive write. Waiting writers block new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


def _as_date(value: date | str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.strptime(value, DATE_FORMAT).date()


class HistoryStore:
    """Persists accepted detections; also the detection listener fed by the orchestrator."""

    def __init__(self, config: dict[str, Any]) -> None:
        cfg = config.get("history", {})
        self.directory = Path(cfg.get("directory", "history"))
        self.file_format = str(cfg.get("file_format", "json"))
        self.retention_days = int(cfg.get("retention_days", 30))
        self.auto_save_interval_sec = float(cfg.get("auto_save_interval_sec", 60))
        self.cleanup_interval_sec = float(cfg.get("cleanup_interval_sec", 86400))
        self.buffer_limit = int(cfg.get("buffer_limit", 1000))
        self.grace_sec = float(config.get("shutdown", {}).get("grace_sec", 5))
        self._buffer: deque[Detection] = deque(maxlen=self.buffer_limit)
        self._buffer_lock = threading.Lock()
        self._cache: dict[str, list[Detection]] = {}
        self._lock = ReadWriteLock()
        self._scheduler: TaskScheduler | None = None
        self.directory.mkdir(parents=True, exist_ok=True)

    # -- buffering ---------------------------------------------------------

    def add_detection(self, detection: Detection | None) -> None:
        if detection is None:
            return
        with self._buffer_lock:
            if len(self._buffer) == self.buffer_limit:
                logger.warning("History buffer full, oldest pending detection dropped")
            self._buffer.append(detection)
        logger.debug("Detection buffered for history: %s", detection.predicted_activity)

    def __call__(self, detection: Detection) -> None:
        self.add_detection(detection)

    def pending_count(self) -> int:
        with self._buffer_lock:
            return len(self._buffer)

    def auto_save(self) -> int:
        """Drain the pending buffer to disk. Returns the number of detections written."""
        with self._buffer_lock:
            pending = list(self._buffer)
            self._buffer.clear()
        if not pending:
            return 0
        self.save_detections(pending)
        return len(pending)

    def force_save(self) -> int:
        return self.auto_save()

    # -- files -------------------------------------------------------------

    def file_for_date(self, day: date | str) -> Path:
        return self.directory / f"{FILE_PREFIX}{_as_date(day).strftime(DATE_FORMAT)}.{self.file_format}"

    def _history_files(self) -> list[tuple[date, Path]]:
        out = []
        for path in self.directory.glob(f"{FILE_PREFIX}*.{self.file_format}"):
            try:
                day = datetime.strptime(path.stem[len(FILE_PREFIX):], DATE_FORMAT).date()
            except ValueError:
                logger.debug("Ignoring %s: not a dated history file", path.name)
                continue
            out.append((day, path))
        return sorted(out)

    def _load(self, key: str) -> list[Detection]:
        """Caller holds the lock (read or write)."""
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        path = self.file_for_date(key)
        if not path.is_file():
            return []
        try:
            with open(path, encoding="utf-8") as f:
                raw = json.load(f)
            detections = [Detection.from_dict(d) for d in raw]
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error("Could not read history file %s: %s", path, e)
            return []
        detections.sort(key=lambda d: d.timestamp)
        self._cache[key] = detections
        return detections

    def _write(self, key: str, detections: list[Detection]) -> None:
        path = self.file_for_date(key)
        fd, tmp = tempfile.mkstemp(prefix=".tmp_", dir=self.directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump([d.to_dict() for d in detections], f, ensure_ascii=False, indent=2)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def save_detections(self, detections: Iterable[Detection]) -> None:
        """Merge detections into their day files (grouped by date), re-sort, rewrite each file."""
        by_date: dict[str, list[Detection]] = {}
        for d in detections:
            by_date.setdefault(d.date_key, []).append(d)
        with self._lock.write():
            for key, new in by_date.items():
                merged = sorted(self._load(key) + new, key=lambda d: d.timestamp)
                try:
                    self._write(key, merged)
                except OSError as e:
                    logger.error("Could not save history for %s: %s", key, e)
                    continue
                self._cache[key] = merged
                logger.debug("History %s: %d detection(s) after merge", key, len(merged))
        log_structured("history_saved", dates=sorted(by_date), count=sum(len(v) for v in by_date.values()))

    # -- queries -----------------------------------------------------------

    def history_for_date(self, day: date | str) -> list[Detection]:
        key = _as_date(day).strftime(DATE_FORMAT)
        with self._lock.read():
            return list(self._load(key))

    def today_history(self) -> list[Detection]:
        return self.history_for_date(date.today())

    def period_history(self, start: date | str, end: date | str) -> list[Detection]:
        """All detections from start to end inclusive, sorted by timestamp."""
        start_d, end_d = _as_date(start), _as_date(end)
        out: list[Detection] = []
        with self._lock.read():
            day = start_d
            while day <= end_d:
                out.extend(self._load(day.strftime(DATE_FORMAT)))
                day += timedelta(days=1)
        out.sort(key=lambda d: d.timestamp)
        return out

    def week_history(self) -> list[Detection]:
        today = date.today()
        return self.period_history(today - timedelta(days=6), today)

    def month_history(self) -> list[Detection]:
        today = date.today()
        return self.period_history(today - timedelta(days=29), today)

    # -- deletion / retention ----------------------------------------------

    def delete_from_date(self, from_date: date | str) -> bool:
        """Delete every day file dated on or after from_date. False if any deletion failed."""
        cutoff = _as_date(from_date)
        return self._delete_where(lambda day: day >= cutoff, "deleted")

    def cleanup_old_files(self, today: date | None = None) -> int:
        """Delete files dated strictly before today - retention_days. Returns the number deleted."""
        if self.retention_days <= 0:
            return 0
        cutoff = (today or date.today()) - timedelta(days=self.retention_days)
        logger.info("Pruning history files before %s", cutoff.strftime(DATE_FORMAT))
        deleted: list[str] = []
        self._delete_where(lambda day: day < cutoff, "pruned", deleted)
        if deleted:
            logger.info("%d old history file(s) removed", len(deleted))
        log_structured("history_retention", cutoff=cutoff.strftime(DATE_FORMAT), deleted=len(deleted))
        return len(deleted)

    def _delete_where(self, predicate, verb: str, deleted: list[str] | None = None) -> bool:
        ok = True
        with self._lock.write():
            for day, path in self._history_files():
                if not predicate(day):
                    continue
                key = day.strftime(DATE_FORMAT)
                try:
                    path.unlink()
                except OSError as e:
                    logger.error("Could not delete %s: %s", path.name, e)
                    ok = False
                    continue
                self._cache.pop(key, None)
                if deleted is not None:
                    deleted.append(key)
                logger.debug("History file %s %s", path.name, verb)
        return ok

    # -- export / import ---------------------------------------------------

    def export_history(self, start: date | str, end: date | str, output: str | Path) -> bool:
        try:
            history = self.period_history(start, end)
            with open(output, "w", encoding="utf-8") as f:
                json.dump([d.to_dict() for d in history], f, ensure_ascii=False, indent=2)
        except OSError as e:
            logger.error("History export failed: %s", e)
            return False
        logger.info("History exported to %s: %d detection(s)", output, len(history))
        return True

    def import_history(self, source: str | Path) -> bool:
        try:
            with open(source, encoding="utf-8") as f:
                raw = json.load(f)
            detections = [Detection.from_dict(d) for d in raw]
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error("History import failed: %s", e)
            return False
        self.save_detections(detections)
        logger.info("History imported from %s: %d detection(s)", source, len(detections))
        return True

    def clear_cache(self) -> None:
        with self._lock.write():
            self._cache.clear()
        logger.info("History cache cleared")

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        """Run retention once, then schedule auto-save and the daily cleanup."""
        if self._scheduler is not None:
            return
        self.cleanup_old_files()
        scheduler = TaskScheduler("history", self.grace_sec)
        scheduler.schedule("auto-save", self.auto_save, self.auto_save_interval_sec,
                           initial_delay=self.auto_save_interval_sec)
        scheduler.schedule("cleanup", self.cleanup_old_files, self.cleanup_interval_sec,
                           initial_delay=self.cleanup_interval_sec)
        self._scheduler = scheduler

    def stop(self) -> None:
        scheduler, self._scheduler = self._scheduler, None
        if scheduler is not None:
            scheduler.shutdown()
        written = self.force_save()
        logger.info("History flushed on stop (%d detection(s))", written)

    def stats(self) -> dict[str, Any]:
        with self._lock.read():
            files = self._history_files()
            total = sum(p.stat().st_size for _, p in files)
            cached = len(self._cache)
        return {
            "buffered_detections": self.pending_count(),
            "history_files_count": len(files),
            "cached_dates": cached,
            "total_size_bytes": total,
            "total_size_mb": total / (1024.0 * 1024.0),
            "retention_days": self.retention_days,
            "auto_save_interval_seconds": self.auto_save_interval_sec,
        }
