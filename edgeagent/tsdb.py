"""A small local time-series store for scraped metrics."""

from __future__ import annotations

import json
import logging
import os
import shutil
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable, Mapping

from edgeagent.config import DeviceConfigurationMessage
from edgeagent.scraper import Sample

log = logging.getLogger(__name__)

MILLIS_IN_HOUR = 60 * 60 * 1000
DEFAULT_RETENTION_DURATION = 7 * 24 * MILLIS_IN_HOUR
"""Seven days of data retention, in milliseconds."""
DEFAULT_MAX_BYTES = 0
"""No limit on the size of stored data."""
BLOCK_RANGE = 2 * MILLIS_IN_HOUR

_MIN_INT64 = -(1 << 63)
_MAX_INT64 = (1 << 63) - 1
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_SAMPLES_FILE = "samples.jsonl"
_BYTES_PER_SAMPLE = 16

_LabelKey = tuple[tuple[str, str], ...]


class TSDBError(Exception):
    """Raised when the store rejects an operation."""

    def __init__(self, message: str, errors: Iterable[Exception] = ()) -> None:
        super().__init__(message)
        self.errors = list(errors)


@dataclass(frozen=True)
class DataPoint:
    """One value at a time in milliseconds since the epoch."""

    time: int = 0
    value: float = 0.0


@dataclass
class Series:
    """All data points of one label set."""

    labels: dict[str, str]
    data_points: list[DataPoint] = field(default_factory=list)


@dataclass(frozen=True)
class Block:
    """Time span of a compacted block of data."""

    min_time: datetime | None
    max_time: datetime | None


def to_db_time(t: datetime) -> int:
    """Milliseconds since the epoch; naive datetimes are taken as local time."""
    if t.tzinfo is None:
        t = t.astimezone()
    return (t - _EPOCH) // timedelta(milliseconds=1)


def from_db_time(t: int) -> datetime | None:
    """The datetime of a store timestamp, or None for the unset markers."""
    if t in (0, _MIN_INT64, _MAX_INT64):
        return None
    return _EPOCH + timedelta(milliseconds=t)


def _merge_labels(metric: Mapping[str, str], labels: Mapping[str, str]) -> dict[str, str]:
    merged = dict(labels)
    merged.update(metric)
    return merged


class TSDB:
    """Stores metric samples on disk under ``<data_dir>/metrics``."""

    def __init__(self, data_dir: str) -> None:
        self.directory = os.path.join(data_dir, "metrics")
        try:
            os.makedirs(self.directory, mode=0o750, exist_ok=True)
        except OSError as exc:
            log.error("%s", exc)
            raise TSDBError(f"cannot create directory: {exc}") from exc
        self.retention_duration = DEFAULT_RETENTION_DURATION
        self.max_bytes = DEFAULT_MAX_BYTES
        self._lock = threading.RLock()
        self._handle = None
        self._open()

    def __str__(self) -> str:
        return "metrics storage"

    @property
    def _path(self) -> str:
        return os.path.join(self.directory, _SAMPLES_FILE)

    def _open(self) -> None:
        self._series: dict[_LabelKey, list[DataPoint]] = {}
        self._blocks: list[tuple[int, int]] = []
        self._head_min = _MAX_INT64
        self._head_max = _MIN_INT64
        if os.path.exists(self._path):
            with open(self._path, encoding="utf-8") as source:
                for line in source:
                    if not line.strip():
                        continue
                    try:
                        record = json.loads(line)
                        self._append(dict(record["labels"]), int(record["t"]), float(record["v"]))
                    except (ValueError, KeyError, TypeError, TSDBError) as exc:
                        log.warning("skipping stored sample: %s", exc)
        if self._apply_retention():
            self._rewrite()
        self._handle = open(self._path, "a", encoding="utf-8")
        self._closed = False

    def _check_open(self) -> None:
        if self._closed:
            raise TSDBError("metrics storage is closed")

    def _append(self, labels: dict[str, str], t: int, value: float) -> bool:
        if not labels or any(not name for name in labels):
            raise TSDBError("empty labelset")
        if self._blocks and t < self._head_min:
            raise TSDBError("out of bounds")
        key = tuple(sorted(labels.items()))
        points = self._series.get(key)
        if points:
            last = points[-1]
            if t < last.time:
                raise TSDBError("out of order sample")
            if t == last.time:
                if last.value == value or (last.value != last.value and value != value):
                    return False
                raise TSDBError("duplicate sample for timestamp")
        self._series.setdefault(key, []).append(DataPoint(t, value))
        self._head_min = min(self._head_min, t)
        self._head_max = max(self._head_max, t)
        self._compact()
        return True

    def _count(self, low: int, high: int) -> int:
        return sum(1 for points in self._series.values() for p in points if low <= p.time < high)

    def _compact(self) -> None:
        while self._head_max - self._head_min > BLOCK_RANGE * 3 // 2:
            mint = self._head_min
            maxt = (mint // BLOCK_RANGE) * BLOCK_RANGE + BLOCK_RANGE
            if self._count(mint, maxt):
                self._blocks.append((mint, maxt))
            self._head_min = maxt

    def _apply_retention(self) -> bool:
        doomed: set[tuple[int, int]] = set()
        if self.retention_duration > 0 and self._blocks:
            newest = self._blocks[-1][1]
            doomed.update(b for b in self._blocks if newest - b[1] > self.retention_duration)
        if self.max_bytes > 0:
            size = self._count(self._head_min, _MAX_INT64) * _BYTES_PER_SAMPLE
            for index, block in enumerate(reversed(self._blocks)):
                size += self._count(*block) * _BYTES_PER_SAMPLE
                if size > self.max_bytes:
                    doomed.update(self._blocks[: len(self._blocks) - index])
                    break
        if not doomed:
            return False
        for key in list(self._series):
            kept = [p for p in self._series[key] if not any(lo <= p.time < hi for lo, hi in doomed)]
            if kept:
                self._series[key] = kept
            else:
                del self._series[key]
        self._blocks = [b for b in self._blocks if b not in doomed]
        return True

    def _rewrite(self) -> None:
        records = sorted(
            (p.time, order, key, p.value)
            for order, (key, points) in enumerate(self._series.items())
            for p in points
        )
        if self._handle is not None:
            self._handle.close()
            self._handle = None
        tmp = self._path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as target:
            for t, _, key, value in records:
                target.write(json.dumps({"labels": dict(key), "t": t, "v": value}) + "\n")
        os.replace(tmp, self._path)

    def _write_record(self, labels: dict[str, str], t: int, value: float) -> None:
        if self._handle is None:
            self._handle = open(self._path, "a", encoding="utf-8")
        self._handle.write(json.dumps({"labels": labels, "t": t, "v": value}) + "\n")
        self._handle.flush()

    def deregister(self) -> None:
        """Close the store and remove its data."""
        self.close()
        shutil.rmtree(self.directory)

    def close(self) -> None:
        with self._lock:
            if self._handle is not None:
                self._handle.close()
                self._handle = None
            self._closed = True

    def get_metrics_for_time_range(self, t_min: datetime, t_max: datetime, sort: bool = False) -> list[Series]:
        """All series with their points between t_min and t_max, both inclusive."""
        log.debug("Getting metrics for %s - %s", t_min, t_max)
        mint, maxt = to_db_time(t_min), to_db_time(t_max)
        with self._lock:
            self._check_open()
            found = []
            for key, points in self._series.items():
                selected = [p for p in points if mint <= p.time <= maxt]
                if selected:
                    found.append((key, Series(dict(key), selected)))
        if sort:
            found.sort(key=lambda item: item[0])
        return [series for _, series in found]

    def add_metric(self, value: float, labels: Mapping[str, str]) -> None:
        """Record a value for the label set at the current time."""
        with self._lock:
            self._check_open()
            t = time.time_ns() // 1_000_000
            labels = dict(labels)
            value = float(value)
            if self._append(labels, t, value):
                self._write_record(labels, t, value)
            if self._apply_retention():
                self._rewrite()

    def add_vector(self, data: Iterable[Sample], labels: Mapping[str, str]) -> None:
        """Record every sample with the extra labels; sample labels take precedence."""
        errors = []
        for sample in data:
            try:
                self.add_metric(sample.value, _merge_labels(sample.metric, labels))
            except TSDBError as exc:
                log.error("cannot update metric: %s", exc)
                errors.append(exc)
        if errors:
            raise TSDBError("; ".join(str(e) for e in errors), errors)

    def init(self, config: DeviceConfigurationMessage) -> None:
        self.update(config)

    def update(self, config: DeviceConfigurationMessage) -> None:
        """Apply the configured retention, reopening the store if it changed."""
        metrics = config.metrics
        max_bytes = DEFAULT_MAX_BYTES
        retention = DEFAULT_RETENTION_DURATION
        if metrics is not None and metrics.retention is not None:
            max_bytes = metrics.retention.max_mib * 1024 * 1024
            retention = metrics.retention.max_hours * MILLIS_IN_HOUR
        if retention == self.retention_duration and max_bytes == self.max_bytes:
            return
        log.info(
            "Metrics retention changed. MaxBytes [%s -> %s] RetentionDuration: [%s -> %s]",
            self.max_bytes, max_bytes, self.retention_duration, retention,
        )
        with self._lock:
            self.close()
            self.max_bytes = max_bytes
            self.retention_duration = retention
            self._open()

    def min_time(self) -> datetime | None:
        with self._lock:
            if self._blocks:
                return from_db_time(self._blocks[0][0])
            return from_db_time(self._head_min)

    def max_time(self) -> datetime | None:
        with self._lock:
            return from_db_time(self._head_max)

    def head_min_time(self) -> datetime | None:
        with self._lock:
            return from_db_time(self._head_min)

    def blocks(self) -> list[Block]:
        with self._lock:
            return [Block(from_db_time(lo), from_db_time(hi)) for lo, hi in self._blocks]