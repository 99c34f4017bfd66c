"""Periodic scraping of metric targets into a store."""

from __future__ import annotations

import logging
import queue
import threading
import time
from datetime import datetime
from typing import Iterable

from edgeagent.scraper import HTTPScraper, Sample

log = logging.getLogger(__name__)

METRIC_SOURCE = "metric-source"
SCRAPE_TIMEOUT = 15.0

_STOP = object()


def create_http_scraper(urls: Iterable[str]) -> list[HTTPScraper]:
    """Create one HTTP scraper per URL, skipping URLs that cannot be used."""
    scrapers = []
    for url in urls:
        try:
            scrapers.append(HTTPScraper(url))
        except ValueError as exc:
            log.error("cannot start HTTP scraper for %s: %s", url, exc)
    return scrapers


class TargetMetric:
    """Scrapes a set of endpoints every interval and stores the samples."""

    def __init__(self, name, interval, scrapers, store, allow_list) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = float(interval)
        self.scrapers = list(scrapers)
        self.store = store
        self.allow_list = allow_list
        self._lock = threading.Lock()
        self._triggers: queue.SimpleQueue = queue.SimpleQueue()
        self._stop_event: threading.Event | None = None
        self._latest_success_run: datetime | None = None

    def force_event(self) -> None:
        """Ask the running loop to scrape right away."""
        self._triggers.put(True)

    def latest_success_run(self) -> datetime | None:
        with self._lock:
            return self._latest_success_run

    def start(self) -> None:
        """Run the scraping loop in the calling thread until stopped."""
        log.info("started targetMetric for workload '%s'", self.name)
        with self._lock:
            if self._stop_event is not None:
                self._stop_event.set()
                self._triggers.put(_STOP)
            stop = threading.Event()
            self._stop_event = stop

        next_tick = time.monotonic() + self.interval
        while not stop.is_set():
            try:
                item = self._triggers.get(timeout=max(0.0, next_tick - time.monotonic()))
            except queue.Empty:
                next_tick += self.interval
                self._collect()
                continue
            if item is _STOP:
                continue
            self._collect()
        log.debug("time ticker for workload '%s' stopped", self.name)

    def _collect(self) -> None:
        log.debug("ticker run for workload '%s'", self.name)
        data = self.run(SCRAPE_TIMEOUT)
        try:
            self.store_data(data, {METRIC_SOURCE: self.name})
        except Exception as exc:  # the loop must survive storage failures
            log.error("cannot store target information: %s", exc)

    def store_data(self, data: list[Sample], labels: dict[str, str]) -> None:
        """Store the samples with the extra labels."""
        if self.store is None:
            raise RuntimeError("store interface is not set")
        self.store.add_vector(data, labels)
        with self._lock:
            self._latest_success_run = datetime.now()

    def is_stopped(self) -> bool:
        return self._stop_event is None

    def stop(self) -> None:
        with self._lock:
            if self._stop_event is not None:
                self._stop_event.set()
                self._triggers.put(_STOP)
            self._stop_event = None

    def run(self, timeout: float | None = None) -> list[Sample]:
        """Scrape all endpoints once and return the filtered samples."""
        result: list[Sample] = []
        for scraper in self.scrapers:
            try:
                data = scraper.scrape(timeout)
            except Exception as exc:  # one failing endpoint must not hide the others
                log.error("cannot get metrics for workload '%s': %s", self.name, exc)
                continue
            result.extend(self.allow_list.filter(data))
        return result


class MetricsDaemon:
    """Keeps one scraping target per name, each running in its own thread."""

    def __init__(self, store) -> None:
        self._targets: dict[str, TargetMetric] = {}
        self._lock = threading.Lock()
        self._store = store

    def get_targets(self) -> list[str]:
        with self._lock:
            return list(self._targets)

    def start(self) -> None:
        with self._lock:
            for target in self._targets.values():
                self._start_target(target)

    @staticmethod
    def _start_target(target: TargetMetric) -> None:
        threading.Thread(target=target.start, name=f"metrics-{target.name}", daemon=True).start()

    def add_target(self, target_name, scrapers, interval, allow_list) -> None:
        """Add or replace a scraping target and start it."""
        log.debug("added target '%s' with the following scrapers: '%s'", target_name, scrapers)
        target = TargetMetric(target_name, interval, scrapers, self._store, allow_list)
        self.delete_target(target_name)
        with self._lock:
            self._targets[target_name] = target
            self._start_target(target)

    def delete_target(self, target_name) -> None:
        with self._lock:
            target = self._targets.pop(target_name, None)
        if target is None:
            return
        log.debug("delete target '%s'", target_name)
        target.stop()