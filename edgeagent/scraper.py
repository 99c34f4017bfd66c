"""Metric scrapers: Prometheus text endpoints and in-process counter registries."""

from __future__ import annotations

import gzip
import logging
import re
import threading
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field

log = logging.getLogger(__name__)

METRIC_NAME_LABEL = "__name__"
ACCEPT_HEADER = (
    "application/openmetrics-text; version=0.0.1,"
    "text/plain;version=0.0.4;q=0.5,*/*;q=0.1"
)
USER_AGENT = "edge-device-worker"

_METRIC_NAME = re.compile(r"[a-zA-Z_:][a-zA-Z0-9_:]*")
_LABEL_NAME = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")
_ESCAPES = {"\\": "\\", '"': '"', "n": "\n"}


def now_millis() -> int:
    """Current time in milliseconds since the epoch."""
    return int(time.time() * 1000)


class ScrapeError(Exception):
    """Raised when metrics cannot be fetched or decoded."""


@dataclass
class Sample:
    """A single metric value with its labels and timestamp in milliseconds."""

    metric: dict[str, str]
    value: float = 0.0
    timestamp: int = 0

    @property
    def name(self) -> str:
        return self.metric.get(METRIC_NAME_LABEL, "")


@dataclass
class CounterMetric:
    """One labelled series of a counter."""

    labels: dict[str, str]
    value: float = 0.0


@dataclass
class MetricFamily:
    """All series of one counter name."""

    name: str
    metrics: list[CounterMetric] = field(default_factory=list)


class Registry:
    """A thread-safe registry of counters that can be gathered."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, dict[tuple[tuple[str, str], ...], float]] = {}

    def add_counter(self, name: str, labels: dict[str, str], amount: float) -> None:
        """Increase the counter series identified by name and labels."""
        if amount < 0:
            raise ValueError("counter cannot decrease in value")
        key = tuple(sorted(labels.items()))
        with self._lock:
            series = self._counters.setdefault(name, {})
            series[key] = series.get(key, 0.0) + amount

    def gather(self) -> list[MetricFamily]:
        """Return all families sorted by name, series sorted by labels."""
        with self._lock:
            return [
                MetricFamily(
                    name,
                    [CounterMetric(dict(key), value) for key, value in sorted(series.items())],
                )
                for name, series in sorted(self._counters.items())
            ]


def _parse_labels(line: str, pos: int) -> tuple[dict[str, str], int]:
    labels: dict[str, str] = {}
    pos += 1  # skip "{"
    while True:
        while pos < len(line) and line[pos] in " \t":
            pos += 1
        if pos < len(line) and line[pos] == "}":
            return labels, pos + 1
        match = _LABEL_NAME.match(line, pos)
        if match is None:
            raise ScrapeError(f"invalid label name in line {line!r}")
        name = match.group()
        pos = match.end()
        if line[pos:pos + 2] != '="':
            raise ScrapeError(f"expected '=\"' after label name in line {line!r}")
        pos += 2
        value = []
        while True:
            if pos >= len(line):
                raise ScrapeError(f"unterminated label value in line {line!r}")
            char = line[pos]
            if char == '"':
                pos += 1
                break
            if char == "\\":
                escaped = line[pos + 1:pos + 2]
                if escaped not in _ESCAPES:
                    raise ScrapeError(f"invalid escape in line {line!r}")
                value.append(_ESCAPES[escaped])
                pos += 2
            else:
                value.append(char)
                pos += 1
        labels[name] = "".join(value)
        while pos < len(line) and line[pos] in " \t":
            pos += 1
        if pos < len(line) and line[pos] == ",":
            pos += 1
        elif pos < len(line) and line[pos] != "}":
            raise ScrapeError(f"expected ',' or '}}' in line {line!r}")


def _parse_sample(line: str, default_timestamp: int) -> Sample:
    match = _METRIC_NAME.match(line)
    if match is None:
        raise ScrapeError(f"invalid metric name in line {line!r}")
    metric = {METRIC_NAME_LABEL: match.group()}
    pos = match.end()
    if pos < len(line) and line[pos] == "{":
        labels, pos = _parse_labels(line, pos)
        labels.pop(METRIC_NAME_LABEL, None)
        metric.update(labels)
    rest = line[pos:]
    if rest and rest[0] not in " \t":
        raise ScrapeError(f"unexpected text after metric name in line {line!r}")
    fields = rest.split()
    if len(fields) not in (1, 2):
        raise ScrapeError(f"expected value and optional timestamp in line {line!r}")
    try:
        value = float(fields[0])
        timestamp = int(fields[1]) if len(fields) == 2 else default_timestamp
    except ValueError as exc:
        raise ScrapeError(f"invalid number in line {line!r}") from exc
    return Sample(metric, value, timestamp)


def decode_samples(data: bytes | str, content_type: str) -> list[Sample]:
    """Decode a Prometheus text exposition into samples."""
    if "application/vnd.google.protobuf" in (content_type or ""):
        raise ScrapeError(f"unsupported content type {content_type!r}")
    text = data.decode("utf-8", errors="replace") if isinstance(data, bytes) else data
    default_timestamp = now_millis()
    samples = []
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        samples.append(_parse_sample(line, default_timestamp))
    return samples


class HTTPScraper:
    """Scrapes a Prometheus endpoint over HTTP."""

    def __init__(self, url: str) -> None:
        self.url = url
        self._request = urllib.request.Request(
            url,
            method="GET",
            headers={
                "Accept": ACCEPT_HEADER,
                "Accept-Encoding": "gzip",
                "User-Agent": USER_AGENT,
            },
        )

    def scrape(self, timeout: float | None = None) -> list[Sample]:
        """Fetch and decode the endpoint's metrics."""
        try:
            with urllib.request.urlopen(self._request, timeout=timeout) as response:
                if response.status != 200:
                    raise ScrapeError(f"server returned HTTP status {response.status} {response.reason}")
                body = response.read()
                encoding = response.headers.get("Content-Encoding", "")
                content_type = response.headers.get("Content-Type", "")
        except urllib.error.HTTPError as exc:
            raise ScrapeError(f"server returned HTTP status {exc.code} {exc.reason}") from exc
        except (urllib.error.URLError, OSError) as exc:
            raise ScrapeError(str(exc)) from exc
        if encoding == "gzip":
            try:
                body = gzip.decompress(body)
            except (OSError, EOFError) as exc:
                raise ScrapeError(f"cannot decompress response: {exc}") from exc
        return decode_samples(body, content_type)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, HTTPScraper):
            return NotImplemented
        return self.url == other.url

    def __hash__(self) -> int:
        return hash(self.url)

    def __repr__(self) -> str:
        return f"HTTPScraper({self.url!r})"

    def __str__(self) -> str:
        return f"HTTP scraper for URL: {self.url}"


class ObjectScraper:
    """Scrapes counters from an in-process gatherer."""

    def __init__(self, gatherer) -> None:
        self.gatherer = gatherer

    def scrape(self, timeout: float | None = None) -> list[Sample]:
        samples = []
        for family in self.gatherer.gather():
            for item in family.metrics:
                metric = {METRIC_NAME_LABEL: family.name}
                metric.update(item.labels)
                samples.append(Sample(metric, float(item.value), now_millis()))
        return samples

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ObjectScraper):
            return NotImplemented
        return self.gatherer is other.gatherer

    def __hash__(self) -> int:
        return id(self.gatherer)

    def __str__(self) -> str:
        return "Prometheus object scraper"