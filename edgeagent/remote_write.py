"""Pushes locally stored metrics to a Prometheus remote-write receiver."""

from __future__ import annotations

import copy
import fnmatch
import logging
import os
import ssl
import struct
import tempfile
import threading
import urllib.error
import urllib.parse
import urllib.request
from datetime import datetime, timedelta, timezone
from typing import Iterable, Iterator

from edgeagent.config import DeviceConfigurationMessage, MetricsReceiverConfiguration
from edgeagent.scraper import USER_AGENT
from edgeagent.tsdb import DataPoint, Series

log = logging.getLogger(__name__)

DEFAULT_WAIT_INTERVAL = 5 * 60.0
DEFAULT_REQUEST_DURATION = timedelta(hours=1)
DEFAULT_REQUEST_RETRY_INTERVAL = 10.0
LAST_WRITE_FILE_NAME = "metrics-lastwrite"
DEVICE_LABEL = "edgedeviceid"
SERVER_CA_FILE_PREFIX = "remote-write-ca-"
SERVER_CA_FILE_SUFFIX = ".pem"
SERVER_CA_FILE_NAME_PATTERN = SERVER_CA_FILE_PREFIX + "*" + SERVER_CA_FILE_SUFFIX
NUM_TRIES = 3

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ZERO = datetime(1, 1, 1, tzinfo=timezone.utc)
_MILLISECOND = timedelta(milliseconds=1)
_UINT64 = (1 << 64) - 1


class RemoteRecoverableError(Exception):
    """A write failure that is worth retrying."""


# --- snappy block format -------------------------------------------------


def _uvarint(value: int) -> bytes:
    value &= _UINT64
    out = bytearray()
    while value >= 0x80:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def _read_uvarint(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise ValueError("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7
        if shift >= 64:
            raise ValueError("varint too long")


def _emit_literal(out: bytearray, literal: bytes) -> None:
    if not literal:
        return
    n = len(literal) - 1
    if n < 60:
        out.append(n << 2)
    else:
        size = (n.bit_length() + 7) // 8
        out.append((59 + size) << 2)
        out += n.to_bytes(size, "little")
    out += literal


def _emit_copy(out: bytearray, offset: int, length: int) -> None:
    while length > 0:
        if 4 <= length <= 11 and offset < 2048:
            out.append(1 | ((length - 4) << 2) | ((offset >> 8) << 5))
            out.append(offset & 0xFF)
            return
        chunk = min(length, 64)
        out.append(2 | ((chunk - 1) << 2))
        out += offset.to_bytes(2, "little")
        length -= chunk


def snappy_encode(data: bytes) -> bytes:
    """Compress data in the snappy block format."""
    data = bytes(data)
    size = len(data)
    out = bytearray(_uvarint(size))
    table: dict[bytes, int] = {}
    pos = 0
    literal_start = 0
    while pos + 4 <= size:
        key = data[pos:pos + 4]
        candidate = table.get(key)
        table[key] = pos
        if candidate is None or pos - candidate > 0xFFFF:
            pos += 1
            continue
        length = 4
        while pos + length < size and data[candidate + length] == data[pos + length]:
            length += 1
        _emit_literal(out, data[literal_start:pos])
        _emit_copy(out, pos - candidate, length)
        pos += length
        literal_start = pos
    _emit_literal(out, data[literal_start:])
    return bytes(out)


def snappy_decode(data: bytes) -> bytes:
    """Decompress a snappy block; raises ValueError on corrupt input."""
    data = bytes(data)
    expected, pos = _read_uvarint(data, 0)
    out = bytearray()
    while pos < len(data):
        tag = data[pos]
        pos += 1
        kind = tag & 3
        if kind == 0:
            length = tag >> 2
            if length >= 60:
                extra = length - 59
                if pos + extra > len(data):
                    raise ValueError("corrupt snappy input")
                length = int.from_bytes(data[pos:pos + extra], "little")
                pos += extra
            length += 1
            if pos + length > len(data):
                raise ValueError("corrupt snappy input")
            out += data[pos:pos + length]
            pos += length
            continue
        if kind == 1:
            if pos + 1 > len(data):
                raise ValueError("corrupt snappy input")
            length = 4 + ((tag >> 2) & 7)
            offset = ((tag >> 5) << 8) | data[pos]
            pos += 1
        else:
            width = 2 if kind == 2 else 4
            if pos + width > len(data):
                raise ValueError("corrupt snappy input")
            length = (tag >> 2) + 1
            offset = int.from_bytes(data[pos:pos + width], "little")
            pos += width
        if offset == 0 or offset > len(out):
            raise ValueError("corrupt snappy input")
        start = len(out) - offset
        if offset >= length:
            out += out[start:start + length]
        else:
            for index in range(length):
                out.append(out[start + index])
    if len(out) != expected:
        raise ValueError("corrupt snappy input: length mismatch")
    return bytes(out)


# --- remote-write protobuf messages --------------------------------------


def _length_delimited(field_number: int, payload: bytes) -> bytes:
    return _uvarint((field_number << 3) | 2) + _uvarint(len(payload)) + payload


def _encode_sample(point: DataPoint) -> bytes:
    out = bytearray()
    if point.value != 0.0 or str(point.value)[0] == "-":
        out += b"\x09" + struct.pack("<d", point.value)
    if point.time != 0:
        out += b"\x10" + _uvarint(point.time)
    return bytes(out)


def _encode_label(name: str, value: str) -> bytes:
    out = bytearray()
    if name:
        out += _length_delimited(1, name.encode("utf-8"))
    if value:
        out += _length_delimited(2, value.encode("utf-8"))
    return bytes(out)


def encode_write_request(series: Iterable[Series]) -> bytes:
    """Serialize series as a remote-write WriteRequest message."""
    out = bytearray()
    for item in series:
        body = bytearray()
        for name, value in sorted(item.labels.items()):
            body += _length_delimited(1, _encode_label(name, value))
        for point in item.data_points:
            body += _length_delimited(2, _encode_sample(point))
        out += _length_delimited(1, bytes(body))
    return bytes(out)


def _fields(data: bytes) -> Iterator[tuple[int, int, object]]:
    pos = 0
    while pos < len(data):
        key, pos = _read_uvarint(data, pos)
        number, wire = key >> 3, key & 7
        if wire == 0:
            value, pos = _read_uvarint(data, pos)
        elif wire == 1:
            if pos + 8 > len(data):
                raise ValueError("truncated fixed64 field")
            value = data[pos:pos + 8]
            pos += 8
        elif wire == 2:
            length, pos = _read_uvarint(data, pos)
            if pos + length > len(data):
                raise ValueError("truncated length-delimited field")
            value = data[pos:pos + length]
            pos += length
        elif wire == 5:
            if pos + 4 > len(data):
                raise ValueError("truncated fixed32 field")
            value = data[pos:pos + 4]
            pos += 4
        else:
            raise ValueError(f"unsupported wire type {wire}")
        yield number, wire, value


def _signed(value: int) -> int:
    return value - (1 << 64) if value >= 1 << 63 else value


def decode_write_request(data: bytes) -> list[Series]:
    """Parse a WriteRequest message back into series."""
    result = []
    for number, wire, payload in _fields(data):
        if number != 1 or wire != 2:
            continue
        labels: dict[str, str] = {}
        points: list[DataPoint] = []
        for ts_number, ts_wire, ts_payload in _fields(payload):
            if ts_wire != 2:
                continue
            if ts_number == 1:
                name = value = ""
                for f_number, f_wire, f_payload in _fields(ts_payload):
                    if f_wire == 2 and f_number == 1:
                        name = f_payload.decode("utf-8")
                    elif f_wire == 2 and f_number == 2:
                        value = f_payload.decode("utf-8")
                labels[name] = value
            elif ts_number == 2:
                sample_value, sample_time = 0.0, 0
                for f_number, f_wire, f_payload in _fields(ts_payload):
                    if f_number == 1 and f_wire == 1:
                        sample_value = struct.unpack("<d", f_payload)[0]
                    elif f_number == 2 and f_wire == 0:
                        sample_time = _signed(f_payload)
                points.append(DataPoint(sample_time, sample_value))
        result.append(Series(labels, points))
    return result


# --- HTTP client ----------------------------------------------------------


class HTTPWriteClient:
    """Sends compressed write requests to a remote-write endpoint."""

    def __init__(self, url: str, timeout: float, ca_file: str | None = None,
                 user_agent: str = USER_AGENT) -> None:
        parts = urllib.parse.urlsplit(url)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValueError(f"invalid remote write URL {url!r}")
        self.url = url
        self.timeout = timeout
        self.ca_file = ca_file
        self.user_agent = user_agent

    def _context(self) -> ssl.SSLContext | None:
        if urllib.parse.urlsplit(self.url).scheme != "https":
            return None
        return ssl.create_default_context(cafile=self.ca_file or None)

    def write(self, data: bytes) -> None:
        """Post one request; server and network failures raise RemoteRecoverableError."""
        request = urllib.request.Request(
            self.url,
            data=bytes(data),
            method="POST",
            headers={
                "Content-Encoding": "snappy",
                "Content-Type": "application/x-protobuf",
                "User-Agent": self.user_agent,
                "X-Prometheus-Remote-Write-Version": "0.1.0",
            },
        )
        try:
            with urllib.request.urlopen(request, timeout=self.timeout, context=self._context()) as response:
                response.read()
        except urllib.error.HTTPError as exc:
            detail = exc.read(256).decode("utf-8", errors="replace").strip()
            message = f"server returned HTTP status {exc.code} {exc.reason}: {detail}"
            if exc.code >= 500:
                raise RemoteRecoverableError(message) from exc
            raise RuntimeError(message) from exc
        except (urllib.error.URLError, OSError) as exc:
            raise RemoteRecoverableError(str(exc)) from exc


# --- writer ---------------------------------------------------------------


def _to_unix_nanos(t: datetime) -> int:
    return (t - _EPOCH) // timedelta(microseconds=1) * 1000


def _from_unix_nanos(nanos: int) -> datetime:
    return _EPOCH + timedelta(microseconds=nanos // 1000)


def _or_zero(t: datetime | None) -> datetime:
    return _ZERO if t is None else t


def _chunk_series(series: list[Series], size: int) -> Iterator[list[Series]]:
    """Split series into requests holding at most size samples each."""
    request: list[Series] = []
    count = 0
    for item in series:
        index = 0
        current: Series | None = None
        while index < len(item.data_points):
            if current is None:
                current = Series(item.labels, [])
                request.append(current)
            take = min(size - count, len(item.data_points) - index)
            current.data_points.extend(item.data_points[index:index + take])
            index += take
            count += take
            if count == size:
                yield request
                request, count, current = [], 0, None
    if request:
        yield request


class RemoteWrite:
    """Periodically forwards new samples from the store to the configured receiver."""

    def __init__(self, data_dir: str, device_id: str, tsdb) -> None:
        self.device_id = device_id
        self.config: MetricsReceiverConfiguration | None = None
        self.last_write: datetime | None = None
        self.wait_interval = DEFAULT_WAIT_INTERVAL
        self.range_duration = DEFAULT_REQUEST_DURATION
        self.request_retry_interval = DEFAULT_REQUEST_RETRY_INTERVAL
        self._tsdb = tsdb
        self._data_dir = data_dir
        self._last_write_file = os.path.join(data_dir, LAST_WRITE_FILE_NAME)
        self._lock = threading.Lock()
        self._wakeup = threading.Event()
        self._client = None
        self._running = False
        self._current_ca_file = ""
        self._load_last_write()

    def _load_last_write(self) -> None:
        try:
            with open(self._last_write_file, encoding="utf-8") as source:
                content = source.read()
        except FileNotFoundError:
            return
        except OSError as exc:
            log.error("failed reading from file %s. error: %s", self._last_write_file, exc)
            return
        if not content:
            return
        try:
            self.last_write = _from_unix_nanos(int(content))
        except ValueError as exc:
            log.error("cannot parse metrics last write from file %s. error: %s", self._last_write_file, exc)

    def is_enabled(self) -> bool:
        return self._client is not None

    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def init(self, config: DeviceConfigurationMessage) -> None:
        self._remove_server_ca_files()
        self.update(config)

    def update(self, config: DeviceConfigurationMessage) -> None:
        """Apply the receiver configuration; raises ValueError when it is invalid."""
        with self._lock:
            metrics = config.metrics
            new_config = metrics.receiver if metrics is not None else None
            if new_config == self.config:
                return

            disabled = new_config is None or not new_config.url
            if disabled:
                self._client = None
                self._current_ca_file = ""
                self._remove_server_ca_files()
                self._wakeup.set()
            else:
                self._apply_config(new_config)

            if not disabled and not self._running:
                threading.Thread(target=self._write_routine, name="metrics-remote-write", daemon=True).start()
                self._running = True

            self.config = copy.deepcopy(new_config)

    def _apply_config(self, new_config: MetricsReceiverConfiguration) -> None:
        try:
            urllib.parse.urlsplit(new_config.url)
        except ValueError as exc:
            log.error("metrics remote write configuration is invalid. Can not parse URL %s. Error: %s",
                      new_config.url, exc)
            raise
        if new_config.timeout_seconds <= 0:
            raise ValueError("metrics remote write configuration is invalid. "
                             "TimeoutSeconds has to greater than 0")
        if new_config.request_num_samples <= 0:
            raise ValueError("metrics remote write configuration is invalid. "
                             "RequestNumSamples has to greater than 0")

        ca_file = ""
        if new_config.ca_cert:
            # a fresh file each time, so a client still holding the old one is unaffected
            fd, ca_file = tempfile.mkstemp(prefix=SERVER_CA_FILE_PREFIX, suffix=SERVER_CA_FILE_SUFFIX,
                                           dir=self._data_dir or None)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as target:
                    target.write(new_config.ca_cert)
                    target.flush()
                    os.fsync(target.fileno())
            except OSError:
                log.error("cannot write to metrics remote write server CA file %s", ca_file)
                raise

        try:
            client = HTTPWriteClient(new_config.url, float(new_config.timeout_seconds), ca_file or None)
        except ValueError as exc:
            if ca_file:
                os.remove(ca_file)
            log.error("failed creating metrics remote write client: %s", exc)
            raise

        if self._current_ca_file:
            try:
                os.remove(self._current_ca_file)
            except OSError as exc:
                log.error("failed removing file %s with error %s", self._current_ca_file, exc)

        self._client = client
        self._current_ca_file = ca_file

    def _write_routine(self) -> None:
        log.info("metric remote writer started since '%s' last write", self.last_write)
        while True:
            with self._lock:
                if self._client is None:
                    self._running = False
                    log.info("metrics remote write stopped")
                    return
                client = self._client
                request_num_samples = self.config.request_num_samples
            self.write(client, request_num_samples)
            self._wakeup.wait(self.wait_interval)
            self._wakeup.clear()

    def write(self, client, request_num_samples: int) -> None:
        """Write all pending metrics; stops when none are left or a range keeps failing."""
        had_empty_range = False
        while True:
            max_tsdb = _or_zero(self._tsdb.max_time())
            last_write = _or_zero(self.last_write)
            if max_tsdb <= last_write:
                return

            range_start = last_write + _MILLISECOND
            try:
                min_tsdb = _or_zero(self._tsdb.min_time())
            except Exception as exc:
                log.error("failed reading TSDB min: %s", exc)
                return

            if had_empty_range:
                range_start = self._skip_empty_ranges(range_start)
            elif range_start < min_tsdb:
                range_start = min_tsdb

            range_end = min(range_start + self.range_duration, max_tsdb)
            log.debug("going to write metrics range %s-%s. TSDB min max: %s-%s",
                      range_start, range_end, min_tsdb, max_tsdb)

            try:
                series = self._tsdb.get_metrics_for_time_range(range_start, range_end, True) or []
            except Exception as exc:
                log.error("failed reading metrics for range %s-%s: %s", range_start, range_end, exc)
                return

            for item in series:
                item.labels[DEVICE_LABEL] = self.device_id

            if series:
                had_empty_range = False
                if not self._write_range(series, client, request_num_samples):
                    return
                log.info("wrote metrics range %s-%s", range_start, range_end)
            else:
                had_empty_range = True
                log.info("metrics range is empty")

            self.last_write = range_end
            self._persist_last_write()

    def _persist_last_write(self) -> None:
        try:
            fd = os.open(self._last_write_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as target:
                target.write(str(_to_unix_nanos(self.last_write)))
        except OSError as exc:
            log.error("failed writing to file %s. error: %s", self._last_write_file, exc)

    def _write_range(self, series: list[Series], client, request_num_samples: int) -> bool:
        """Send the range in requests; False means give up and retry later."""
        return all(self._write_request(request, client)
                   for request in _chunk_series(series, request_num_samples))

    def _write_request(self, series: list[Series], client) -> bool:
        payload = snappy_encode(encode_write_request(series))
        log.debug("sending write request with %d series", len(series))
        for attempt in range(1, NUM_TRIES + 1):
            try:
                client.write(payload)
                return True
            except RemoteRecoverableError as exc:
                log.error("sending metrics remote write request failed. try No.%d. error: %s", attempt, exc)
                if attempt == NUM_TRIES:
                    log.error("aborting metrics remote write request due to too many tries")
                    return False
                threading.Event().wait(self.request_retry_interval)
            except Exception as exc:
                # not recoverable (e.g. samples already written): skip this request
                log.error("sending metrics remote write request failed. try No.%d. error: %s", attempt, exc)
                return True
        return True

    def _remove_server_ca_files(self) -> None:
        try:
            names = os.listdir(self._data_dir)
        except OSError:
            log.error("cannot read %s", self._data_dir)
            return
        for name in names:
            if fnmatch.fnmatchcase(name, SERVER_CA_FILE_NAME_PATTERN):
                try:
                    os.remove(os.path.join(self._data_dir, name))
                except OSError:
                    pass

    def _skip_empty_ranges(self, time_val: datetime) -> datetime:
        """Move time_val forward to the closest block or head that holds data."""
        result = _ZERO
        for block in self._tsdb.blocks():
            if time_val > _or_zero(block.max_time):
                continue
            block_min = _or_zero(block.min_time)
            result = block_min if time_val < block_min else time_val
            break
        if result == _ZERO:
            result = _or_zero(self._tsdb.head_min_time())
            if time_val > result:
                result = time_val
        return result