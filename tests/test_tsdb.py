import random
import time as real_time
from datetime import datetime, timedelta, timezone
from unittest import mock

import pytest

from edgeagent.config import DeviceConfigurationMessage, DeviceConfiguration, MetricsConfiguration, MetricsRetention
from edgeagent.scraper import Sample
from edgeagent.tsdb import (
    DEFAULT_MAX_BYTES,
    DEFAULT_RETENTION_DURATION,
    TSDB,
    Block,
    DataPoint,
    TSDBError,
    from_db_time,
    to_db_time,
)

HOUR = 3600 * 1000
BASE = 7_200_000 * 140_000


@pytest.fixture
def db(tmp_path):
    store = TSDB(str(tmp_path))
    yield store
    store.close()


def at(*millis):
    return [m * 1_000_000 for m in millis]


def test_record_and_retrieve(db):
    value1 = random.random() * 100
    series_one = {"labelA": "a", "labelB": "b"}
    two_value1 = random.random() * 100
    series_two = {"label1": "1", "label2": "2"}
    two_value2 = random.random() * 100
    before = datetime.now()

    db.add_metric(value1, series_one)
    db.add_metric(two_value1, series_two)
    real_time.sleep(0.002)
    db.add_metric(two_value2, series_two)

    result = db.get_metrics_for_time_range(before, datetime.now(), False)
    assert len(result) == 2
    assert result[0].labels == series_one
    assert [p.value for p in result[0].data_points] == [value1]
    assert result[1].labels == series_two
    assert [p.value for p in result[1].data_points] == [two_value1, two_value2]


def test_sorted_query_orders_by_labels(db):
    with mock.patch("edgeagent.tsdb.time") as fake:
        fake.time_ns.side_effect = at(BASE, BASE + 1)
        db.add_metric(1.0, {"labelA": "a"})
        db.add_metric(2.0, {"label1": "1"})
    start, end = from_db_time(BASE), from_db_time(BASE + 1)
    assert [s.labels for s in db.get_metrics_for_time_range(start, end, True)] == [{"label1": "1"}, {"labelA": "a"}]
    assert [s.labels for s in db.get_metrics_for_time_range(start, end, False)] == [{"labelA": "a"}, {"label1": "1"}]


def test_range_is_inclusive_and_filters(db):
    with mock.patch("edgeagent.tsdb.time") as fake:
        fake.time_ns.side_effect = at(BASE, BASE + 10, BASE + 20)
        for value in (1.0, 2.0, 3.0):
            db.add_metric(value, {"a": "b"})
    result = db.get_metrics_for_time_range(from_db_time(BASE + 10), from_db_time(BASE + 20))
    assert result[0].data_points == [DataPoint(BASE + 10, 2.0), DataPoint(BASE + 20, 3.0)]
    assert db.get_metrics_for_time_range(from_db_time(BASE + 30), from_db_time(BASE + 40)) == []


def test_empty_labels_rejected(db):
    with pytest.raises(TSDBError):
        db.add_metric(1.0, {})


def test_duplicate_timestamp_rejected(db):
    with mock.patch("edgeagent.tsdb.time") as fake:
        fake.time_ns.side_effect = at(BASE, BASE)
        db.add_metric(1.0, {"a": "b"})
        with pytest.raises(TSDBError):
            db.add_metric(2.0, {"a": "b"})


def test_add_vector_merges_labels(db):
    db.add_vector([Sample({"__name__": "m", "x": "sample"}, 4.0)], {"metric-source": "wrk", "x": "extra"})
    now = datetime.now(timezone.utc)
    result = db.get_metrics_for_time_range(now - timedelta(minutes=1), now)
    assert result[0].labels == {"__name__": "m", "x": "sample", "metric-source": "wrk"}
    assert result[0].data_points[0].value == 4.0


def test_add_vector_collects_errors(db):
    with pytest.raises(TSDBError) as info:
        db.add_vector([Sample({}, 1.0), Sample({}, 2.0)], {})
    assert len(info.value.errors) == 2


def test_closed_store_rejects_writes(db):
    db.close()
    with pytest.raises(TSDBError):
        db.add_metric(1.0, {"a": "b"})


def test_empty_store_times(db):
    assert db.min_time() is None
    assert db.max_time() is None
    assert db.blocks() == []


def test_blocks_and_head(db):
    with mock.patch("edgeagent.tsdb.time") as fake:
        fake.time_ns.side_effect = at(BASE, BASE + HOUR, BASE + 3 * HOUR + HOUR // 2)
        for value in (1.0, 2.0, 3.0):
            db.add_metric(value, {"a": "b"})
    assert db.blocks() == [Block(from_db_time(BASE), from_db_time(BASE + 2 * HOUR))]
    assert db.head_min_time() == from_db_time(BASE + 2 * HOUR)
    assert db.min_time() == from_db_time(BASE)
    assert db.max_time() == from_db_time(BASE + 3 * HOUR + HOUR // 2)


def test_retention_update_drops_old_blocks(db):
    with mock.patch("edgeagent.tsdb.time") as fake:
        fake.time_ns.side_effect = at(BASE, BASE + HOUR, BASE + 3 * HOUR + HOUR // 2, BASE + 5 * HOUR + HOUR // 2)
        for value in (1.0, 2.0, 3.0, 4.0):
            db.add_metric(value, {"a": "b"})
    assert len(db.blocks()) == 2
    config = DeviceConfigurationMessage(
        configuration=DeviceConfiguration(metrics=MetricsConfiguration(retention=MetricsRetention(max_mib=0, max_hours=1)))
    )
    db.update(config)
    assert db.retention_duration == HOUR
    assert db.max_bytes == 0
    assert db.blocks() == [Block(from_db_time(BASE + 2 * HOUR), from_db_time(BASE + 4 * HOUR))]
    result = db.get_metrics_for_time_range(from_db_time(BASE), from_db_time(BASE + 6 * HOUR))
    assert [p.value for p in result[0].data_points] == [3.0, 4.0]


def test_update_without_retention_keeps_defaults(db):
    db.update(DeviceConfigurationMessage(configuration=DeviceConfiguration()))
    assert db.retention_duration == DEFAULT_RETENTION_DURATION
    assert db.max_bytes == DEFAULT_MAX_BYTES


def test_data_survives_reopen(tmp_path):
    store = TSDB(str(tmp_path))
    with mock.patch("edgeagent.tsdb.time") as fake:
        fake.time_ns.side_effect = at(BASE)
        store.add_metric(7.5, {"a": "b"})
    store.close()
    reopened = TSDB(str(tmp_path))
    result = reopened.get_metrics_for_time_range(from_db_time(BASE), from_db_time(BASE))
    assert result[0].data_points == [DataPoint(BASE, 7.5)]
    reopened.close()


def test_deregister_removes_directory(tmp_path):
    store = TSDB(str(tmp_path))
    store.deregister()
    assert not (tmp_path / "metrics").exists()


@pytest.mark.parametrize("value", [0, -(1 << 63), (1 << 63) - 1])
def test_from_db_time_unset_values(value):
    assert from_db_time(value) is None


def test_db_time_round_trip():
    moment = datetime(2022, 2, 8, 12, 16, 1, 123000, tzinfo=timezone.utc)
    assert to_db_time(moment) == 1644322561123
    assert from_db_time(to_db_time(moment)) == moment