import uuid

import pytest

from edgeagent.allow_list import (
    PermissiveAllowList,
    default_system_allow_list,
    new_restrictive_allow_list,
)
from edgeagent.config import MetricsAllowList
from edgeagent.scraper import Sample


def new_sample(name):
    return Sample({"__name__": name})


def with_label(sample, name, value):
    sample.metric[name] = value
    return sample


def common_input():
    return [new_sample("a"), with_label(new_sample("b"), "foo", "bar"), new_sample("c")]


@pytest.mark.parametrize(
    "allowed, samples, expected",
    [
        (["a", "b", "c"], [], []),
        (["a", "b", "c"], common_input(), common_input()),
        (["a", "b", "c", "x", "y", "z"], common_input(), common_input()),
        (["b", "c"], common_input(), [with_label(new_sample("b"), "foo", "bar"), new_sample("c")]),
        (["x", "y", "z"], common_input(), []),
        ([], common_input(), []),
    ],
)
def test_restrictive_filter(allowed, samples, expected):
    flt = new_restrictive_allow_list(MetricsAllowList(names=allowed))
    assert flt.filter(samples) == expected


@pytest.mark.parametrize(
    "name",
    [
        "node_cpu_frequency_hertz",
        "node_cpu_scaling_frequency_min_hertz",
        "node_cpu_scaling_frequency_hertz",
        "node_cpu_scaling_frequency_max_hertz",
        "node_disk_read_bytes_total",
        "node_disk_written_bytes_total",
        "node_memory_MemAvailable_bytes",
        "node_memory_MemFree_bytes",
        "node_memory_MemTotal_bytes",
        "node_network_info",
    ],
)
def test_default_system_passes_defaults(name):
    samples = [new_sample(name)]
    assert default_system_allow_list().filter(samples) == samples


def test_default_system_blocks_other():
    assert default_system_allow_list().filter([new_sample(str(uuid.uuid4()))]) == []


@pytest.mark.parametrize("samples", [[], common_input()])
def test_permissive_passes_everything(samples):
    assert PermissiveAllowList().filter(samples) == samples


def test_none_allow_list_equals_empty():
    assert new_restrictive_allow_list(None) == new_restrictive_allow_list(MetricsAllowList(names=[]))
    assert new_restrictive_allow_list(None).filter(common_input()) == []