"""Filters that decide which scraped samples are kept."""

from __future__ import annotations

from typing import Iterable

from edgeagent.config import MetricsAllowList
from edgeagent.scraper import METRIC_NAME_LABEL, Sample

_DEFAULT_SYSTEM_NAMES = (
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
    "node_network_receive_bytes_total",
    "node_network_transmit_bytes_total",
)

_DEFAULT_DATA_TRANSFER_NAMES = (
    "flotta_agent_datasync_files_transferred_counter",
    "flotta_agent_datasync_bytes_transferred_counter",
    "flotta_agent_datasync_time_transferred_counter",
    "flotta_agent_datasync_deleted_files_transferred_counter",
)


class PermissiveAllowList:
    """Lets every sample through."""

    def filter(self, samples: Iterable[Sample]) -> list[Sample]:
        """Return every sample, in order, as a new list."""
        return list(samples)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, PermissiveAllowList)

    def __hash__(self) -> int:
        return hash(PermissiveAllowList)

    def __repr__(self) -> str:
        return "PermissiveAllowList()"


class RestrictiveAllowList:
    """Keeps only samples whose metric name is on the list."""

    def __init__(self, names: Iterable[str] = ()) -> None:
        self.names = frozenset(names)

    def filter(self, samples: Iterable[Sample]) -> list[Sample]:
        return [s for s in samples if s.metric.get(METRIC_NAME_LABEL, "") in self.names]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RestrictiveAllowList):
            return NotImplemented
        return self.names == other.names

    def __hash__(self) -> int:
        return hash(self.names)

    def __repr__(self) -> str:
        return f"RestrictiveAllowList({sorted(self.names)!r})"


def default_system_allow_list() -> RestrictiveAllowList:
    return RestrictiveAllowList(_DEFAULT_SYSTEM_NAMES)


def default_data_transfer_allow_list() -> RestrictiveAllowList:
    return RestrictiveAllowList(_DEFAULT_DATA_TRANSFER_NAMES)


def new_restrictive_allow_list(allow_list: MetricsAllowList | None) -> RestrictiveAllowList:
    """Build a filter from a configured allow list; None allows nothing."""
    if allow_list is None:
        return RestrictiveAllowList()
    return RestrictiveAllowList(allow_list.names)