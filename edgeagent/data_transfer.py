"""Scraping target for the data transfer counters."""

from __future__ import annotations

import copy
import logging

from edgeagent.allow_list import default_data_transfer_allow_list, new_restrictive_allow_list
from edgeagent.config import ComponentMetricsConfiguration, DeviceConfiguration, DeviceConfigurationMessage
from edgeagent.scraper import ObjectScraper, Registry

log = logging.getLogger(__name__)

DATA_TRANSFER_TARGET_NAME = "data transfer"
DEFAULT_DATA_TRANSFER_METRICS_SCRAPING_INTERVAL = 60


def retrieve_configuration_or_default(config: DeviceConfiguration | None) -> ComponentMetricsConfiguration:
    """The data transfer metrics settings, with defaults filled in."""
    if config is None or config.metrics is None or config.metrics.data_transfer is None:
        return ComponentMetricsConfiguration(interval=DEFAULT_DATA_TRANSFER_METRICS_SCRAPING_INTERVAL)
    result = copy.deepcopy(config.metrics.data_transfer)
    if result.interval == 0:
        result.interval = DEFAULT_DATA_TRANSFER_METRICS_SCRAPING_INTERVAL
    return result


def create_object_scraper(gatherer) -> list[ObjectScraper]:
    return [ObjectScraper(gatherer)]


class DataTransferMetrics:
    """Keeps the data transfer scraping target in line with the configuration."""

    def __init__(self, daemon, gatherer=None) -> None:
        self._daemon = daemon
        self.gatherer = gatherer if gatherer is not None else Registry()
        self._latest_config: ComponentMetricsConfiguration | None = None

    def __str__(self) -> str:
        return "data transfer metrics"

    def init(self, config: DeviceConfigurationMessage) -> None:
        self.update(config)

    def update(self, config: DeviceConfigurationMessage) -> None:
        new_config = retrieve_configuration_or_default(config.configuration)
        if self._latest_config is not None and self._latest_config == new_config:
            return
        if new_config.disabled:
            self._daemon.delete_target(DATA_TRANSFER_TARGET_NAME)
        else:
            if new_config.allow_list is None:
                flt = default_data_transfer_allow_list()
            else:
                flt = new_restrictive_allow_list(new_config.allow_list)
            self._daemon.add_target(
                DATA_TRANSFER_TARGET_NAME,
                create_object_scraper(self.gatherer),
                new_config.interval,
                flt,
            )
        self._latest_config = new_config

    def deregister(self) -> None:
        log.info("Stopping %s", self)
        self._daemon.delete_target(DATA_TRANSFER_TARGET_NAME)