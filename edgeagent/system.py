"""Scraping target for the host's node exporter."""

from __future__ import annotations

import copy
import logging

from edgeagent.allow_list import default_system_allow_list, new_restrictive_allow_list
from edgeagent.config import ComponentMetricsConfiguration, DeviceConfiguration, DeviceConfigurationMessage
from edgeagent.daemon import create_http_scraper

log = logging.getLogger(__name__)

SYSTEM_TARGET_NAME = "system"
DEFAULT_SYSTEM_METRICS_SCRAPING_INTERVAL = 60
NODE_EXPORTER_METRICS_ENDPOINT = "http://localhost:9100/metrics"


def expected_configuration(config: DeviceConfiguration | None) -> ComponentMetricsConfiguration:
    """The system metrics settings, with defaults filled in."""
    if config is None or config.metrics is None or config.metrics.system is None:
        return ComponentMetricsConfiguration(interval=DEFAULT_SYSTEM_METRICS_SCRAPING_INTERVAL)
    result = copy.deepcopy(config.metrics.system)
    if result.interval == 0:
        result.interval = DEFAULT_SYSTEM_METRICS_SCRAPING_INTERVAL
    return result


class SystemMetrics:
    """Runs the node exporter and scrapes it as configured."""

    def __init__(self, daemon, node_exporter) -> None:
        self._daemon = daemon
        self._node_exporter = node_exporter
        self._latest_config: ComponentMetricsConfiguration | None = None

    def __str__(self) -> str:
        return "system metrics"

    def init(self, config: DeviceConfigurationMessage) -> None:
        self.update(config)

    def update(self, config: DeviceConfigurationMessage) -> None:
        new_config = expected_configuration(config.configuration)
        if self._latest_config is not None and self._latest_config == new_config:
            return

        if new_config.disabled:
            self._node_exporter.stop()
            self._node_exporter.disable()
            self._daemon.delete_target(SYSTEM_TARGET_NAME)
        else:
            self._node_exporter.enable()
            self._node_exporter.start()
            if new_config.allow_list is None:
                flt = default_system_allow_list()
            else:
                flt = new_restrictive_allow_list(new_config.allow_list)
            self._daemon.add_target(
                SYSTEM_TARGET_NAME,
                create_http_scraper([NODE_EXPORTER_METRICS_ENDPOINT]),
                new_config.interval,
                flt,
            )
        self._latest_config = new_config

    def deregister(self) -> None:
        log.info("stopping system metrics")
        self._daemon.delete_target(SYSTEM_TARGET_NAME)