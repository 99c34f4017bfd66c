"""Metrics targets derived from running workloads."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from edgeagent.allow_list import PermissiveAllowList, new_restrictive_allow_list
from edgeagent.config import DeviceConfigurationMessage, Workload
from edgeagent.daemon import create_http_scraper

log = logging.getLogger(__name__)

DEFAULT_INTERVAL = 60


@dataclass
class ContainerReport:
    """A running container of a pod."""

    name: str
    ip_address: str = ""
    id: str = ""


@dataclass
class PodReport:
    """A running pod and its containers."""

    name: str
    id: str = ""
    containers: list[ContainerReport] = field(default_factory=list)


def _path_or_default(path: str) -> str:
    return path or "/"


def get_workload_urls(report: PodReport, config: Workload) -> list[str]:
    """Metrics URLs of the containers in a pod, honouring per-container overrides."""
    metrics = config.metrics
    urls = []
    for container in report.containers:
        custom = metrics.containers.get(container.name)
        if custom is not None:
            if custom.disabled:
                continue
            urls.append(f"http://{container.ip_address}:{custom.port}{_path_or_default(custom.path)}")
        else:
            urls.append(f"http://{container.ip_address}:{metrics.port}{_path_or_default(metrics.path)}")
    return urls


class WorkloadMetrics:
    """Adds and removes scraping targets as workloads start and stop."""

    def __init__(self, daemon) -> None:
        self._daemon = daemon
        self._workloads: dict[str, Workload] = {}
        self._lock = threading.Lock()

    def _workload(self, name: str) -> Workload | None:
        with self._lock:
            return self._workloads.get(name)

    def init(self, config: DeviceConfigurationMessage) -> None:
        self.update(config)

    def update(self, config: DeviceConfigurationMessage) -> None:
        workloads = {workload.name: workload for workload in config.workloads}
        with self._lock:
            self._workloads = workloads

    def workload_removed(self, workload_name: str) -> None:
        log.info("removing target metrics for workload '%s'", workload_name)
        self._daemon.delete_target(workload_name)

    def workload_started(self, workload_name: str, report: list[PodReport]) -> None:
        for pod in report:
            cfg = self._workload(workload_name)
            if cfg is None:
                log.info("workload '%s' started but it's not part of config", workload_name)
                continue
            if cfg.metrics is None:
                continue

            if cfg.metrics.allow_list is not None:
                flt = new_restrictive_allow_list(cfg.metrics.allow_list)
            else:
                flt = PermissiveAllowList()

            urls = [url for pod_report in report for url in get_workload_urls(pod_report, cfg)]
            interval = cfg.metrics.interval if cfg.metrics.interval > 0 else DEFAULT_INTERVAL
            self._daemon.add_target(pod.name, create_http_scraper(urls), interval, flt)