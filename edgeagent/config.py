"""Device configuration models consumed by the agent components."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class MetricsAllowList:
    """Names of the metrics that may pass a filter."""

    names: list[str] = field(default_factory=list)


@dataclass
class ComponentMetricsConfiguration:
    """Scraping settings of a single metrics component."""

    interval: int = 0
    disabled: bool = False
    allow_list: MetricsAllowList | None = None


@dataclass
class MetricsRetention:
    """Limits on how much metric data is kept locally."""

    max_mib: int = 0
    max_hours: int = 0


@dataclass
class MetricsReceiverConfiguration:
    """Where and how metrics are pushed to a remote receiver."""

    url: str = ""
    timeout_seconds: int = 0
    request_num_samples: int = 0
    ca_cert: str = ""


@dataclass
class MetricsConfiguration:
    """Metrics settings of the device."""

    system: ComponentMetricsConfiguration | None = None
    data_transfer: ComponentMetricsConfiguration | None = None
    retention: MetricsRetention | None = None
    receiver: MetricsReceiverConfiguration | None = None


@dataclass
class OsInformation:
    """Requested operating system image."""

    automatically_upgrade: bool = False
    commit_id: str = ""
    hosted_objects_url: str = ""


@dataclass
class Mount:
    """A block device mounted on a directory."""

    device: str = ""
    directory: str = ""
    type: str = ""
    options: str = ""


@dataclass
class ContainerMetrics:
    """Per-container override of the metrics endpoint."""

    port: int = 0
    path: str = ""
    disabled: bool = False


@dataclass
class WorkloadMetricsConfig:
    """Metrics endpoint settings of a workload."""

    containers: dict[str, ContainerMetrics] = field(default_factory=dict)
    interval: int = 0
    path: str = ""
    port: int = 0
    allow_list: MetricsAllowList | None = None


@dataclass
class Workload:
    """A workload deployed on the device."""

    name: str
    specification: str = ""
    metrics: WorkloadMetricsConfig | None = None


@dataclass
class DeviceConfiguration:
    """Device-wide configuration."""

    metrics: MetricsConfiguration | None = None
    os: OsInformation | None = None
    mounts: list[Mount] = field(default_factory=list)


@dataclass
class DeviceConfigurationMessage:
    """The full configuration message sent to the device."""

    configuration: DeviceConfiguration | None = None
    device_id: str = ""
    version: str = ""
    workloads: list[Workload] = field(default_factory=list)

    @property
    def metrics(self) -> MetricsConfiguration | None:
        """The metrics configuration, if any is present."""
        if self.configuration is None:
            return None
        return self.configuration.metrics


@dataclass
class UpgradeStatus:
    """Outcome of the latest operating system upgrade."""

    current_commit_id: str = ""
    last_upgrade_time: str = ""
    last_upgrade_status: str = ""