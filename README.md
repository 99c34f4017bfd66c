# edgeagent

Building blocks for an agent that runs on an edge device. The agent
receives a device configuration message (`edgeagent.config`) and applies
it. The package needs only the standard library.

## Parts

**Configuration models** (`edgeagent.config`): dataclasses such as
`DeviceConfigurationMessage`, `DeviceConfiguration`, `MetricsConfiguration`,
`ComponentMetricsConfiguration`, `MetricsReceiverConfiguration`,
`MetricsRetention`, `Workload`, `Mount`, `OsInformation` and
`UpgradeStatus`.

**Scraping** (`edgeagent.scraper`):

- `HTTPScraper` fetches a Prometheus text endpoint and accepts gzip
  responses.
- `decode_samples` parses the text exposition format into `Sample`
  objects.
- `ObjectScraper` reads counters from an in-process `Registry`.
- Failures raise `ScrapeError`.

**Allow lists** (`edgeagent.allow_list`):

- `PermissiveAllowList` keeps every sample.
- `RestrictiveAllowList` keeps only the listed metric names.
- `default_system_allow_list` and `default_data_transfer_allow_list` hold
  the default names.
- `new_restrictive_allow_list` builds a list from a configured
  `MetricsAllowList`.

**Scraping daemon** (`edgeagent.daemon`):

- `MetricsDaemon` keeps one `TargetMetric` per name.
- Each target runs in its own thread. On every interval it scrapes its
  endpoints, filters the samples and passes them to the store's
  `add_vector`, with a `metric-source` label.
- `create_http_scraper` turns URLs into scrapers.

**Metric sources** set up the daemon's targets from the configuration:

- `SystemMetrics` (`edgeagent.system`) enables and starts a node exporter
  service object that you pass in, then scrapes
  `http://localhost:9100/metrics`. When the configuration disables it, it
  stops and disables the service and removes the target.
- `DataTransferMetrics` (`edgeagent.data_transfer`) scrapes a counter
  `Registry`.
- `WorkloadMetrics` (`edgeagent.workload`) adds a target when a workload
  starts, using its pod and container reports (`PodReport`,
  `ContainerReport`, `get_workload_urls`). It removes the target when the
  workload is removed.

**Local storage** (`edgeagent.tsdb`):

- `TSDB` stores samples as JSON lines under `<data_dir>/metrics`.
- Methods: `add_metric`, `add_vector`, `get_metrics_for_time_range`,
  `min_time`, `max_time`, `head_min_time` and `blocks`.
- `update` applies the retention (hours and MiB) from the configuration.

**Remote write** (`edgeagent.remote_write`):

- `RemoteWrite` runs a background thread. It sends stored samples in
  one-hour ranges to the receiver URL in the configuration, and adds an
  `edgedeviceid` label to each series.
- Requests are protobuf `WriteRequest` messages (`encode_write_request`,
  `decode_write_request`), compressed with `snappy_encode`. They hold at
  most `request_num_samples` samples each.
- `HTTPWriteClient` raises `RemoteRecoverableError` on 5xx and network
  errors. Such a request is tried three times. Other errors skip the
  request.
- Empty gaps in the store are skipped.
- The position reached is saved in `metrics-lastwrite` in the data
  directory.
- A configured CA certificate is written to a `remote-write-ca-*.pem` file
  there.

**Mounts**:

- `edgeagent.mount_info` parses the output of the `mount` command
  (`parse_mount_entry`, `get_mounts`, `is_path_mounted`).
- `MountManager` (`edgeagent.mount`, built with `create_manager`) mounts
  each configured block device. First it checks the type against
  `/etc/filesystems`, that the directory exists and that the device is a
  block device.
- A directory that holds a different mount is force-unmounted first.
- Failures are collected into one `MountError`.

**OS upgrades** (`edgeagent.ostree`, `edgeagent.os_exec_commands`):

- `OSManager` reads deployments from `rpm-ostree status --json` to report
  an `UpgradeStatus`.
- When the requested commit changes, and automatic upgrade is on, it:
  1. checks the commit appears in `rpm-ostree update --preview`;
  2. installs greenboot health and failure scripts;
  3. runs `rpm-ostree upgrade`;
  4. posts to the graceful-reboot queue and waits up to 10 seconds for
     completion;
  5. reboots with `systemctl reboot`.
- `OsExecCommands` runs those commands. It also rewrites the `url=` lines
  of the ostree remote file when the hosted objects URL changes.

## Lifecycle

Components that apply configuration share three calls:

- `init(config)` is called on the first configuration.
- `update(config)` is called on every later one. It does nothing when the
  relevant part is unchanged.
- `deregister()` is on `TSDB`, `SystemMetrics` and `DataTransferMetrics`.
  It tears the component down.

Errors are raised as exceptions.

## Example

```python
import tempfile

from edgeagent.config import DeviceConfiguration, DeviceConfigurationMessage
from edgeagent.daemon import MetricsDaemon
from edgeagent.tsdb import TSDB
from edgeagent.workload import WorkloadMetrics

store = TSDB(tempfile.mkdtemp())
daemon = MetricsDaemon(store)
workloads = WorkloadMetrics(daemon)
workloads.init(DeviceConfigurationMessage(configuration=DeviceConfiguration()))
print(daemon.get_targets())
```

## What it does not do

The package has no command-line program and no long-running service that
wires the parts together; the caller creates the components and feeds them
configuration messages.

It does not manage systemd units itself: `SystemMetrics` expects a node
exporter object with `enable`, `start`, `stop` and `disable` methods.

Scraping handles the Prometheus text format only; the protobuf format is
rejected.

## Installation

```
pip install .
```

The tests need pytest:

```
pip install ".[test]"
pytest
```