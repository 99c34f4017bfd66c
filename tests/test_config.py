import copy
import dataclasses

from edgeagent.config import (
    ComponentMetricsConfiguration,
    ContainerMetrics,
    DeviceConfiguration,
    DeviceConfigurationMessage,
    MetricsAllowList,
    MetricsConfiguration,
    UpgradeStatus,
    WorkloadMetricsConfig,
)


def test_equal_configurations_compare_equal():
    cfg = ComponentMetricsConfiguration(interval=5, allow_list=MetricsAllowList(names=["a"]))
    same = ComponentMetricsConfiguration(interval=5, allow_list=MetricsAllowList(names=["a"]))
    assert cfg == same
    changed = dataclasses.replace(cfg, disabled=True)
    assert changed.disabled is True
    assert changed.interval == cfg.interval
    assert changed != cfg


def test_default_lists_are_independent():
    first = MetricsAllowList()
    second = MetricsAllowList()
    first.names.append("x")
    assert second.names == []
    assert first.names == ["x"]


def test_message_metrics_property():
    assert DeviceConfigurationMessage().metrics is None
    metrics = MetricsConfiguration(system=ComponentMetricsConfiguration(interval=7))
    message = DeviceConfigurationMessage(configuration=DeviceConfiguration(metrics=metrics))
    assert message.metrics is metrics
    assert message.metrics.system.interval == 7


def test_deep_copy_is_independent():
    original = WorkloadMetricsConfig(containers={"c1": ContainerMetrics(port=8888)}, port=9000)
    duplicate = copy.deepcopy(original)
    assert duplicate == original
    duplicate.containers["c1"].disabled = True
    assert original.containers["c1"].disabled is False
    assert duplicate != original


def test_upgrade_status_round_trip():
    status = UpgradeStatus(current_commit_id="123", last_upgrade_time="t", last_upgrade_status="succeeded")
    assert UpgradeStatus(**dataclasses.asdict(status)) == status