"""数据模型模块"""

from .health import (
    HealthState, EntityKind, NodeStatus, UpgradeState, HealthEvent, HealthEvaluation,
    ClusterSnapshot, ApplicationHealth, ServiceHealth, PartitionHealth, ReplicaHealth,
    NodeHealth, NodeInfo, RepairTask, UpgradeProgress, UpgradeDomainProgress
)
from .telemetry import (
    TelemetryRecord, ServiceTelemetry, DiskTelemetry, NodeTelemetry, UpgradeEventData
)
from .settings import ObserverSettings, NodeStuckAlertPolicy, parse_duration

__all__ = [
    'HealthState', 'EntityKind', 'NodeStatus', 'UpgradeState', 'HealthEvent',
    'HealthEvaluation', 'ClusterSnapshot', 'ApplicationHealth', 'ServiceHealth',
    'PartitionHealth', 'ReplicaHealth', 'NodeHealth', 'NodeInfo', 'RepairTask',
    'UpgradeProgress', 'UpgradeDomainProgress',
    'TelemetryRecord', 'ServiceTelemetry', 'DiskTelemetry', 'NodeTelemetry',
    'UpgradeEventData',
    'ObserverSettings', 'NodeStuckAlertPolicy', 'parse_duration'
]
