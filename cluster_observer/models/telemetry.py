"""遥测记录模型

TelemetryRecord 及其结构化变体构造后不再修改，需要补充描述时用
dataclasses.replace 生成新对象。线上格式为 PascalCase 键的 JSON 对象，
与伴随资源观察器写入健康事件描述的信封格式一致。
"""

from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional

from .health import EntityKind, HealthState, UpgradeProgress


def _wire(key: str, default: Any = None) -> Any:
    return field(default=default, metadata={'wire': key})


@dataclass(frozen=True)
class TelemetryRecord:
    """通用遥测信封"""
    health_state: HealthState = _wire('HealthState', HealthState.UNKNOWN)
    description: str = _wire('Description', '')
    entity_kind: Optional[EntityKind] = _wire('EntityType')
    cluster_id: Optional[str] = _wire('ClusterId')
    application_name: Optional[str] = _wire('ApplicationName')
    service_name: Optional[str] = _wire('ServiceName')
    node_name: Optional[str] = _wire('NodeName')
    node_type: Optional[str] = _wire('NodeType')
    partition_id: Optional[str] = _wire('PartitionId')
    replica_id: Optional[Any] = _wire('ReplicaId')
    metric: Optional[str] = _wire('Metric')
    source: Optional[str] = _wire('Source')
    observer_name: Optional[str] = _wire('ObserverName')
    value: Optional[Any] = _wire('Value')
    code: Optional[str] = _wire('Code')
    property: Optional[str] = _wire('Property')
    os: Optional[str] = _wire('OS')

    # 严格解析时允许出现的键；None 表示该类型所有字段
    allowed_wire_keys = None

    @classmethod
    def wire_keys(cls) -> Dict[str, str]:
        """线上键到属性名的映射"""
        keys = {f.metadata['wire']: f.name for f in fields(cls) if 'wire' in f.metadata}
        if cls.allowed_wire_keys is not None:
            keys = {k: v for k, v in keys.items() if k in cls.allowed_wire_keys}
        return keys

    def to_wire(self) -> Dict[str, Any]:
        """
        转换为线上格式字典，省略值为 None 的字段

        Returns:
            Dict[str, Any]: PascalCase 键的字典
        """
        payload: Dict[str, Any] = {}
        for wire_key, attr in self.wire_keys().items():
            value = getattr(self, attr)
            if value is None:
                continue
            if isinstance(value, (HealthState, EntityKind)):
                value = value.value
            payload[wire_key] = value
        return payload

    @classmethod
    def from_wire(cls, payload: Dict[str, Any], strict: bool = False) -> 'TelemetryRecord':
        """
        从线上格式字典构造记录

        Args:
            payload: 已解析的 JSON 对象
            strict: 为 True 时出现本类型不认识的键即失败

        Returns:
            TelemetryRecord: 对应类型的记录

        Raises:
            ValueError: 严格模式下出现未知字段
        """
        mapping = cls.wire_keys()
        if strict:
            unexpected = sorted(set(payload) - set(mapping))
            if unexpected:
                raise ValueError(f"{cls.__name__} 不支持的字段: {', '.join(unexpected)}")

        values: Dict[str, Any] = {}
        for wire_key, attr in mapping.items():
            if wire_key not in payload or payload[wire_key] is None:
                continue
            raw = payload[wire_key]
            if attr == 'health_state':
                raw = HealthState.parse(raw)
            elif attr == 'entity_kind':
                raw = EntityKind.parse(raw)
            elif attr == 'description':
                raw = str(raw)
            values[attr] = raw
        return cls(**values)


@dataclass(frozen=True)
class ServiceTelemetry(TelemetryRecord):
    """应用/服务/容器观察器产生的服务形态记录"""
    application_type: Optional[str] = _wire('ApplicationType')
    application_type_version: Optional[str] = _wire('ApplicationTypeVersion')
    container_id: Optional[str] = _wire('ContainerId')
    process_id: Optional[int] = _wire('ProcessId')
    process_name: Optional[str] = _wire('ProcessName')
    process_start_time: Optional[str] = _wire('ProcessStartTime')
    replica_role: Optional[str] = _wire('ReplicaRole')
    rg_memory_enabled: Optional[bool] = _wire('RGMemoryEnabled')
    rg_applied_memory_limit_mb: Optional[float] = _wire('RGAppliedMemoryLimitMb')
    service_kind: Optional[str] = _wire('ServiceKind')
    service_type_name: Optional[str] = _wire('ServiceTypeName')
    service_type_version: Optional[str] = _wire('ServiceTypeVersion')
    service_package_activation_mode: Optional[str] = _wire('ServicePackageActivationMode')


@dataclass(frozen=True)
class DiskTelemetry(TelemetryRecord):
    """磁盘观察器记录，严格解析"""
    drive_name: Optional[str] = _wire('DriveName')
    folder_name: Optional[str] = _wire('FolderName')

    allowed_wire_keys = frozenset({
        'ClusterId', 'Code', 'Description', 'EntityType', 'HealthState', 'Metric',
        'NodeName', 'NodeType', 'ObserverName', 'OS', 'Source', 'Value', 'Property',
        'DriveName', 'FolderName',
    })


@dataclass(frozen=True)
class NodeTelemetry(TelemetryRecord):
    """节点观察器记录"""


@dataclass(frozen=True)
class UpgradeEventData:
    """升级完成状态跳变时上报的数据"""
    cluster_id: Optional[str]
    cluster_progress: Optional[UpgradeProgress] = None
    application_progress: Optional[UpgradeProgress] = None

    def to_wire(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {'ClusterId': self.cluster_id}
        for key, progress in (('FabricUpgradeProgress', self.cluster_progress),
                              ('ApplicationUpgradeProgress', self.application_progress)):
            if progress is None:
                continue
            item: Dict[str, Any] = {'UpgradeState': progress.upgrade_state.value}
            if progress.application_name:
                item['ApplicationName'] = progress.application_name
            if progress.target_version:
                item['TargetVersion'] = progress.target_version
            if progress.start_timestamp:
                item['StartTimestampUtc'] = progress.start_timestamp.isoformat()
            if progress.current_domain:
                item['CurrentUpgradeDomainProgress'] = {
                    'DomainName': progress.current_domain.domain_name,
                    'NodeNames': list(progress.current_domain.node_names),
                }
            payload[key] = item
        return payload
