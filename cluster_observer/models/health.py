"""集群健康快照相关的数据模型

快照对象由 Snapshot Provider 每轮重新构建，核心逻辑只读取不修改；
聚合健康状态总是由编排器给出，这里不做任何推算。
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Union


class HealthState(Enum):
    """健康状态，仅按相等比较"""
    UNKNOWN = "Unknown"
    OK = "Ok"
    WARNING = "Warning"
    ERROR = "Error"

    @classmethod
    def parse(cls, value: Union[str, int, 'HealthState', None]) -> 'HealthState':
        """
        解析线上格式的健康状态

        接受名称字符串（大小写不敏感）或编排器的整数编码
        (Invalid=0, Ok=1, Warning=2, Error=3, Unknown=65535)。
        无法识别的值解析为 UNKNOWN。
        """
        if isinstance(value, HealthState):
            return value
        if isinstance(value, bool):
            return cls.UNKNOWN
        if isinstance(value, int):
            return _HEALTH_STATE_CODES.get(value, cls.UNKNOWN)
        if isinstance(value, str):
            text = value.strip()
            if text.isdigit():
                return _HEALTH_STATE_CODES.get(int(text), cls.UNKNOWN)
            for state in cls:
                if state.value.lower() == text.lower():
                    return state
        return cls.UNKNOWN

    def is_unhealthy(self) -> bool:
        return self in (HealthState.WARNING, HealthState.ERROR)


_HEALTH_STATE_CODES = {
    0: HealthState.UNKNOWN,
    1: HealthState.OK,
    2: HealthState.WARNING,
    3: HealthState.ERROR,
    65535: HealthState.UNKNOWN,
}


class EntityKind(Enum):
    """上报实体类型"""
    CLUSTER = "Cluster"
    NODE = "Node"
    APPLICATION = "Application"
    SERVICE = "Service"
    PARTITION = "Partition"
    REPLICA = "Replica"

    @property
    def property_name(self) -> str:
        """上报使用的属性名"""
        return f"{self.value}Health"

    @classmethod
    def parse(cls, value: Union[str, int, 'EntityKind', None]) -> Optional['EntityKind']:
        """
        解析线上格式的实体类型

        兼容伴随观察器的实体类型取值：整数编码按其枚举顺序映射，
        有状态/无状态服务归为 SERVICE，已部署应用归为 APPLICATION，
        进程归为 REPLICA。
        """
        if value is None or isinstance(value, EntityKind):
            return value
        if isinstance(value, bool):
            return None
        if isinstance(value, int):
            name = _OBSERVER_ENTITY_TYPES[value] if 0 <= value < len(_OBSERVER_ENTITY_TYPES) else None
        else:
            name = str(value).strip()
        if not name:
            return None
        for kind in cls:
            if kind.value.lower() == name.lower():
                return kind
        return _ENTITY_TYPE_ALIASES.get(name.lower())


_OBSERVER_ENTITY_TYPES = [
    'Application', 'Node', 'Service', 'StatefulService', 'StatelessService',
    'Partition', 'DeployedApplication', 'Process',
]

_ENTITY_TYPE_ALIASES = {
    'statefulservice': EntityKind.SERVICE,
    'statelessservice': EntityKind.SERVICE,
    'deployedapplication': EntityKind.APPLICATION,
    'process': EntityKind.REPLICA,
}


class NodeStatus(Enum):
    """节点状态"""
    INVALID = "Invalid"
    UP = "Up"
    DOWN = "Down"
    ENABLING = "Enabling"
    DISABLING = "Disabling"
    DISABLED = "Disabled"
    UNKNOWN = "Unknown"
    REMOVED = "Removed"

    @classmethod
    def parse(cls, value: Optional[str]) -> 'NodeStatus':
        for status in cls:
            if value and status.value.lower() == str(value).lower():
                return status
        return cls.UNKNOWN

    def is_not_ok(self) -> bool:
        """停用中、已停用、宕机视为异常状态"""
        return self in (NodeStatus.DISABLED, NodeStatus.DISABLING, NodeStatus.DOWN)


class UpgradeState(Enum):
    """滚动升级状态"""
    INVALID = "Invalid"
    ROLLING_BACK_IN_PROGRESS = "RollingBackInProgress"
    ROLLING_BACK_COMPLETED = "RollingBackCompleted"
    ROLLING_FORWARD_PENDING = "RollingForwardPending"
    ROLLING_FORWARD_IN_PROGRESS = "RollingForwardInProgress"
    ROLLING_FORWARD_COMPLETED = "RollingForwardCompleted"
    FAILED = "Failed"

    @classmethod
    def parse(cls, value: Optional[str]) -> 'UpgradeState':
        for state in cls:
            if value and state.value.lower() == str(value).lower():
                return state
        return cls.INVALID

    def is_completed(self) -> bool:
        return self in (UpgradeState.ROLLING_FORWARD_COMPLETED,
                        UpgradeState.ROLLING_BACK_COMPLETED)


# 不健康评估的分组
NODE_EVALUATION_KINDS = frozenset({'Node', 'Nodes'})
APPLICATION_EVALUATION_KINDS = frozenset({'Application', 'Applications', 'SystemApplication'})

SYSTEM_APPLICATION_NAME = 'fabric:/System'


@dataclass
class HealthEvent:
    """实体上的单条健康事件"""
    source_id: str
    property: str
    health_state: HealthState
    description: str = ''
    source_timestamp: Optional[datetime] = None


@dataclass
class HealthEvaluation:
    """解释聚合状态为何变差的评估记录"""
    kind: str
    description: str
    aggregated_health_state: HealthState


@dataclass
class NodeHealthState:
    node_name: str
    aggregated_health_state: HealthState


@dataclass
class ApplicationHealthState:
    application_name: str
    aggregated_health_state: HealthState


@dataclass
class ServiceHealthState:
    service_name: str
    aggregated_health_state: HealthState


@dataclass
class PartitionHealthState:
    partition_id: str
    aggregated_health_state: HealthState


@dataclass
class ReplicaHealthState:
    partition_id: str
    replica_id: str
    aggregated_health_state: HealthState


@dataclass
class ClusterSnapshot:
    """一次集群健康查询的结果"""
    aggregated_health_state: HealthState
    node_health_states: List[NodeHealthState] = field(default_factory=list)
    application_health_states: List[ApplicationHealthState] = field(default_factory=list)
    unhealthy_evaluations: List[HealthEvaluation] = field(default_factory=list)


@dataclass
class ApplicationHealth:
    application_name: str
    aggregated_health_state: HealthState
    health_events: List[HealthEvent] = field(default_factory=list)
    service_health_states: List[ServiceHealthState] = field(default_factory=list)
    unhealthy_evaluations: List[HealthEvaluation] = field(default_factory=list)


@dataclass
class ServiceHealth:
    service_name: str
    aggregated_health_state: HealthState
    health_events: List[HealthEvent] = field(default_factory=list)
    partition_health_states: List[PartitionHealthState] = field(default_factory=list)
    unhealthy_evaluations: List[HealthEvaluation] = field(default_factory=list)


@dataclass
class PartitionHealth:
    partition_id: str
    aggregated_health_state: HealthState
    health_events: List[HealthEvent] = field(default_factory=list)
    replica_health_states: List[ReplicaHealthState] = field(default_factory=list)
    unhealthy_evaluations: List[HealthEvaluation] = field(default_factory=list)


@dataclass
class ReplicaHealth:
    partition_id: str
    replica_id: str
    aggregated_health_state: HealthState
    health_events: List[HealthEvent] = field(default_factory=list)
    unhealthy_evaluations: List[HealthEvaluation] = field(default_factory=list)


@dataclass
class NodeHealth:
    node_name: str
    aggregated_health_state: HealthState
    health_events: List[HealthEvent] = field(default_factory=list)
    unhealthy_evaluations: List[HealthEvaluation] = field(default_factory=list)


@dataclass
class NodeInfo:
    """节点列表中的一项"""
    node_name: str
    node_status: NodeStatus
    node_type: Optional[str] = None
    upgrade_domain: Optional[str] = None


@dataclass
class RepairTask:
    task_id: str
    state: str


@dataclass
class UpgradeDomainProgress:
    """当前升级域进度"""
    domain_name: str
    node_names: List[str] = field(default_factory=list)


@dataclass
class UpgradeProgress:
    """集群或应用的升级进度"""
    upgrade_state: UpgradeState
    current_domain: Optional[UpgradeDomainProgress] = None
    start_timestamp: Optional[datetime] = None
    application_name: Optional[str] = None
    target_version: Optional[str] = None

    def has_information(self) -> bool:
        """
        判断升级进度是否包含有效信息

        状态为 Invalid 或当前升级域名称为哨兵值 "-1" 时视为没有信息。
        """
        if self.upgrade_state == UpgradeState.INVALID:
            return False
        if self.current_domain is not None and self.current_domain.domain_name == '-1':
            return False
        return True

    def is_node_in_current_domain(self, node_name: str) -> bool:
        if self.current_domain is None:
            return False
        return node_name in self.current_domain.node_names
