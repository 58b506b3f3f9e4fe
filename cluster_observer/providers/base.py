"""健康快照提供者基类"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..models.health import (
    ApplicationHealth, ClusterSnapshot, NodeHealth, NodeInfo, PartitionHealth,
    RepairTask, ReplicaHealth, ServiceHealth, UpgradeProgress
)


class BaseHealthProvider(ABC):
    """
    健康快照提供者抽象基类

    所有查询都是协程，timeout 为单次调用的超时时间（秒）。
    瞬时故障抛出 TransientClusterError，其他查询失败抛出 ClusterQueryError。
    """

    def __init__(self, name: str, config: Dict[str, Any]):
        """
        初始化提供者

        Args:
            name: 提供者名称
            config: 配置参数
        """
        self.name = name
        self.config = config

    @abstractmethod
    async def get_cluster_health(self, timeout: float) -> ClusterSnapshot:
        """获取集群健康快照（节点与应用仅包含 Warning/Error 项）"""

    @abstractmethod
    async def get_application_health(self, application_name: str,
                                     timeout: float) -> ApplicationHealth:
        pass

    @abstractmethod
    async def get_service_health(self, service_name: str, timeout: float) -> ServiceHealth:
        pass

    @abstractmethod
    async def get_partition_health(self, partition_id: str, timeout: float) -> PartitionHealth:
        pass

    @abstractmethod
    async def get_replica_health(self, partition_id: str, replica_id: str,
                                 timeout: float) -> ReplicaHealth:
        pass

    @abstractmethod
    async def get_node_health(self, node_name: str, timeout: float) -> NodeHealth:
        pass

    @abstractmethod
    async def get_node_list(self, timeout: float) -> List[NodeInfo]:
        pass

    @abstractmethod
    async def get_application_name(self, service_name: str, timeout: float) -> str:
        """查询服务所属的应用名称"""

    @abstractmethod
    async def get_active_repair_tasks(self, timeout: float) -> List[RepairTask]:
        """查询处于 Active、Approved、Executing 状态的修复任务"""

    @abstractmethod
    async def is_repair_capability_deployed(self, timeout: float) -> bool:
        """判断集群中是否部署了修复管理服务"""

    @abstractmethod
    async def get_upgrade_progress(self, timeout: float,
                                   application_name: Optional[str] = None
                                   ) -> Optional[UpgradeProgress]:
        """
        获取集群或指定应用的升级进度

        Args:
            timeout: 超时时间（秒）
            application_name: 应用名称，为 None 时查询集群升级

        Returns:
            Optional[UpgradeProgress]: 当前没有升级信息时返回 None
        """

    @abstractmethod
    async def get_cluster_id(self, timeout: float) -> Optional[str]:
        """从集群清单中读取集群标识"""

    async def close(self) -> None:
        """释放资源"""
