"""遥测输出基类"""

from abc import ABC, abstractmethod
from typing import Dict, Any

from ..models.telemetry import TelemetryRecord, UpgradeEventData


class BaseTelemetrySink(ABC):
    """遥测输出抽象基类"""

    def __init__(self, name: str, config: Dict[str, Any]):
        """
        初始化遥测输出

        Args:
            name: 输出名称
            config: 配置参数
        """
        self.name = name
        self.config = config
        self.sink_type = self.__class__.__name__.replace('TelemetrySink', '').lower()

    @abstractmethod
    async def report_health(self, record: TelemetryRecord) -> bool:
        """
        上报健康记录

        Args:
            record: 遥测记录

        Returns:
            bool: 上报是否成功
        """
        pass

    @abstractmethod
    async def report_upgrade_status(self, event: UpgradeEventData) -> bool:
        """
        上报升级状态

        Args:
            event: 升级事件数据

        Returns:
            bool: 上报是否成功
        """
        pass

    @abstractmethod
    def validate_config(self) -> bool:
        """
        验证配置参数是否有效

        Returns:
            bool: 配置是否有效
        """
        pass

    def get_timeout(self) -> int:
        """
        获取超时时间配置

        Returns:
            int: 超时时间（秒）
        """
        return self.config.get('timeout', 30)
