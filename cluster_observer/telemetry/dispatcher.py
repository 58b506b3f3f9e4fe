"""遥测分发器"""

import asyncio
from typing import Any, Dict, List, Optional, Type

from .base import BaseTelemetrySink
from .event_trace import EventTraceChannel
from .http_sink import HTTPTelemetrySink
from ..models.telemetry import TelemetryRecord, UpgradeEventData
from ..utils.exceptions import TelemetryConfigError
from ..utils.log_manager import get_logger

SINK_TYPES: Dict[str, Type[BaseTelemetrySink]] = {
    'http': HTTPTelemetrySink,
}


class TelemetryDispatcher:
    """遥测分发器，负责管理遥测输出并分发记录"""

    def __init__(self, sink_configs: Optional[List[Dict[str, Any]]] = None,
                 event_trace: Optional[EventTraceChannel] = None):
        """
        初始化遥测分发器

        Args:
            sink_configs: 遥测输出配置列表
            event_trace: 事件追踪通道
        """
        self.logger = get_logger('telemetry.dispatcher')
        self.sinks: List[BaseTelemetrySink] = []
        self.event_trace = event_trace or EventTraceChannel()
        self.sent_count = 0
        self.failed_count = 0

        for sink_config in sink_configs or []:
            self.add_sink(self.create_sink(sink_config))

    @staticmethod
    def create_sink(sink_config: Dict[str, Any]) -> BaseTelemetrySink:
        """
        根据配置创建遥测输出

        Args:
            sink_config: 单个输出配置

        Returns:
            BaseTelemetrySink: 输出实例

        Raises:
            TelemetryConfigError: 类型不支持或配置无效
        """
        sink_type = sink_config.get('type')
        sink_class = SINK_TYPES.get(sink_type)
        if sink_class is None:
            raise TelemetryConfigError(
                f"不支持的遥测输出类型: {sink_type}，支持的类型: {list(SINK_TYPES)}",
                sink_name=sink_config.get('name'))
        return sink_class(sink_config['name'], sink_config)

    def add_sink(self, sink: BaseTelemetrySink):
        """
        添加遥测输出

        Args:
            sink: 输出实例
        """
        if not isinstance(sink, BaseTelemetrySink):
            raise TelemetryConfigError(f"遥测输出必须继承自BaseTelemetrySink: {type(sink)}")

        self.sinks.append(sink)
        self.logger.info(f"已添加遥测输出: {sink.name} ({sink.sink_type})")

    def remove_sink(self, name: str) -> bool:
        """
        移除遥测输出

        Args:
            name: 输出名称

        Returns:
            bool: 是否成功移除
        """
        for i, sink in enumerate(self.sinks):
            if sink.name == name:
                self.sinks.pop(i)
                self.logger.info(f"已移除遥测输出: {name}")
                return True
        return False

    def reload(self, sink_configs: List[Dict[str, Any]],
               event_trace: Optional[EventTraceChannel] = None):
        """
        按新配置重建遥测输出；新配置无效时保留原有输出

        Raises:
            TelemetryConfigError: 新配置无效
        """
        new_sinks = [self.create_sink(sink_config) for sink_config in sink_configs]
        self.sinks = new_sinks
        if event_trace is not None:
            self.event_trace = event_trace
        self.logger.info(f"遥测输出已重新加载，共 {len(self.sinks)} 个")

    async def emit(self, record: TelemetryRecord):
        """
        分发一条健康记录：先发送到所有输出，再写入事件追踪

        输出失败只记录日志，不向调用方抛出。

        Args:
            record: 遥测记录
        """
        if self.sinks:
            results = await asyncio.gather(
                *(self._send_to_sink(sink, record) for sink in self.sinks),
                return_exceptions=True
            )
            self._log_send_results(results, record.description)
        else:
            self.logger.debug("没有配置遥测输出，仅写入事件追踪")

        self.event_trace.emit(record)

    async def emit_upgrade(self, event: UpgradeEventData):
        """
        分发一条升级状态事件

        Args:
            event: 升级事件数据
        """
        if self.sinks:
            results = await asyncio.gather(
                *(self._send_to_sink(sink, event) for sink in self.sinks),
                return_exceptions=True
            )
            self._log_send_results(results, '升级状态')

        self.event_trace.emit(event)

    async def _send_to_sink(self, sink: BaseTelemetrySink, payload) -> Dict[str, Any]:
        """
        向单个输出发送

        Returns:
            Dict[str, Any]: 发送结果
        """
        try:
            if isinstance(payload, UpgradeEventData):
                success = await sink.report_upgrade_status(payload)
            else:
                success = await sink.report_health(payload)
            return {'sink': sink.name, 'success': success, 'error': None}
        except Exception as e:
            self.logger.error(f"遥测输出 {sink.name} 发送失败: {e}")
            return {'sink': sink.name, 'success': False, 'error': str(e)}

    def _log_send_results(self, results: List[Any], summary: str):
        success_count = 0
        failed_sinks = []

        for result in results:
            if isinstance(result, Exception):
                self.logger.error(f"遥测发送异常: {result}")
                continue
            if result['success']:
                success_count += 1
            else:
                failed_sinks.append(result['sink'])

        self.sent_count += success_count
        self.failed_count += len(results) - success_count

        if success_count > 0:
            self.logger.debug(f"遥测发送成功 {success_count}/{len(self.sinks)} 个输出")

        if failed_sinks:
            self.logger.warning(
                f"以下遥测输出发送失败: {', '.join(failed_sinks)} (内容: {summary[:80]})")

    def get_sink_names(self) -> List[str]:
        """
        获取所有输出名称

        Returns:
            List[str]: 输出名称列表
        """
        return [sink.name for sink in self.sinks]
