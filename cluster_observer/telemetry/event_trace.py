"""事件追踪通道

本地低开销诊断输出：每条记录写成一行 JSON。写入是同步的，
任何错误都只记录到普通日志，不会影响监控流程。
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from ..models.telemetry import TelemetryRecord, UpgradeEventData
from ..utils.log_manager import get_logger, log_manager

DEFAULT_EVENT_NAME = 'ClusterObserverDataEvent'


class EventTraceChannel:
    """结构化事件追踪通道"""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """
        初始化事件追踪通道

        Args:
            config: event_trace 配置段，支持 enabled、event_name、log_file
        """
        config = config or {}
        self.enabled = bool(config.get('enabled', False))
        self.event_name = config.get('event_name', DEFAULT_EVENT_NAME)
        self.log_file = config.get('log_file')
        self.logger = get_logger('event_trace')
        self._writer = None

    def _get_writer(self):
        if self._writer is None:
            self._writer = log_manager.get_structured_logger(
                f'event_trace.{self.event_name}', self.log_file)
        return self._writer

    def log_structured(self, event_name: str,
                       payload: Union[TelemetryRecord, UpgradeEventData, Dict[str, Any]]) -> None:
        """
        写入一条结构化事件

        Args:
            event_name: 事件名称
            payload: 遥测记录、升级事件或已是线上格式的字典
        """
        if not self.enabled:
            return

        try:
            data = payload if isinstance(payload, dict) else payload.to_wire()
            line = json.dumps({
                'EventName': event_name,
                'Timestamp': datetime.now(timezone.utc).isoformat(),
                **data
            }, ensure_ascii=False, default=str)
            self._get_writer().info(line)
        except Exception as e:
            self.logger.warning(f"写入事件追踪失败: {e}")

    def emit(self, payload: Union[TelemetryRecord, UpgradeEventData]) -> None:
        """使用配置的事件名写入"""
        self.log_structured(self.event_name, payload)
