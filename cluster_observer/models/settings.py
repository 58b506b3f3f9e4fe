"""观察器运行设置

ObserverSettings 每轮从配置重新构建，修改配置文件后无需重启即可生效。
"""

import re
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, Optional, Union

from ..utils.exceptions import ConfigError

_DURATION_PATTERN = re.compile(
    r'^(?:(?P<days>\d+)\.)?(?P<hours>\d{1,2}):(?P<minutes>\d{1,2}):(?P<seconds>\d{1,2}(?:\.\d+)?)$'
)


def parse_duration(value: Union[int, float, str, timedelta], name: str = 'duration') -> timedelta:
    """
    解析时长配置

    支持秒数（整数或浮点数）以及 "[d.]HH:MM:SS" 格式的字符串。

    Args:
        value: 配置值
        name: 配置项名称，用于错误信息

    Returns:
        timedelta: 时长

    Raises:
        ConfigError: 格式无效或为负数
    """
    if isinstance(value, timedelta):
        result = value
    elif isinstance(value, bool):
        raise ConfigError(f"{name} 必须是秒数或 [d.]HH:MM:SS 格式的字符串")
    elif isinstance(value, (int, float)):
        result = timedelta(seconds=value)
    elif isinstance(value, str):
        text = value.strip()
        match = _DURATION_PATTERN.match(text)
        if match:
            result = timedelta(
                days=int(match.group('days') or 0),
                hours=int(match.group('hours')),
                minutes=int(match.group('minutes')),
                seconds=float(match.group('seconds'))
            )
        else:
            try:
                result = timedelta(seconds=float(text))
            except ValueError:
                raise ConfigError(f"{name} 格式无效: {value}")
    else:
        raise ConfigError(f"{name} 必须是秒数或 [d.]HH:MM:SS 格式的字符串")

    if result < timedelta(0):
        raise ConfigError(f"{name} 不能为负数")
    return result


class NodeStuckAlertPolicy(Enum):
    """节点长时间异常告警策略"""
    REPEAT = "repeat"  # 超过阈值后每轮都上报
    ONCE = "once"  # 每次异常期间只上报一次，节点恢复后重置


@dataclass
class ObserverSettings:
    """观察器设置"""
    enabled: bool = True
    run_interval: timedelta = timedelta(0)
    execution_timeout: timedelta = timedelta(minutes=5)
    async_timeout: timedelta = timedelta(seconds=60)
    max_time_node_status_not_ok: timedelta = timedelta(hours=2)
    emit_warning_details: bool = False
    monitor_repair_jobs: bool = False
    monitor_upgrades: bool = False
    node_stuck_alert_policy: NodeStuckAlertPolicy = NodeStuckAlertPolicy.REPEAT
    loop_sleep: timedelta = timedelta(seconds=30)
    telemetry_enabled: bool = True
    cluster_id: Optional[str] = None

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'ObserverSettings':
        """
        从完整配置字典构建设置

        Args:
            config: 配置字典（包含 observer、telemetry、cluster 段）

        Returns:
            ObserverSettings: 设置对象

        Raises:
            ConfigError: 配置值无效
        """
        observer = config.get('observer') or {}
        telemetry = config.get('telemetry') or {}
        cluster = config.get('cluster') or {}
        defaults = cls()

        def duration(key: str, default: timedelta) -> timedelta:
            if observer.get(key) is None:
                return default
            return parse_duration(observer[key], key)

        policy = observer.get('node_stuck_alert_policy', defaults.node_stuck_alert_policy.value)
        try:
            policy = NodeStuckAlertPolicy(str(policy).lower())
        except ValueError:
            raise ConfigError(
                f"node_stuck_alert_policy 必须是以下值之一: "
                f"{[p.value for p in NodeStuckAlertPolicy]}")

        return cls(
            enabled=bool(observer.get('enabled', defaults.enabled)),
            run_interval=duration('run_interval', defaults.run_interval),
            execution_timeout=duration('execution_timeout', defaults.execution_timeout),
            async_timeout=duration('async_timeout', defaults.async_timeout),
            max_time_node_status_not_ok=duration(
                'max_time_node_status_not_ok', defaults.max_time_node_status_not_ok),
            emit_warning_details=bool(
                observer.get('emit_warning_details', defaults.emit_warning_details)),
            monitor_repair_jobs=bool(
                observer.get('monitor_repair_jobs', defaults.monitor_repair_jobs)),
            monitor_upgrades=bool(observer.get('monitor_upgrades', defaults.monitor_upgrades)),
            node_stuck_alert_policy=policy,
            loop_sleep=duration('loop_sleep', defaults.loop_sleep),
            telemetry_enabled=bool(telemetry.get('enabled', defaults.telemetry_enabled)),
            cluster_id=cluster.get('cluster_id')
        )
