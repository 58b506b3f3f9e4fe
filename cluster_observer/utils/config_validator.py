"""配置验证工具"""

from typing import Dict, Any
from urllib.parse import urlparse

from .exceptions import ConfigError


class ConfigValidator:
    """配置验证器"""

    @staticmethod
    def validate_global_config(global_config: Dict[str, Any]) -> None:
        """
        验证全局配置

        Args:
            global_config: 全局配置

        Raises:
            ConfigError: 配置验证失败
        """
        if not isinstance(global_config, dict):
            raise ConfigError("全局配置必须是字典类型")

        log_level = global_config.get('log_level')
        if log_level is not None:
            valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
            if str(log_level).upper() not in valid_levels:
                raise ConfigError(f"log_level 必须是以下值之一: {valid_levels}")

        for key in ('max_log_size', 'log_backup_count'):
            value = global_config.get(key)
            if value is not None and (not isinstance(value, int) or value <= 0):
                raise ConfigError(f"{key} 必须是正整数")

    @staticmethod
    def validate_cluster_config(cluster_config: Dict[str, Any]) -> None:
        """
        验证集群连接配置

        Args:
            cluster_config: cluster 配置段

        Raises:
            ConfigError: 配置验证失败
        """
        if not isinstance(cluster_config, dict):
            raise ConfigError("cluster配置必须是字典类型")

        endpoint = cluster_config.get('endpoint')
        if not endpoint:
            raise ConfigError("cluster配置缺少必需的配置项: endpoint")

        parsed = urlparse(str(endpoint))
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise ConfigError(f"cluster.endpoint 格式无效: {endpoint}")

        retry = cluster_config.get('retry')
        if retry is not None:
            if not isinstance(retry, dict):
                raise ConfigError("cluster.retry 必须是字典类型")
            max_attempts = retry.get('max_attempts')
            if max_attempts is not None and (not isinstance(max_attempts, int) or max_attempts <= 0):
                raise ConfigError("cluster.retry.max_attempts 必须是正整数")
            strategy = retry.get('strategy')
            valid_strategies = ['fixed_delay', 'exponential_backoff', 'linear_backoff']
            if strategy is not None and strategy not in valid_strategies:
                raise ConfigError(f"cluster.retry.strategy 必须是以下值之一: {valid_strategies}")

    @staticmethod
    def validate_observer_config(observer_config: Dict[str, Any]) -> None:
        """
        验证观察器配置

        Args:
            observer_config: observer 配置段

        Raises:
            ConfigError: 配置验证失败
        """
        # 延迟导入以避免循环导入
        from ..models.settings import parse_duration, NodeStuckAlertPolicy

        if not isinstance(observer_config, dict):
            raise ConfigError("observer配置必须是字典类型")

        for key in ('run_interval', 'execution_timeout', 'async_timeout',
                    'max_time_node_status_not_ok', 'loop_sleep'):
            if observer_config.get(key) is not None:
                parse_duration(observer_config[key], key)

        for key in ('enabled', 'emit_warning_details', 'monitor_repair_jobs', 'monitor_upgrades'):
            value = observer_config.get(key)
            if value is not None and not isinstance(value, bool):
                raise ConfigError(f"{key} 必须是布尔值")

        policy = observer_config.get('node_stuck_alert_policy')
        valid_policies = [p.value for p in NodeStuckAlertPolicy]
        if policy is not None and str(policy).lower() not in valid_policies:
            raise ConfigError(f"node_stuck_alert_policy 必须是以下值之一: {valid_policies}")

    @staticmethod
    def validate_sink_config(sink_config: Dict[str, Any]) -> None:
        """
        验证遥测输出配置

        Args:
            sink_config: 单个 sink 配置

        Raises:
            ConfigError: 配置验证失败
        """
        if not isinstance(sink_config, dict):
            raise ConfigError("遥测输出配置必须是字典类型")

        required_fields = ['name', 'type', 'url']
        for field in required_fields:
            if field not in sink_config:
                raise ConfigError(f"遥测输出配置缺少必需的配置项: {field}")

        supported_types = ['http']
        if sink_config['type'] not in supported_types:
            raise ConfigError(
                f"遥测输出 '{sink_config['name']}' 的类型 '{sink_config['type']}' 不受支持。"
                f"支持的类型: {supported_types}")

    @staticmethod
    def validate_telemetry_config(telemetry_config: Dict[str, Any]) -> None:
        """
        验证遥测配置

        Args:
            telemetry_config: telemetry 配置段

        Raises:
            ConfigError: 配置验证失败
        """
        if not isinstance(telemetry_config, dict):
            raise ConfigError("telemetry配置必须是字典类型")

        sinks = telemetry_config.get('sinks', [])
        if not isinstance(sinks, list):
            raise ConfigError("telemetry.sinks 必须是列表类型")

        names = set()
        for sink_config in sinks:
            ConfigValidator.validate_sink_config(sink_config)
            if sink_config['name'] in names:
                raise ConfigError(f"遥测输出名称重复: {sink_config['name']}")
            names.add(sink_config['name'])

    @staticmethod
    def validate_event_trace_config(event_trace_config: Dict[str, Any]) -> None:
        """验证事件追踪配置"""
        if not isinstance(event_trace_config, dict):
            raise ConfigError("event_trace配置必须是字典类型")

        event_name = event_trace_config.get('event_name')
        if event_name is not None and (not isinstance(event_name, str) or not event_name):
            raise ConfigError("event_trace.event_name 必须是非空字符串")
