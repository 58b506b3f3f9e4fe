"""配置管理器"""

import os
import yaml
from typing import Dict, Any, List, Optional
from ..models.settings import ObserverSettings
from ..utils.exceptions import ConfigError
from ..utils.config_validator import ConfigValidator
from ..utils.log_manager import get_logger


class ConfigManager:
    """配置管理器，负责YAML配置文件的加载、解析和验证"""

    def __init__(self, config_path: str):
        """
        初始化配置管理器

        Args:
            config_path: 配置文件路径
        """
        self.config_path = config_path
        self.config: Dict[str, Any] = {}
        self.last_modified: Optional[float] = None
        self.logger = get_logger('config_manager')

    def load_config(self) -> Dict[str, Any]:
        """
        加载YAML配置文件

        验证失败时保留之前已加载的配置。

        Returns:
            Dict[str, Any]: 配置字典

        Raises:
            ConfigError: 配置加载或验证失败
        """
        self.logger.info(f"开始加载配置文件: {self.config_path}")

        try:
            if not os.path.exists(self.config_path):
                raise ConfigError(f"配置文件不存在: {self.config_path}", config_path=self.config_path)

            with open(self.config_path, 'r', encoding='utf-8') as file:
                config = yaml.safe_load(file)

            if config is None:
                raise ConfigError("配置文件为空", config_path=self.config_path)

            self._validate_config(config)

            sinks_count = len((config.get('telemetry') or {}).get('sinks', []))
            self.logger.info(
                f"配置验证成功，集群网关: {config['cluster']['endpoint']}，遥测输出: {sinks_count} 个")

            old_config = self.config.copy() if self.config else {}
            self.config = config
            self.last_modified = os.path.getmtime(self.config_path)

            if old_config:
                self._log_config_changes(old_config, config)
            else:
                self.logger.info("首次加载配置文件")

            return self.config

        except ConfigError as e:
            self.logger.error(f"配置无效: {e}")
            raise
        except yaml.YAMLError as e:
            self.logger.error(f"YAML格式错误: {e}")
            raise ConfigError(f"YAML格式错误: {e}", config_path=self.config_path, cause=e)
        except PermissionError as e:
            self.logger.error(f"没有权限读取配置文件: {self.config_path}")
            raise ConfigError(f"没有权限读取配置文件: {self.config_path}",
                              config_path=self.config_path, cause=e)
        except OSError as e:
            self.logger.error(f"读取配置文件失败: {e}")
            raise ConfigError(f"读取配置文件失败: {e}", config_path=self.config_path, cause=e)

    def _validate_config(self, config: Dict[str, Any]) -> None:
        """
        验证配置文件内容

        Args:
            config: 配置字典

        Raises:
            ConfigError: 配置验证失败
        """
        if not isinstance(config, dict):
            raise ConfigError("配置文件根节点必须是字典类型")

        if 'global' in config:
            ConfigValidator.validate_global_config(config['global'])

        if 'cluster' not in config:
            raise ConfigError("配置文件缺少 cluster 配置段")
        ConfigValidator.validate_cluster_config(config['cluster'])

        if 'observer' in config:
            ConfigValidator.validate_observer_config(config['observer'])

        if 'telemetry' in config:
            ConfigValidator.validate_telemetry_config(config['telemetry'])

        if 'event_trace' in config:
            ConfigValidator.validate_event_trace_config(config['event_trace'])

        ObserverSettings.from_config(config)

    def get_global_config(self) -> Dict[str, Any]:
        """
        获取全局配置

        Returns:
            Dict[str, Any]: 全局配置字典
        """
        return self.config.get('global') or {}

    def get_cluster_config(self) -> Dict[str, Any]:
        """
        获取集群连接配置

        Returns:
            Dict[str, Any]: cluster 配置段
        """
        return self.config.get('cluster') or {}

    def get_telemetry_config(self) -> Dict[str, Any]:
        return self.config.get('telemetry') or {}

    def get_sink_configs(self) -> List[Dict[str, Any]]:
        """
        获取遥测输出配置

        Returns:
            List[Dict[str, Any]]: 输出配置列表
        """
        return self.get_telemetry_config().get('sinks', [])

    def get_event_trace_config(self) -> Dict[str, Any]:
        return self.config.get('event_trace') or {}

    def get_observer_settings(self) -> ObserverSettings:
        """
        按当前配置构建观察器设置

        Returns:
            ObserverSettings: 设置对象
        """
        return ObserverSettings.from_config(self.config)

    def is_config_changed(self) -> bool:
        """
        检查配置文件是否已修改

        Returns:
            bool: 配置文件是否已修改
        """
        try:
            if not os.path.exists(self.config_path):
                return False

            current_modified = os.path.getmtime(self.config_path)
            return self.last_modified is None or current_modified > self.last_modified

        except OSError:
            return False

    def reload_config(self) -> Dict[str, Any]:
        """
        重新加载配置文件

        Returns:
            Dict[str, Any]: 新的配置字典

        Raises:
            ConfigError: 配置重新加载失败，此时原配置保持不变
        """
        self.logger.info("重新加载配置文件")
        return self.load_config()

    def _log_config_changes(self, old_config: Dict[str, Any], new_config: Dict[str, Any]) -> None:
        """
        记录配置变更

        Args:
            old_config: 旧配置
            new_config: 新配置
        """
        for section in ('global', 'cluster', 'observer', 'event_trace'):
            old_section = old_config.get(section) or {}
            new_section = new_config.get(section) or {}
            if old_section != new_section:
                self.logger.info(f"{section} 配置已修改")
                self.logger.debug(f"{section} 旧配置: {old_section}")
                self.logger.debug(f"{section} 新配置: {new_section}")

        old_sinks = {s['name']: s for s in (old_config.get('telemetry') or {}).get('sinks', [])}
        new_sinks = {s['name']: s for s in (new_config.get('telemetry') or {}).get('sinks', [])}

        added = set(new_sinks) - set(old_sinks)
        if added:
            self.logger.info(f"新增遥测输出: {', '.join(sorted(added))}")

        removed = set(old_sinks) - set(new_sinks)
        if removed:
            self.logger.info(f"删除遥测输出: {', '.join(sorted(removed))}")

        for name in set(old_sinks) & set(new_sinks):
            if old_sinks[name] != new_sinks[name]:
                self.logger.info(f"遥测输出配置已修改: {name}")
