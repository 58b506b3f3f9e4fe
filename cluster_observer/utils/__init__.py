"""工具模块"""

from .exceptions import (
    ClusterObserverError, ConfigError, ClusterQueryError, TransientClusterError,
    EntityNotFoundError, OperationCancelledError, TelemetryError
)
from .log_manager import LogManager, LogLevel, get_logger, configure_logging, log_manager

__all__ = [
    'ClusterObserverError', 'ConfigError', 'ClusterQueryError', 'TransientClusterError',
    'EntityNotFoundError', 'OperationCancelledError', 'TelemetryError',
    'LogManager', 'LogLevel', 'get_logger', 'configure_logging', 'log_manager'
]
