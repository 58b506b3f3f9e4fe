"""自定义异常类和错误处理系统"""

import traceback
from enum import Enum
from typing import Optional, Dict, Any
from datetime import datetime


class ErrorCode(Enum):
    """错误代码枚举"""
    # 通用错误 (1000-1999)
    UNKNOWN_ERROR = 1000
    INITIALIZATION_ERROR = 1001
    VALIDATION_ERROR = 1002
    OPERATION_CANCELLED = 1003

    # 配置错误 (2000-2999)
    CONFIG_FILE_NOT_FOUND = 2000
    CONFIG_PARSE_ERROR = 2001
    CONFIG_VALIDATION_ERROR = 2002
    CONFIG_RELOAD_ERROR = 2003

    # 集群查询错误 (3000-3999)
    CLUSTER_QUERY_ERROR = 3000
    CONNECTION_ERROR = 3001
    TIMEOUT_ERROR = 3002
    SERVICE_UNAVAILABLE = 3005
    INVALID_RESPONSE = 3006
    ENTITY_NOT_FOUND = 3007

    # 遥测错误 (4000-4999)
    TELEMETRY_CONFIG_ERROR = 4000
    TELEMETRY_SEND_ERROR = 4001

    # 调度错误 (5000-5999)
    SCHEDULER_ERROR = 5000
    PASS_EXECUTION_ERROR = 5001

    # 状态跟踪错误 (6000-6999)
    STATE_TRACKER_ERROR = 6000


class ClusterObserverError(Exception):
    """集群观察器基础异常类"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.UNKNOWN_ERROR,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        recoverable: bool = True
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.cause = cause
        self.recoverable = recoverable
        self.timestamp = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        """将异常转换为字典格式"""
        return {
            'error_code': self.error_code.value,
            'error_name': self.error_code.name,
            'message': self.message,
            'details': self.details,
            'recoverable': self.recoverable,
            'timestamp': self.timestamp.isoformat(),
            'cause': str(self.cause) if self.cause else None,
            'traceback': traceback.format_exc() if self.cause else None
        }

    def format_error(self) -> str:
        """格式化错误信息"""
        error_msg = f"[{self.error_code.name}] {self.message}"
        if self.details:
            details_str = ", ".join([f"{k}={v}" for k, v in self.details.items()])
            error_msg += f" (详情: {details_str})"
        if self.cause:
            error_msg += f" (原因: {str(self.cause)})"
        return error_msg


class ConfigError(ClusterObserverError):
    """配置相关异常"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.CONFIG_VALIDATION_ERROR,
        config_path: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop('details', {})
        if config_path:
            details['config_path'] = config_path
        super().__init__(message, error_code, details, **kwargs)


class ClusterQueryError(ClusterObserverError):
    """集群查询异常（非瞬时，不重试）"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.CLUSTER_QUERY_ERROR,
        operation: Optional[str] = None,
        status: Optional[int] = None,
        **kwargs
    ):
        details = kwargs.pop('details', {})
        if operation:
            details['operation'] = operation
        if status is not None:
            details['status'] = status
        kwargs.setdefault('recoverable', False)
        super().__init__(message, error_code, details, **kwargs)


class TransientClusterError(ClusterQueryError):
    """瞬时集群异常：通信失败、超时、服务暂不可用"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.SERVICE_UNAVAILABLE,
        **kwargs
    ):
        kwargs['recoverable'] = True
        super().__init__(message, error_code, **kwargs)


class EntityNotFoundError(TransientClusterError):
    """集群实体不存在（查询期间已被删除）；遍历时跳过该实体，不重试"""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, ErrorCode.ENTITY_NOT_FOUND, **kwargs)
        self.recoverable = False


class OperationCancelledError(ClusterObserverError):
    """监控轮次被协作式取消"""

    def __init__(self, message: str = "操作已取消", **kwargs):
        super().__init__(
            message,
            ErrorCode.OPERATION_CANCELLED,
            recoverable=False,
            **kwargs
        )


class TelemetryError(ClusterObserverError):
    """遥测相关异常"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.TELEMETRY_SEND_ERROR,
        sink_name: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop('details', {})
        if sink_name:
            details['sink_name'] = sink_name
        super().__init__(message, error_code, details, **kwargs)


class TelemetryConfigError(TelemetryError):
    """遥测配置异常"""

    def __init__(self, message: str, sink_name: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            ErrorCode.TELEMETRY_CONFIG_ERROR,
            sink_name=sink_name,
            recoverable=False,
            **kwargs
        )


class TelemetrySendError(TelemetryError):
    """遥测发送异常"""

    def __init__(self, message: str, sink_name: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            ErrorCode.TELEMETRY_SEND_ERROR,
            sink_name=sink_name,
            recoverable=True,
            **kwargs
        )


class SchedulerError(ClusterObserverError):
    """调度器相关异常"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.SCHEDULER_ERROR,
        **kwargs
    ):
        super().__init__(message, error_code, **kwargs)


class StateTrackerError(ClusterObserverError):
    """状态跟踪器相关异常"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.STATE_TRACKER_ERROR,
        **kwargs
    ):
        super().__init__(message, error_code, **kwargs)
