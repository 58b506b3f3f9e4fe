"""重试机制

集群查询通过 RetryHandler 包装：瞬时错误按策略重试，
取消请求和非瞬时错误立即向上抛出。
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Any, Awaitable, Dict, Optional, List, TypeVar

from .exceptions import (
    ClusterObserverError, EntityNotFoundError, OperationCancelledError, TransientClusterError
)

T = TypeVar('T')
logger = logging.getLogger(__name__)


class RetryStrategy(Enum):
    """重试策略"""
    FIXED_DELAY = "fixed_delay"
    EXPONENTIAL_BACKOFF = "exponential_backoff"
    LINEAR_BACKOFF = "linear_backoff"


@dataclass
class RetryConfig:
    """重试配置"""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL_BACKOFF
    backoff_multiplier: float = 2.0
    jitter: bool = True
    retryable_errors: List[type] = field(default_factory=lambda: [TransientClusterError])

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]]) -> 'RetryConfig':
        """
        从 cluster.retry 配置段构建重试配置

        Args:
            config: 重试配置字典，可为空

        Returns:
            RetryConfig: 重试配置
        """
        config = config or {}
        strategy = config.get('strategy', RetryStrategy.EXPONENTIAL_BACKOFF.value)
        return cls(
            max_attempts=config.get('max_attempts', 3),
            base_delay=config.get('base_delay', 1.0),
            max_delay=config.get('max_delay', 60.0),
            strategy=RetryStrategy(strategy),
            backoff_multiplier=config.get('backoff_multiplier', 2.0),
            jitter=config.get('jitter', True)
        )


class RetryHandler:
    """重试处理器"""

    def __init__(self, config: RetryConfig):
        self.config = config

    def calculate_delay(self, attempt: int) -> float:
        """计算重试延迟时间"""
        if self.config.strategy == RetryStrategy.FIXED_DELAY:
            delay = self.config.base_delay
        elif self.config.strategy == RetryStrategy.EXPONENTIAL_BACKOFF:
            delay = self.config.base_delay * (
                        self.config.backoff_multiplier ** (attempt - 1))
        elif self.config.strategy == RetryStrategy.LINEAR_BACKOFF:
            delay = self.config.base_delay * attempt
        else:
            delay = self.config.base_delay

        # 限制最大延迟
        delay = min(delay, self.config.max_delay)

        # 添加抖动
        if self.config.jitter:
            delay = delay * (0.5 + random.random() * 0.5)

        return delay

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """判断是否应该重试"""
        if attempt >= self.config.max_attempts:
            return False

        if isinstance(error, (OperationCancelledError, EntityNotFoundError,
                              asyncio.CancelledError)):
            return False

        if self.config.retryable_errors:
            return any(isinstance(error, error_type) for error_type in
                       self.config.retryable_errors)

        if isinstance(error, ClusterObserverError):
            return error.recoverable

        return False

    async def run(self, operation: Callable[[], Awaitable[T]], name: str = 'operation') -> T:
        """
        执行异步操作，失败时按配置重试

        Args:
            operation: 无参协程工厂，每次尝试调用一次
            name: 操作名称，用于日志

        Returns:
            操作结果

        Raises:
            最后一次尝试的异常，或不可重试的异常
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except Exception as error:
                if not self.should_retry(error, attempt):
                    if attempt > 1:
                        logger.warning(
                            f"操作 {name} 重试 {attempt} 次后仍失败: {error}")
                    raise

                delay = self.calculate_delay(attempt)
                logger.warning(
                    f"操作 {name} 执行失败 (尝试 {attempt}/{self.config.max_attempts}): "
                    f"{error}，{delay:.2f}秒后重试"
                )
                await asyncio.sleep(delay)
