"""重试机制测试"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from cluster_observer.utils.error_handler import RetryConfig, RetryHandler, RetryStrategy
from cluster_observer.utils.exceptions import (
    ClusterQueryError,
    EntityNotFoundError,
    OperationCancelledError,
    TransientClusterError
)


class TestRetryConfig:
    """重试配置测试"""

    def test_defaults(self):
        """测试默认配置"""
        config = RetryConfig.from_config(None)

        assert config.max_attempts == 3
        assert config.strategy == RetryStrategy.EXPONENTIAL_BACKOFF
        assert config.retryable_errors == [TransientClusterError]

    def test_from_config(self):
        """测试从配置段构建"""
        config = RetryConfig.from_config({
            'max_attempts': 5,
            'base_delay': 0.5,
            'strategy': 'linear_backoff',
            'jitter': False
        })

        assert config.max_attempts == 5
        assert config.base_delay == 0.5
        assert config.strategy == RetryStrategy.LINEAR_BACKOFF
        assert config.jitter is False


class TestRetryHandler:
    """重试处理器测试"""

    def test_fixed_delay_strategy(self):
        """测试固定延迟策略"""
        handler = RetryHandler(RetryConfig(
            base_delay=2.0,
            strategy=RetryStrategy.FIXED_DELAY,
            jitter=False
        ))

        assert handler.calculate_delay(1) == 2.0
        assert handler.calculate_delay(3) == 2.0

    def test_exponential_backoff_strategy(self):
        """测试指数退避策略"""
        handler = RetryHandler(RetryConfig(
            base_delay=1.0,
            strategy=RetryStrategy.EXPONENTIAL_BACKOFF,
            backoff_multiplier=2.0,
            jitter=False
        ))

        assert handler.calculate_delay(1) == 1.0
        assert handler.calculate_delay(2) == 2.0
        assert handler.calculate_delay(3) == 4.0

    def test_linear_backoff_strategy(self):
        """测试线性退避策略"""
        handler = RetryHandler(RetryConfig(
            base_delay=1.0,
            strategy=RetryStrategy.LINEAR_BACKOFF,
            jitter=False
        ))

        assert handler.calculate_delay(2) == 2.0
        assert handler.calculate_delay(3) == 3.0

    def test_max_delay_limit(self):
        """测试最大延迟限制"""
        handler = RetryHandler(RetryConfig(base_delay=1.0, max_delay=5.0, jitter=False))

        assert handler.calculate_delay(10) == 5.0

    def test_jitter_range(self):
        """测试抖动范围"""
        handler = RetryHandler(RetryConfig(base_delay=2.0, strategy=RetryStrategy.FIXED_DELAY))

        for _ in range(20):
            assert 1.0 <= handler.calculate_delay(1) <= 2.0

    def test_should_retry_transient_only(self):
        """测试只有瞬时错误会重试"""
        handler = RetryHandler(RetryConfig(max_attempts=3))

        assert handler.should_retry(TransientClusterError("超时"), 1) is True
        assert handler.should_retry(TransientClusterError("超时"), 3) is False
        assert handler.should_retry(ClusterQueryError("拒绝访问"), 1) is False
        assert handler.should_retry(ValueError("值错误"), 1) is False

    def test_cancellation_never_retried(self):
        """测试取消请求不重试"""
        handler = RetryHandler(RetryConfig(
            max_attempts=3, retryable_errors=[OperationCancelledError]))

        assert handler.should_retry(OperationCancelledError(), 1) is False

    def test_missing_entity_never_retried(self):
        """测试实体不存在时不重试，即使属于瞬时错误类型"""
        handler = RetryHandler(RetryConfig(max_attempts=3))

        assert handler.should_retry(EntityNotFoundError("节点已删除", status=404), 1) is False

    @pytest.mark.asyncio
    async def test_run_does_not_retry_missing_entity(self):
        """测试实体不存在时立即抛出且不等待"""
        handler = RetryHandler(RetryConfig(max_attempts=3, base_delay=0.1))
        operation = AsyncMock(side_effect=EntityNotFoundError("分区已删除", status=404))

        with patch('asyncio.sleep', AsyncMock()) as mock_sleep:
            with pytest.raises(EntityNotFoundError):
                await handler.run(operation, 'GetPartitionHealth')

        assert operation.call_count == 1
        mock_sleep.assert_not_awaited()

    def test_recoverable_flag_without_retryable_list(self):
        """测试未指定可重试类型时按 recoverable 判断"""
        handler = RetryHandler(RetryConfig(max_attempts=3, retryable_errors=[]))

        assert handler.should_retry(TransientClusterError("忙"), 1) is True
        assert handler.should_retry(ClusterQueryError("拒绝访问"), 1) is False
        assert handler.should_retry(ConnectionError("连接失败"), 1) is False

    @pytest.mark.asyncio
    async def test_run_success_after_retry(self):
        """测试重试后成功"""
        handler = RetryHandler(RetryConfig(max_attempts=3, base_delay=0.1, jitter=False))
        operation = AsyncMock(side_effect=[TransientClusterError("忙"), 'ok'])

        with patch('asyncio.sleep', AsyncMock()) as mock_sleep:
            result = await handler.run(operation, 'GetClusterHealth')

        assert result == 'ok'
        assert operation.call_count == 2
        mock_sleep.assert_awaited_once_with(0.1)

    @pytest.mark.asyncio
    async def test_run_exhausts_attempts(self):
        """测试重试次数耗尽后抛出最后的异常"""
        handler = RetryHandler(RetryConfig(max_attempts=2, base_delay=0, jitter=False))
        operation = AsyncMock(side_effect=TransientClusterError("忙"))

        with pytest.raises(TransientClusterError):
            await handler.run(operation)

        assert operation.call_count == 2

    @pytest.mark.asyncio
    async def test_run_does_not_retry_cancellation(self):
        """测试协程取消立即传递"""
        handler = RetryHandler(RetryConfig(max_attempts=3, base_delay=0))
        operation = AsyncMock(side_effect=asyncio.CancelledError())

        with pytest.raises(asyncio.CancelledError):
            await handler.run(operation)

        assert operation.call_count == 1
