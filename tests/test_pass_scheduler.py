"""测试监控轮次调度器"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import pytest

from cluster_observer.models.settings import ObserverSettings
from cluster_observer.services.pass_scheduler import PassScheduler
from cluster_observer.utils.exceptions import SchedulerError


class TestPassScheduler:
    """测试PassScheduler类"""

    def setup_method(self):
        """测试前准备"""
        self.settings = ObserverSettings(loop_sleep=timedelta(0),
                                         execution_timeout=timedelta(seconds=5))
        self.engine = Mock()
        self.engine.run_pass = AsyncMock()

    def make_scheduler(self):
        return PassScheduler(self.engine, lambda: self.settings)

    @pytest.mark.asyncio
    async def test_run_once(self):
        """测试执行一轮"""
        scheduler = self.make_scheduler()

        assert await scheduler.run_once() is True

        self.engine.run_pass.assert_awaited_once_with(scheduler.token)
        assert scheduler.completed_passes == 1
        assert scheduler.last_pass_started is not None

    @pytest.mark.asyncio
    async def test_run_once_timeout(self):
        """测试轮次超时被中止"""
        self.settings.execution_timeout = timedelta(milliseconds=10)

        async def slow_pass(token):
            await asyncio.sleep(10)

        self.engine.run_pass = slow_pass
        scheduler = self.make_scheduler()

        assert await scheduler.run_once() is False
        assert scheduler.timed_out_passes == 1
        assert scheduler.completed_passes == 0

    @pytest.mark.asyncio
    async def test_loop_until_token_set(self):
        """测试循环执行直到取消令牌置位"""
        scheduler = self.make_scheduler()
        calls = []

        async def run_pass(token):
            calls.append(token)
            if len(calls) == 3:
                token.set()

        self.engine.run_pass = run_pass

        await scheduler.start()

        assert len(calls) == 3
        assert scheduler.completed_passes == 3
        assert scheduler.is_running is False

    @pytest.mark.asyncio
    async def test_token_set_before_start(self):
        """测试启动前已取消则不执行"""
        scheduler = self.make_scheduler()
        scheduler.stop()

        await scheduler.start()

        self.engine.run_pass.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unexpected_error_stops_loop(self):
        """测试未预期的异常停止循环并向上传递"""
        self.engine.run_pass = AsyncMock(side_effect=RuntimeError("内部错误"))
        scheduler = self.make_scheduler()

        with pytest.raises(RuntimeError, match="内部错误"):
            await scheduler.start()

        assert isinstance(scheduler.last_error, RuntimeError)
        assert scheduler.is_running is False
        assert scheduler.get_stats()['last_error'] == "内部错误"

    @pytest.mark.asyncio
    async def test_start_twice(self):
        """测试重复启动"""
        scheduler = self.make_scheduler()
        scheduler.is_running = True

        with pytest.raises(SchedulerError):
            await scheduler.start()

    @pytest.mark.asyncio
    async def test_sleep_interrupted_by_token(self):
        """测试等待期间被取消"""
        scheduler = self.make_scheduler()
        scheduler.token.set()

        assert await scheduler._sleep(60) is True

    @pytest.mark.asyncio
    async def test_sleep_elapses(self):
        """测试等待正常结束"""
        scheduler = self.make_scheduler()

        assert await scheduler._sleep(0.01) is False

    def test_get_stats(self):
        """测试调度统计"""
        stats = self.make_scheduler().get_stats()

        assert stats == {
            'is_running': False,
            'completed_passes': 0,
            'timed_out_passes': 0,
            'last_pass_started': None,
            'last_error': None,
        }
