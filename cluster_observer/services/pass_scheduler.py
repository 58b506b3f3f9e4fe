"""监控轮次调度器

按 loop_sleep 间隔串行执行引擎的监控轮次，每轮受 execution_timeout 限制。
"""

import asyncio
from datetime import datetime
from typing import Callable, Optional

from ..models.settings import ObserverSettings
from ..utils.exceptions import SchedulerError
from ..utils.log_manager import get_logger
from .cluster_health_engine import ClusterHealthEngine


class PassScheduler:
    """
    监控轮次调度器

    同一时刻只运行一轮；轮次超时记录日志后继续下一轮；
    轮次抛出未预期的异常时停止循环并把异常交给调用方。
    """

    def __init__(self, engine: ClusterHealthEngine,
                 settings_provider: Callable[[], ObserverSettings],
                 token: Optional[asyncio.Event] = None):
        """
        初始化调度器

        Args:
            engine: 集群健康引擎
            settings_provider: 返回当前设置的可调用对象
            token: 取消令牌，置位后循环在当前轮结束后退出
        """
        self.engine = engine
        self.settings_provider = settings_provider
        self.token = token or asyncio.Event()
        self.logger = get_logger('scheduler')

        self.is_running = False
        self.completed_passes = 0
        self.timed_out_passes = 0
        self.last_pass_started: Optional[datetime] = None
        self.last_error: Optional[BaseException] = None

    async def run_once(self) -> bool:
        """
        执行一轮，受 execution_timeout 限制

        Returns:
            bool: 本轮是否在超时前完成
        """
        settings = self.settings_provider()
        timeout = settings.execution_timeout.total_seconds() or None
        self.last_pass_started = datetime.now()

        try:
            await asyncio.wait_for(self.engine.run_pass(self.token), timeout=timeout)
        except asyncio.TimeoutError:
            self.timed_out_passes += 1
            self.logger.error(f"监控轮次执行超时 ({settings.execution_timeout})，已中止")
            return False

        self.completed_passes += 1
        return True

    async def start(self):
        """
        启动调度循环，直到取消令牌被置位

        Raises:
            SchedulerError: 调度器已在运行
            Exception: 轮次中的未预期异常
        """
        if self.is_running:
            raise SchedulerError("调度器已经在运行")

        self.is_running = True
        self.logger.info("启动监控轮次调度器")
        try:
            while not self.token.is_set():
                try:
                    await self.run_once()
                except Exception as e:
                    self.last_error = e
                    self.logger.critical(f"监控轮次发生未预期的异常，调度器停止: {e}")
                    raise

                if await self._sleep(self.settings_provider().loop_sleep.total_seconds()):
                    break
        finally:
            self.is_running = False
            self.logger.info("监控轮次调度器已停止")

    async def _sleep(self, seconds: float) -> bool:
        """等待下一轮；期间取消令牌被置位时返回 True"""
        if seconds <= 0:
            await asyncio.sleep(0)
            return self.token.is_set()
        try:
            await asyncio.wait_for(self.token.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    def stop(self):
        """请求停止调度循环"""
        self.token.set()

    def get_stats(self):
        """获取调度统计"""
        return {
            'is_running': self.is_running,
            'completed_passes': self.completed_passes,
            'timed_out_passes': self.timed_out_passes,
            'last_pass_started': self.last_pass_started.isoformat() if self.last_pass_started else None,
            'last_error': str(self.last_error) if self.last_error else None,
        }
