"""HTTP遥测输出实现"""

import asyncio
from typing import Dict, Any
from urllib.parse import urlparse

import aiohttp

from .base import BaseTelemetrySink
from ..models.telemetry import TelemetryRecord, UpgradeEventData
from ..utils.exceptions import TelemetryConfigError, TelemetrySendError
from ..utils.log_manager import get_logger


class HTTPTelemetrySink(BaseTelemetrySink):
    """HTTP遥测输出，将记录以 JSON 形式发送到 webhook"""

    def __init__(self, name: str, config: Dict[str, Any]):
        """
        初始化HTTP遥测输出

        Args:
            name: 输出名称
            config: 输出配置

        Raises:
            TelemetryConfigError: 配置无效
        """
        super().__init__(name, config)
        self.logger = get_logger(f'telemetry.http.{self.name}')

        # 重试配置
        self.max_retries = config.get('max_retries', 3)
        self.retry_delay = config.get('retry_delay', 1.0)  # 秒
        self.retry_backoff = config.get('retry_backoff', 2.0)  # 指数退避倍数

        # HTTP配置
        self.url = config.get('url', '')
        self.method = config.get('method', 'POST').upper()
        self.headers = config.get('headers', {})

        if not self.validate_config():
            raise TelemetryConfigError(f"HTTP遥测输出配置无效: {name}", sink_name=name)

    def validate_config(self) -> bool:
        """
        验证配置参数是否有效

        Returns:
            bool: 配置是否有效
        """
        if not self.url:
            self.logger.error(f"HTTP遥测输出 {self.name} 缺少URL配置")
            return False

        parsed_url = urlparse(self.url)
        if not parsed_url.scheme or not parsed_url.netloc:
            self.logger.error(f"HTTP遥测输出 {self.name} URL格式无效: {self.url}")
            return False

        valid_methods = ['POST', 'PUT', 'PATCH']
        if self.method not in valid_methods:
            self.logger.error(
                f"HTTP遥测输出 {self.name} 不支持的HTTP方法: {self.method}, "
                f"支持的方法: {valid_methods}"
            )
            return False

        if self.max_retries < 0:
            self.logger.error(f"HTTP遥测输出 {self.name} 最大重试次数不能为负数")
            return False

        if self.retry_delay < 0:
            self.logger.error(f"HTTP遥测输出 {self.name} 重试延迟不能为负数")
            return False

        return True

    async def report_health(self, record: TelemetryRecord) -> bool:
        self.logger.debug(
            f"上报健康记录: 状态={record.health_state.value}, 节点={record.node_name}, "
            f"应用={record.application_name}")
        return await self._send_with_retry({'EventType': 'HealthReport', **record.to_wire()})

    async def report_upgrade_status(self, event: UpgradeEventData) -> bool:
        self.logger.debug(f"上报升级状态: 集群={event.cluster_id}")
        return await self._send_with_retry({'EventType': 'UpgradeStatus', **event.to_wire()})

    async def _send_with_retry(self, payload: Dict[str, Any]) -> bool:
        """
        发送负载，失败时按指数退避重试

        Raises:
            TelemetrySendError: 所有重试均失败
        """
        for attempt in range(self.max_retries + 1):
            try:
                if await self._send_request(payload):
                    if attempt > 0:
                        self.logger.info(f"HTTP遥测输出 {self.name} 重试第 {attempt} 次后发送成功")
                    return True
                failure = "收到错误响应"
            except TelemetrySendError as e:
                failure = str(e)

            self.logger.warning(
                f"HTTP遥测输出 {self.name} 发送失败 "
                f"(尝试 {attempt + 1}/{self.max_retries + 1}): {failure}"
            )
            if attempt < self.max_retries:
                delay = self.retry_delay * (self.retry_backoff ** attempt)
                self.logger.debug(f"等待 {delay:.2f} 秒后重试")
                await asyncio.sleep(delay)

        self.logger.error(f"HTTP遥测输出 {self.name} 所有重试均失败，放弃发送")
        raise TelemetrySendError(f"HTTP遥测发送失败: {failure}", sink_name=self.name)

    async def _send_request(self, payload: Dict[str, Any]) -> bool:
        """
        发送HTTP请求

        Args:
            payload: JSON 负载

        Returns:
            bool: 状态码是否为 2xx
        """
        timeout = aiohttp.ClientTimeout(total=self.get_timeout())

        if not self.config.get('ssl_verify', True):
            connector = aiohttp.TCPConnector(ssl=False)
        else:
            connector = aiohttp.TCPConnector()

        try:
            async with aiohttp.ClientSession(timeout=timeout, connector=connector) as session:
                async with session.request(
                        method=self.method,
                        url=self.url,
                        headers=self.headers,
                        json=payload
                ) as response:
                    if 200 <= response.status < 300:
                        self.logger.debug(
                            f"HTTP遥测输出 {self.name} 发送成功 (状态码: {response.status})")
                        return True

                    response_text = await response.text()
                    self.logger.warning(
                        f"HTTP遥测输出 {self.name} 收到错误响应 "
                        f"(状态码: {response.status}, 响应: {response_text[:200]})"
                    )
                    return False

        except aiohttp.ClientError as e:
            raise TelemetrySendError(f"HTTP请求失败: {e}", sink_name=self.name, cause=e)
        except asyncio.TimeoutError as e:
            raise TelemetrySendError("HTTP请求超时", sink_name=self.name, cause=e)
