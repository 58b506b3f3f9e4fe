"""基于 HTTP 网关的健康快照提供者"""

import asyncio
import json
import re
import ssl
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlparse

import aiohttp

from .base import BaseHealthProvider
from ..models.health import (
    ApplicationHealth, ApplicationHealthState, ClusterSnapshot, HealthEvaluation,
    HealthEvent, HealthState, NodeHealth, NodeHealthState, NodeInfo, NodeStatus,
    PartitionHealth, PartitionHealthState, RepairTask, ReplicaHealth,
    ReplicaHealthState, ServiceHealth, ServiceHealthState, UpgradeDomainProgress,
    UpgradeProgress, UpgradeState, SYSTEM_APPLICATION_NAME
)
from ..utils.error_handler import RetryConfig, RetryHandler
from ..utils.exceptions import (
    ClusterQueryError, ConfigError, EntityNotFoundError, ErrorCode, TransientClusterError
)
from ..utils.log_manager import get_logger

# HealthStateFilter: Warning(4) | Error(8)
UNHEALTHY_STATE_FILTER = 12
# RepairTaskStateFilter: Active(Created|Claimed|Preparing) | Approved | Executing
ACTIVE_REPAIR_STATE_FILTER = 31
REPAIR_MANAGER_SERVICE_NAME = 'fabric:/System/RepairManagerService'

_TRANSIENT_STATUS = {408, 429, 500, 502, 503, 504}
_FRACTION_PATTERN = re.compile(r'\.(\d{6})\d+')


def entity_id(name: str) -> str:
    """
    将实体名称转换为网关路径中的标识

    fabric:/App/Svc -> App~Svc
    """
    if name.startswith('fabric:/'):
        name = name[len('fabric:/'):]
    return quote(name.replace('/', '~'), safe='~')


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """解析网关返回的 UTC 时间戳，最小值视为空"""
    if not value:
        return None
    text = _FRACTION_PATTERN.sub(r'.\1', value.strip()).replace('Z', '+00:00')
    try:
        result = datetime.fromisoformat(text)
    except ValueError:
        return None
    if result.year <= 1:
        return None
    if result.tzinfo is None:
        result = result.replace(tzinfo=timezone.utc)
    return result


def _parse_events(items: Optional[List[Dict[str, Any]]]) -> List[HealthEvent]:
    return [
        HealthEvent(
            source_id=item.get('SourceId', ''),
            property=item.get('Property', ''),
            health_state=HealthState.parse(item.get('HealthState')),
            description=item.get('Description') or '',
            source_timestamp=_parse_timestamp(item.get('SourceUtcTimestamp'))
        )
        for item in items or []
    ]


def _parse_evaluations(items: Optional[List[Dict[str, Any]]]) -> List[HealthEvaluation]:
    evaluations = []
    for item in items or []:
        evaluation = item.get('HealthEvaluation', item)
        evaluations.append(HealthEvaluation(
            kind=evaluation.get('Kind', 'Invalid'),
            description=evaluation.get('Description') or '',
            aggregated_health_state=HealthState.parse(evaluation.get('AggregatedHealthState'))
        ))
    return evaluations


def _parse_upgrade_progress(payload: Dict[str, Any],
                            application_name: Optional[str] = None) -> Optional[UpgradeProgress]:
    """
    解析升级进度

    状态为 Invalid 或没有开始时间时表示当前没有升级，返回 None。
    """
    state = UpgradeState.parse(payload.get('UpgradeState'))
    start = _parse_timestamp(payload.get('StartTimestampUtc'))
    if state == UpgradeState.INVALID or start is None:
        return None

    domain = None
    domain_payload = payload.get('CurrentUpgradeDomainProgress')
    if domain_payload:
        domain = UpgradeDomainProgress(
            domain_name=domain_payload.get('DomainName') or '',
            node_names=[
                node.get('NodeName') for node in domain_payload.get('NodeUpgradeProgressList') or []
                if node.get('NodeName')
            ]
        )

    return UpgradeProgress(
        upgrade_state=state,
        current_domain=domain,
        start_timestamp=start,
        application_name=application_name or payload.get('Name'),
        target_version=(payload.get('TargetApplicationTypeVersion')
                        or payload.get('CodeVersion'))
    )


class RestHealthProvider(BaseHealthProvider):
    """通过集群 HTTP 网关查询健康信息"""

    def __init__(self, name: str, config: Dict[str, Any]):
        """
        初始化提供者

        Args:
            name: 提供者名称
            config: cluster 配置段，支持 endpoint、api_version、headers、
                ssl_verify、cert_file、key_file、retry

        Raises:
            ConfigError: endpoint 无效
        """
        super().__init__(name, config)
        self.logger = get_logger(f'provider.rest.{name}')

        self.endpoint = str(config.get('endpoint', '')).rstrip('/')
        self.api_version = str(config.get('api_version', '6.0'))
        self.headers = config.get('headers', {})
        self.ssl_verify = config.get('ssl_verify', True)
        self.cert_file = config.get('cert_file')
        self.key_file = config.get('key_file')
        self.retry_handler = RetryHandler(RetryConfig.from_config(config.get('retry')))

        if not self.validate_config():
            raise ConfigError(f"集群连接配置无效: {self.endpoint}")

    def validate_config(self) -> bool:
        """
        验证配置参数是否有效

        Returns:
            bool: 配置是否有效
        """
        parsed = urlparse(self.endpoint)
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            self.logger.error(f"集群网关地址格式无效: {self.endpoint}")
            return False
        if self.key_file and not self.cert_file:
            self.logger.error("配置了 key_file 但缺少 cert_file")
            return False
        return True

    def _create_connector(self) -> aiohttp.TCPConnector:
        if not self.ssl_verify:
            return aiohttp.TCPConnector(ssl=False)
        if self.cert_file:
            context = ssl.create_default_context()
            context.load_cert_chain(self.cert_file, self.key_file)
            return aiohttp.TCPConnector(ssl=context)
        return aiohttp.TCPConnector()

    async def _request(self, path: str, timeout: float,
                       params: Optional[Dict[str, Any]] = None) -> str:
        """
        发送 GET 请求并返回响应正文

        Raises:
            EntityNotFoundError: 实体不存在 (404)
            TransientClusterError: 网络错误、超时、可重试的状态码
            ClusterQueryError: 其他错误响应
        """
        query = {'api-version': self.api_version, 'timeout': max(1, int(timeout))}
        if params:
            query.update(params)
        url = f"{self.endpoint}{path}"

        client_timeout = aiohttp.ClientTimeout(total=timeout)
        try:
            async with aiohttp.ClientSession(timeout=client_timeout,
                                             connector=self._create_connector()) as session:
                async with session.get(url, params=query, headers=self.headers) as response:
                    body = await response.text()
                    if 200 <= response.status < 300:
                        return body

                    message = f"集群网关返回错误 (状态码: {response.status}, 路径: {path}): {body[:200]}"
                    if response.status == 404:
                        raise EntityNotFoundError(message, operation=path, status=404)
                    if response.status in _TRANSIENT_STATUS:
                        raise TransientClusterError(message, operation=path, status=response.status)
                    raise ClusterQueryError(message, operation=path, status=response.status)

        except aiohttp.ClientError as e:
            raise TransientClusterError(
                f"集群网关请求失败: {e}", ErrorCode.CONNECTION_ERROR, operation=path, cause=e)
        except asyncio.TimeoutError as e:
            raise TransientClusterError(
                f"集群网关请求超时: {path}", ErrorCode.TIMEOUT_ERROR, operation=path, cause=e)

    async def _get_json(self, path: str, timeout: float,
                        params: Optional[Dict[str, Any]] = None) -> Any:
        """带重试地发送请求并解析 JSON 响应"""
        body = await self.retry_handler.run(
            lambda: self._request(path, timeout, params), name=path)
        if not body:
            return {}
        try:
            return json.loads(body)
        except json.JSONDecodeError as e:
            raise ClusterQueryError(
                f"集群网关响应不是有效的JSON: {path}", ErrorCode.INVALID_RESPONSE,
                operation=path, cause=e)

    async def get_cluster_health(self, timeout: float) -> ClusterSnapshot:
        payload = await self._get_json('/$/GetClusterHealth', timeout, {
            'NodesHealthStateFilter': UNHEALTHY_STATE_FILTER,
            'ApplicationsHealthStateFilter': UNHEALTHY_STATE_FILTER,
            'ExcludeHealthStatistics': 'false',
        })
        return ClusterSnapshot(
            aggregated_health_state=HealthState.parse(payload.get('AggregatedHealthState')),
            node_health_states=[
                NodeHealthState(item.get('Name', ''), HealthState.parse(item.get('AggregatedHealthState')))
                for item in payload.get('NodeHealthStates') or []
            ],
            application_health_states=[
                ApplicationHealthState(item.get('Name', ''),
                                       HealthState.parse(item.get('AggregatedHealthState')))
                for item in payload.get('ApplicationHealthStates') or []
            ],
            unhealthy_evaluations=_parse_evaluations(payload.get('UnhealthyEvaluations'))
        )

    async def get_application_health(self, application_name: str,
                                     timeout: float) -> ApplicationHealth:
        payload = await self._get_json(
            f'/Applications/{entity_id(application_name)}/$/GetHealth', timeout)
        return ApplicationHealth(
            application_name=payload.get('Name', application_name),
            aggregated_health_state=HealthState.parse(payload.get('AggregatedHealthState')),
            health_events=_parse_events(payload.get('HealthEvents')),
            service_health_states=[
                ServiceHealthState(item.get('ServiceName', ''),
                                   HealthState.parse(item.get('AggregatedHealthState')))
                for item in payload.get('ServiceHealthStates') or []
            ],
            unhealthy_evaluations=_parse_evaluations(payload.get('UnhealthyEvaluations'))
        )

    async def get_service_health(self, service_name: str, timeout: float) -> ServiceHealth:
        payload = await self._get_json(f'/Services/{entity_id(service_name)}/$/GetHealth', timeout)
        return ServiceHealth(
            service_name=payload.get('Name', service_name),
            aggregated_health_state=HealthState.parse(payload.get('AggregatedHealthState')),
            health_events=_parse_events(payload.get('HealthEvents')),
            partition_health_states=[
                PartitionHealthState(str(item.get('PartitionId', '')),
                                     HealthState.parse(item.get('AggregatedHealthState')))
                for item in payload.get('PartitionHealthStates') or []
            ],
            unhealthy_evaluations=_parse_evaluations(payload.get('UnhealthyEvaluations'))
        )

    async def get_partition_health(self, partition_id: str, timeout: float) -> PartitionHealth:
        payload = await self._get_json(f'/Partitions/{quote(partition_id)}/$/GetHealth', timeout)
        return PartitionHealth(
            partition_id=str(payload.get('PartitionId', partition_id)),
            aggregated_health_state=HealthState.parse(payload.get('AggregatedHealthState')),
            health_events=_parse_events(payload.get('HealthEvents')),
            replica_health_states=[
                ReplicaHealthState(
                    partition_id=str(item.get('PartitionId', partition_id)),
                    replica_id=str(item.get('ReplicaId') or item.get('InstanceId') or ''),
                    aggregated_health_state=HealthState.parse(item.get('AggregatedHealthState'))
                )
                for item in payload.get('ReplicaHealthStates') or []
            ],
            unhealthy_evaluations=_parse_evaluations(payload.get('UnhealthyEvaluations'))
        )

    async def get_replica_health(self, partition_id: str, replica_id: str,
                                 timeout: float) -> ReplicaHealth:
        payload = await self._get_json(
            f'/Partitions/{quote(partition_id)}/$/GetReplicas/{quote(replica_id)}/$/GetHealth',
            timeout)
        return ReplicaHealth(
            partition_id=partition_id,
            replica_id=replica_id,
            aggregated_health_state=HealthState.parse(payload.get('AggregatedHealthState')),
            health_events=_parse_events(payload.get('HealthEvents')),
            unhealthy_evaluations=_parse_evaluations(payload.get('UnhealthyEvaluations'))
        )

    async def get_node_health(self, node_name: str, timeout: float) -> NodeHealth:
        payload = await self._get_json(f'/Nodes/{quote(node_name, safe="")}/$/GetHealth', timeout)
        return NodeHealth(
            node_name=payload.get('Name', node_name),
            aggregated_health_state=HealthState.parse(payload.get('AggregatedHealthState')),
            health_events=_parse_events(payload.get('HealthEvents')),
            unhealthy_evaluations=_parse_evaluations(payload.get('UnhealthyEvaluations'))
        )

    async def get_node_list(self, timeout: float) -> List[NodeInfo]:
        nodes: List[NodeInfo] = []
        continuation = None
        while True:
            params = {'ContinuationToken': continuation} if continuation else None
            payload = await self._get_json('/Nodes', timeout, params)
            for item in payload.get('Items') or []:
                nodes.append(NodeInfo(
                    node_name=item.get('Name', ''),
                    node_status=NodeStatus.parse(item.get('NodeStatus')),
                    node_type=item.get('Type'),
                    upgrade_domain=item.get('UpgradeDomain')
                ))
            continuation = payload.get('ContinuationToken')
            if not continuation:
                return nodes

    async def get_application_name(self, service_name: str, timeout: float) -> str:
        payload = await self._get_json(
            f'/Services/{entity_id(service_name)}/$/GetApplicationName', timeout)
        return payload.get('Name', '')

    async def get_active_repair_tasks(self, timeout: float) -> List[RepairTask]:
        payload = await self._get_json('/$/GetRepairTaskList', timeout,
                                       {'StateFilter': ACTIVE_REPAIR_STATE_FILTER})
        items = payload if isinstance(payload, list) else payload.get('Items') or []
        return [RepairTask(task_id=item.get('TaskId', ''), state=item.get('State', ''))
                for item in items]

    async def is_repair_capability_deployed(self, timeout: float) -> bool:
        payload = await self._get_json(
            f'/Applications/{entity_id(SYSTEM_APPLICATION_NAME)}/$/GetServices', timeout)
        return any(item.get('Name') == REPAIR_MANAGER_SERVICE_NAME
                   for item in payload.get('Items') or [])

    async def get_upgrade_progress(self, timeout: float,
                                   application_name: Optional[str] = None
                                   ) -> Optional[UpgradeProgress]:
        if application_name:
            path = f'/Applications/{entity_id(application_name)}/$/GetUpgradeProgress'
        else:
            path = '/$/GetUpgradeProgress'
        payload = await self._get_json(path, timeout)
        return _parse_upgrade_progress(payload, application_name)

    async def get_cluster_id(self, timeout: float) -> Optional[str]:
        payload = await self._get_json('/$/GetClusterManifest', timeout)
        manifest = payload.get('Manifest')
        if not manifest:
            return None
        try:
            root = ET.fromstring(manifest)
        except ET.ParseError as e:
            self.logger.warning(f"集群清单解析失败: {e}")
            return None

        sections = {}
        for element in root.iter():
            if element.tag.endswith('Section'):
                for parameter in element:
                    if parameter.get('Name') == 'ClusterId':
                        sections[element.get('Name')] = parameter.get('Value')
        return sections.get('Paas') or sections.get('Diagnostics')
