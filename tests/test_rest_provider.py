"""测试基于 HTTP 网关的健康快照提供者"""

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, Mock, patch

import pytest
from aiohttp import ClientError

from cluster_observer.models.health import HealthState, NodeStatus, UpgradeState
from cluster_observer.providers.rest_provider import (
    RestHealthProvider, _parse_timestamp, entity_id
)
from cluster_observer.utils.exceptions import (
    ClusterQueryError, ConfigError, EntityNotFoundError, TransientClusterError
)


def make_session(status=200, body='{}', side_effect=None):
    """构造模拟的 aiohttp 会话"""
    mock_response = Mock()
    mock_response.status = status
    mock_response.text = AsyncMock(return_value=body)

    mock_request_context = AsyncMock()
    mock_request_context.__aenter__ = AsyncMock(return_value=mock_response)
    mock_request_context.__aexit__ = AsyncMock(return_value=None)

    mock_session = Mock()
    if side_effect is not None:
        mock_session.get = Mock(side_effect=side_effect)
    else:
        mock_session.get = Mock(return_value=mock_request_context)
    return mock_session


class TestHelpers:
    """测试解析辅助函数"""

    def test_entity_id(self):
        """测试实体名称转换为路径标识"""
        assert entity_id('fabric:/App/Svc') == 'App~Svc'
        assert entity_id('fabric:/System') == 'System'

    def test_parse_timestamp_truncates_fraction(self):
        """测试七位小数的时间戳"""
        result = _parse_timestamp('2024-03-01T10:15:30.1234567Z')
        assert result == datetime(2024, 3, 1, 10, 15, 30, 123456, tzinfo=timezone.utc)

    def test_parse_timestamp_min_value(self):
        """测试最小时间视为空"""
        assert _parse_timestamp('0001-01-01T00:00:00.000Z') is None
        assert _parse_timestamp(None) is None
        assert _parse_timestamp('not a date') is None


class TestRestHealthProvider:
    """测试RestHealthProvider类"""

    def setup_method(self):
        """测试前准备"""
        self.config = {
            'endpoint': 'http://localhost:19080/',
            'retry': {'max_attempts': 2, 'base_delay': 0, 'jitter': False},
        }
        self.provider = RestHealthProvider('test-cluster', self.config)

    def test_init(self):
        """测试初始化"""
        assert self.provider.endpoint == 'http://localhost:19080'
        assert self.provider.api_version == '6.0'

    def test_invalid_endpoint(self):
        """测试无效的网关地址"""
        with pytest.raises(ConfigError):
            RestHealthProvider('bad', {'endpoint': 'localhost:19080'})

    def test_key_without_cert(self):
        """测试只配置私钥文件"""
        with pytest.raises(ConfigError):
            RestHealthProvider('bad', {'endpoint': 'https://localhost:19080', 'key_file': 'k.pem'})

    @pytest.mark.asyncio
    async def test_get_cluster_health(self):
        """测试解析集群健康"""
        body = json.dumps({
            'AggregatedHealthState': 'Error',
            'NodeHealthStates': [{'Name': '_Node_0', 'AggregatedHealthState': 'Error'}],
            'ApplicationHealthStates': [{'Name': 'fabric:/App', 'AggregatedHealthState': 'Warning'}],
            'UnhealthyEvaluations': [{'HealthEvaluation': {
                'Kind': 'Nodes', 'Description': '1 node unhealthy', 'AggregatedHealthState': 'Error'}}],
        })

        with patch.object(self.provider, '_request', AsyncMock(return_value=body)) as mock_request:
            snapshot = await self.provider.get_cluster_health(30)

        assert snapshot.aggregated_health_state == HealthState.ERROR
        assert snapshot.node_health_states[0].node_name == '_Node_0'
        assert snapshot.application_health_states[0].aggregated_health_state == HealthState.WARNING
        assert snapshot.unhealthy_evaluations[0].kind == 'Nodes'

        path, timeout, params = mock_request.call_args[0]
        assert path == '/$/GetClusterHealth'
        assert params['NodesHealthStateFilter'] == 12
        assert params['ApplicationsHealthStateFilter'] == 12

    @pytest.mark.asyncio
    async def test_get_service_health_events(self):
        """测试解析服务健康事件"""
        body = json.dumps({
            'Name': 'fabric:/App/Svc',
            'AggregatedHealthState': 'Warning',
            'HealthEvents': [{
                'SourceId': 'System.PLB', 'Property': 'ServiceReplicaUnplacedHealth',
                'HealthState': 'Warning', 'Description': 'replica unplaced',
                'SourceUtcTimestamp': '2024-03-01T10:15:30.000Z',
            }],
            'PartitionHealthStates': [{'PartitionId': 'p1', 'AggregatedHealthState': 'Warning'}],
        })

        with patch.object(self.provider, '_request', AsyncMock(return_value=body)) as mock_request:
            health = await self.provider.get_service_health('fabric:/App/Svc', 30)

        assert mock_request.call_args[0][0] == '/Services/App~Svc/$/GetHealth'
        assert health.health_events[0].description == 'replica unplaced'
        assert health.health_events[0].source_timestamp.year == 2024
        assert health.partition_health_states[0].partition_id == 'p1'

    @pytest.mark.asyncio
    async def test_get_node_list_follows_continuation(self):
        """测试节点列表分页"""
        pages = [
            json.dumps({'Items': [{'Name': 'n1', 'NodeStatus': 'Up', 'Type': 'FE'}],
                        'ContinuationToken': 'next'}),
            json.dumps({'Items': [{'Name': 'n2', 'NodeStatus': 'Down', 'Type': 'BE'}],
                        'ContinuationToken': ''}),
        ]

        with patch.object(self.provider, '_request', AsyncMock(side_effect=pages)) as mock_request:
            nodes = await self.provider.get_node_list(30)

        assert [n.node_name for n in nodes] == ['n1', 'n2']
        assert nodes[1].node_status == NodeStatus.DOWN
        assert mock_request.call_args_list[1][0][2] == {'ContinuationToken': 'next'}

    @pytest.mark.asyncio
    async def test_get_upgrade_progress(self):
        """测试解析升级进度"""
        body = json.dumps({
            'UpgradeState': 'RollingForwardInProgress',
            'StartTimestampUtc': '2024-03-01T08:00:00Z',
            'CodeVersion': '10.1.0',
            'CurrentUpgradeDomainProgress': {
                'DomainName': 'UD1',
                'NodeUpgradeProgressList': [{'NodeName': 'n1'}, {'NodeName': 'n2'}],
            },
        })

        with patch.object(self.provider, '_request', AsyncMock(return_value=body)):
            progress = await self.provider.get_upgrade_progress(30)

        assert progress.upgrade_state == UpgradeState.ROLLING_FORWARD_IN_PROGRESS
        assert progress.current_domain.domain_name == 'UD1'
        assert progress.is_node_in_current_domain('n2')
        assert progress.target_version == '10.1.0'

    @pytest.mark.asyncio
    async def test_no_upgrade_in_progress(self):
        """测试没有升级时返回空"""
        body = json.dumps({'UpgradeState': 'Invalid', 'StartTimestampUtc': '0001-01-01T00:00:00Z'})

        with patch.object(self.provider, '_request', AsyncMock(return_value=body)):
            assert await self.provider.get_upgrade_progress(30) is None

    @pytest.mark.asyncio
    async def test_repair_capability(self):
        """测试检测修复服务是否部署"""
        deployed = json.dumps({'Items': [{'Name': 'fabric:/System/RepairManagerService'}]})
        missing = json.dumps({'Items': [{'Name': 'fabric:/System/ClusterManagerService'}]})

        with patch.object(self.provider, '_request', AsyncMock(side_effect=[deployed, missing])):
            assert await self.provider.is_repair_capability_deployed(30) is True
            assert await self.provider.is_repair_capability_deployed(30) is False

    @pytest.mark.asyncio
    async def test_active_repair_tasks(self):
        """测试解析修复任务"""
        body = json.dumps([{'TaskId': 'Azure/PlatformUpdate/1', 'State': 'Executing'}])

        with patch.object(self.provider, '_request', AsyncMock(return_value=body)) as mock_request:
            tasks = await self.provider.get_active_repair_tasks(30)

        assert tasks[0].task_id == 'Azure/PlatformUpdate/1'
        assert mock_request.call_args[0][2] == {'StateFilter': 31}

    @pytest.mark.asyncio
    async def test_get_cluster_id(self):
        """测试从集群清单读取集群标识"""
        manifest = (
            '<ClusterManifest xmlns="http://schemas.microsoft.com/2011/01/fabric">'
            '<FabricSettings>'
            '<Section Name="Diagnostics"><Parameter Name="ClusterId" Value="diag-id"/></Section>'
            '<Section Name="Paas"><Parameter Name="ClusterId" Value="paas-id"/></Section>'
            '</FabricSettings></ClusterManifest>'
        )

        with patch.object(self.provider, '_request',
                          AsyncMock(return_value=json.dumps({'Manifest': manifest}))):
            assert await self.provider.get_cluster_id(30) == 'paas-id'

    @pytest.mark.asyncio
    async def test_transient_error_retried(self):
        """测试瞬时错误会重试"""
        responses = [TransientClusterError("busy"), json.dumps({'Name': 'fabric:/App'})]

        with patch.object(self.provider, '_request', AsyncMock(side_effect=responses)) as mock_request:
            name = await self.provider.get_application_name('fabric:/App/Svc', 30)

        assert name == 'fabric:/App'
        assert mock_request.call_count == 2

    @pytest.mark.asyncio
    async def test_non_transient_error_not_retried(self):
        """测试非瞬时错误不重试"""
        mock_request = AsyncMock(side_effect=ClusterQueryError("forbidden", status=403))

        with patch.object(self.provider, '_request', mock_request):
            with pytest.raises(ClusterQueryError):
                await self.provider.get_node_health('n1', 30)

        assert mock_request.call_count == 1

    @pytest.mark.asyncio
    async def test_missing_entity_not_retried(self):
        """测试实体已删除 (404) 时不重试"""
        mock_request = AsyncMock(side_effect=EntityNotFoundError("node gone", status=404))

        with patch.object(self.provider, '_request', mock_request):
            with pytest.raises(EntityNotFoundError):
                await self.provider.get_node_health('n1', 30)

        assert mock_request.call_count == 1

    def test_connector_with_client_certificate(self):
        """测试配置客户端证书时使用加载证书链的 SSL 上下文"""
        provider = RestHealthProvider('secure', {
            'endpoint': 'https://localhost:19080',
            'cert_file': 'client.pem',
            'key_file': 'client.key',
        })

        with patch('cluster_observer.providers.rest_provider.ssl.create_default_context') \
                as mock_context, patch('aiohttp.TCPConnector') as mock_connector:
            provider._create_connector()

        mock_context.return_value.load_cert_chain.assert_called_once_with('client.pem', 'client.key')
        mock_connector.assert_called_once_with(ssl=mock_context.return_value)

    def test_connector_without_verification(self):
        """测试关闭证书校验"""
        provider = RestHealthProvider('insecure', {
            'endpoint': 'https://localhost:19080', 'ssl_verify': False
        })

        with patch('aiohttp.TCPConnector') as mock_connector:
            provider._create_connector()

        mock_connector.assert_called_once_with(ssl=False)

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        """测试无效的 JSON 响应"""
        with patch.object(self.provider, '_request', AsyncMock(return_value='<html>')):
            with pytest.raises(ClusterQueryError, match="JSON"):
                await self.provider.get_node_health('n1', 30)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,expected", [
        (503, TransientClusterError),
        (404, EntityNotFoundError),
        (403, ClusterQueryError),
    ])
    async def test_request_status_mapping(self, status, expected):
        """测试状态码映射为异常类型"""
        mock_session = make_session(status=status, body='error')

        with patch('aiohttp.TCPConnector'), patch('aiohttp.ClientSession') as mock_client_session:
            mock_client_session.return_value.__aenter__ = AsyncMock(return_value=mock_session)
            mock_client_session.return_value.__aexit__ = AsyncMock(return_value=None)

            with pytest.raises(expected) as exc_info:
                await self.provider._request('/$/GetClusterHealth', 30)

        assert exc_info.value.details['status'] == status
        assert type(exc_info.value) is expected

    @pytest.mark.asyncio
    async def test_request_success(self):
        """测试成功请求附带版本和超时参数"""
        mock_session = make_session(body='{"ok": true}')

        with patch('aiohttp.TCPConnector'), patch('aiohttp.ClientSession') as mock_client_session:
            mock_client_session.return_value.__aenter__ = AsyncMock(return_value=mock_session)
            mock_client_session.return_value.__aexit__ = AsyncMock(return_value=None)

            body = await self.provider._request('/Nodes', 15)

        assert body == '{"ok": true}'
        params = mock_session.get.call_args[1]['params']
        assert params['api-version'] == '6.0'
        assert params['timeout'] == 15

    @pytest.mark.asyncio
    async def test_request_network_error(self):
        """测试网络错误视为瞬时错误"""
        mock_session = make_session(side_effect=ClientError("connection refused"))

        with patch('aiohttp.TCPConnector'), patch('aiohttp.ClientSession') as mock_client_session:
            mock_client_session.return_value.__aenter__ = AsyncMock(return_value=mock_session)
            mock_client_session.return_value.__aexit__ = AsyncMock(return_value=None)

            with pytest.raises(TransientClusterError):
                await self.provider._request('/Nodes', 15)
