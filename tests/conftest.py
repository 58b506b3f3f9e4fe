"""测试公共夹具：内存中的健康快照提供者和记录型遥测输出"""

from datetime import datetime
from typing import Dict, List, Optional

import pytest

from cluster_observer.models.health import (
    ApplicationHealth, ClusterSnapshot, HealthState, NodeHealth, NodeInfo, PartitionHealth,
    RepairTask, ReplicaHealth, ServiceHealth, UpgradeProgress
)
from cluster_observer.models.settings import ObserverSettings
from cluster_observer.models.telemetry import TelemetryRecord, UpgradeEventData
from cluster_observer.providers.base import BaseHealthProvider
from cluster_observer.telemetry.base import BaseTelemetrySink
from cluster_observer.telemetry.dispatcher import TelemetryDispatcher


class FakeHealthProvider(BaseHealthProvider):
    """按属性返回预设数据的提供者；errors 中登记的方法会抛出对应异常"""

    def __init__(self):
        super().__init__('fake', {})
        self.cluster_health = ClusterSnapshot(HealthState.OK)
        self.nodes: List[NodeInfo] = []
        self.node_health: Dict[str, NodeHealth] = {}
        self.application_health: Dict[str, ApplicationHealth] = {}
        self.service_health: Dict[str, ServiceHealth] = {}
        self.partition_health: Dict[str, PartitionHealth] = {}
        self.replica_health: Dict[tuple, ReplicaHealth] = {}
        self.service_applications: Dict[str, str] = {}
        self.repair_deployed = True
        self.repair_tasks: List[RepairTask] = []
        self.upgrade_progress: Optional[UpgradeProgress] = None
        self.application_upgrades: Dict[str, UpgradeProgress] = {}
        self.cluster_id: Optional[str] = 'test-cluster'
        self.errors: Dict[str, Exception] = {}
        self.calls: List[tuple] = []

    def _call(self, name: str, *args):
        self.calls.append((name,) + args)
        if name in self.errors:
            raise self.errors[name]

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]

    async def get_cluster_health(self, timeout):
        self._call('get_cluster_health')
        return self.cluster_health

    async def get_application_health(self, application_name, timeout):
        self._call('get_application_health', application_name)
        return self.application_health[application_name]

    async def get_service_health(self, service_name, timeout):
        self._call('get_service_health', service_name)
        return self.service_health[service_name]

    async def get_partition_health(self, partition_id, timeout):
        self._call('get_partition_health', partition_id)
        return self.partition_health[partition_id]

    async def get_replica_health(self, partition_id, replica_id, timeout):
        self._call('get_replica_health', partition_id, replica_id)
        return self.replica_health[(partition_id, replica_id)]

    async def get_node_health(self, node_name, timeout):
        self._call('get_node_health', node_name)
        return self.node_health[node_name]

    async def get_node_list(self, timeout):
        self._call('get_node_list')
        return list(self.nodes)

    async def get_application_name(self, service_name, timeout):
        self._call('get_application_name', service_name)
        return self.service_applications.get(service_name, 'fabric:/Unknown')

    async def get_active_repair_tasks(self, timeout):
        self._call('get_active_repair_tasks')
        return list(self.repair_tasks)

    async def is_repair_capability_deployed(self, timeout):
        self._call('is_repair_capability_deployed')
        return self.repair_deployed

    async def get_upgrade_progress(self, timeout, application_name=None):
        self._call('get_upgrade_progress', application_name)
        if application_name is None:
            return self.upgrade_progress
        return self.application_upgrades.get(application_name)

    async def get_cluster_id(self, timeout):
        self._call('get_cluster_id')
        return self.cluster_id


class RecordingSink(BaseTelemetrySink):
    """把收到的记录保存在内存中的遥测输出"""

    def __init__(self, name: str = 'recording', fail: bool = False):
        super().__init__(name, {})
        self.fail = fail
        self.records: List[TelemetryRecord] = []
        self.upgrades: List[UpgradeEventData] = []

    async def report_health(self, record):
        if self.fail:
            raise RuntimeError("sink unavailable")
        self.records.append(record)
        return True

    async def report_upgrade_status(self, event):
        if self.fail:
            raise RuntimeError("sink unavailable")
        self.upgrades.append(event)
        return True

    def validate_config(self):
        return True

    def descriptions(self) -> List[str]:
        return [record.description for record in self.records]


class FakeClock:
    """可手动推进的时钟"""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta):
        self.now = self.now + delta


@pytest.fixture
def provider() -> FakeHealthProvider:
    return FakeHealthProvider()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def dispatcher(sink) -> TelemetryDispatcher:
    dispatcher = TelemetryDispatcher()
    dispatcher.add_sink(sink)
    return dispatcher


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> ObserverSettings:
    return ObserverSettings(emit_warning_details=True)


@pytest.fixture
def failing_sink() -> RecordingSink:
    return RecordingSink('broken', fail=True)
