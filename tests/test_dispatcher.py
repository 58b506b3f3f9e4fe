"""测试遥测分发器"""

import json

import pytest

from cluster_observer.models.health import HealthState
from cluster_observer.models.telemetry import TelemetryRecord, UpgradeEventData
from cluster_observer.telemetry.dispatcher import TelemetryDispatcher
from cluster_observer.telemetry.event_trace import EventTraceChannel
from cluster_observer.telemetry.http_sink import HTTPTelemetrySink
from cluster_observer.utils.exceptions import TelemetryConfigError


class TestTelemetryDispatcher:
    """测试TelemetryDispatcher类"""

    def setup_method(self):
        """测试前准备"""
        self.record = TelemetryRecord(health_state=HealthState.ERROR, description='boom')

    def test_create_sinks_from_config(self):
        """测试按配置创建输出"""
        dispatcher = TelemetryDispatcher([
            {'name': 'a', 'type': 'http', 'url': 'https://a.example.com'},
            {'name': 'b', 'type': 'http', 'url': 'https://b.example.com'},
        ])

        assert dispatcher.get_sink_names() == ['a', 'b']
        assert all(isinstance(s, HTTPTelemetrySink) for s in dispatcher.sinks)

    def test_unsupported_sink_type(self):
        """测试不支持的输出类型"""
        with pytest.raises(TelemetryConfigError, match="不支持的遥测输出类型"):
            TelemetryDispatcher([{'name': 'q', 'type': 'kafka', 'url': 'kafka://x'}])

    def test_add_invalid_sink(self):
        """测试添加非输出对象"""
        with pytest.raises(TelemetryConfigError):
            TelemetryDispatcher().add_sink(object())

    def test_remove_sink(self, dispatcher, sink):
        """测试移除输出"""
        assert dispatcher.remove_sink(sink.name) is True
        assert dispatcher.remove_sink(sink.name) is False
        assert dispatcher.get_sink_names() == []

    def test_reload_keeps_old_sinks_on_error(self, dispatcher, sink):
        """测试新配置无效时保留原有输出"""
        with pytest.raises(TelemetryConfigError):
            dispatcher.reload([{'name': 'q', 'type': 'kafka'}])

        assert dispatcher.sinks == [sink]

    def test_reload(self, dispatcher):
        """测试重新加载输出"""
        dispatcher.reload([{'name': 'new', 'type': 'http', 'url': 'https://new.example.com'}])

        assert dispatcher.get_sink_names() == ['new']

    @pytest.mark.asyncio
    async def test_emit_to_all_sinks(self, dispatcher, sink, failing_sink):
        """测试分发到所有输出，单个失败不影响其他"""
        dispatcher.add_sink(failing_sink)

        await dispatcher.emit(self.record)

        assert sink.records == [self.record]
        assert dispatcher.sent_count == 1
        assert dispatcher.failed_count == 1

    @pytest.mark.asyncio
    async def test_emit_upgrade(self, dispatcher, sink):
        """测试分发升级事件"""
        event = UpgradeEventData('c1')

        await dispatcher.emit_upgrade(event)

        assert sink.upgrades == [event]
        assert sink.records == []

    @pytest.mark.asyncio
    async def test_emit_writes_event_trace(self, tmp_path):
        """测试分发后写入事件追踪"""
        log_file = tmp_path / 'events.log'
        trace = EventTraceChannel({'enabled': True, 'event_name': 'DispatchTest',
                                   'log_file': str(log_file)})
        dispatcher = TelemetryDispatcher(event_trace=trace)

        await dispatcher.emit(self.record)

        line = json.loads(log_file.read_text(encoding='utf-8').strip())
        assert line['EventName'] == 'DispatchTest'
        assert line['Description'] == 'boom'
