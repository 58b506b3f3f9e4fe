"""遥测模块"""

from .base import BaseTelemetrySink
from .classifier import try_classify, to_json
from .dispatcher import TelemetryDispatcher
from .event_trace import EventTraceChannel
from .http_sink import HTTPTelemetrySink

__all__ = [
    'BaseTelemetrySink',
    'HTTPTelemetrySink',
    'TelemetryDispatcher',
    'EventTraceChannel',
    'try_classify',
    'to_json'
]
