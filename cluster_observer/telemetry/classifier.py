"""遥测分类器

判断健康事件描述是否为伴随观察器写入的结构化遥测信封，
并根据 ObserverName 判别字段解码为最具体的记录类型。
"""

import json
from typing import Dict, Optional, Tuple, Type

from ..models.telemetry import (
    DiskTelemetry, NodeTelemetry, ServiceTelemetry, TelemetryRecord
)

# 判别字段取值 -> (记录类型, 是否严格解析)
OBSERVER_SHAPES: Dict[str, Tuple[Type[TelemetryRecord], bool]] = {
    'AppObserver': (ServiceTelemetry, False),
    'ContainerObserver': (ServiceTelemetry, False),
    'FabricSystemObserver': (ServiceTelemetry, False),
    'DiskObserver': (DiskTelemetry, True),
    'NodeObserver': (NodeTelemetry, False),
}


def _load_envelope(description: Optional[str]) -> Optional[dict]:
    """解析通用信封；必须是带 HealthState 以及 ObserverName 或 Source 的 JSON 对象"""
    if not description:
        return None
    text = description.strip()
    if not text.startswith('{'):
        return None
    try:
        payload = json.loads(text)
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    if 'HealthState' not in payload:
        return None
    if not payload.get('ObserverName') and not payload.get('Source'):
        return None
    return payload


def try_classify(description: Optional[str]) -> Tuple[Optional[TelemetryRecord], bool]:
    """
    尝试将描述解析为结构化遥测记录

    Args:
        description: 健康事件的描述文本

    Returns:
        Tuple[Optional[TelemetryRecord], bool]: (记录, 是否为结构化信封)。
        子类型解析失败时回退为通用信封，不会返回 False。
    """
    payload = _load_envelope(description)
    if payload is None:
        return None, False

    try:
        generic = TelemetryRecord.from_wire(payload)
    except (TypeError, ValueError):
        return None, False

    shape = OBSERVER_SHAPES.get(str(payload.get('ObserverName') or ''))
    if shape is None:
        return generic, True

    record_type, strict = shape
    try:
        return record_type.from_wire(payload, strict=strict), True
    except (TypeError, ValueError):
        return generic, True


def to_json(record: TelemetryRecord) -> str:
    """序列化为信封 JSON 文本，try_classify 的逆操作"""
    return json.dumps(record.to_wire(), ensure_ascii=False)
