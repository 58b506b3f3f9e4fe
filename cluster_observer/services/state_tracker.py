"""状态跟踪器模块

保存跨轮次的状态：上次已知的集群聚合健康状态、长时间异常节点表、
应用升级完成标记和集群升级完成标记。节点表的插入、刷新、删除
以显式的跳变事件返回，便于单独测试边沿检测逻辑。

轮次由调度器串行执行，这里不做加锁。
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from ..models.health import HealthState, NodeStatus
from ..models.settings import NodeStuckAlertPolicy
from ..utils.exceptions import StateTrackerError
from ..utils.log_manager import get_logger


class NodeTransitionKind(Enum):
    """节点状态跳变类型"""
    ENTERED_BAD_STATE = "NodeEnteredBadState"
    STILL_BAD = "NodeStillBad"
    RECOVERED = "NodeRecovered"


@dataclass
class NodeStatusRecord:
    """异常节点记录"""
    node_name: str
    status: NodeStatus
    first_detected: datetime
    last_detected: datetime
    stuck_alerted: bool = False

    @property
    def duration(self) -> timedelta:
        return self.last_detected - self.first_detected


@dataclass
class NodeTransition:
    """节点状态跳变事件"""
    kind: NodeTransitionKind
    node_name: str
    record: NodeStatusRecord


class StateTracker:
    """状态跟踪器"""

    def __init__(self):
        self.last_known_cluster_state: HealthState = HealthState.UNKNOWN
        self.cluster_upgrade_completed: Optional[bool] = None
        self.node_status: Dict[str, NodeStatusRecord] = {}
        self.application_upgrades_completed: Dict[str, bool] = {}
        self.logger = get_logger('state_tracker')

    def observe_bad_node(self, node_name: str, status: NodeStatus,
                         now: datetime) -> NodeTransition:
        """
        记录一次节点处于异常状态的观测

        首次观测时插入记录，首次/末次时间都设为 now；之后只刷新末次时间和状态。

        Args:
            node_name: 节点名称
            status: 当前节点状态（Disabled、Disabling、Down 之一）
            now: 当前时间

        Returns:
            NodeTransition: ENTERED_BAD_STATE 或 STILL_BAD

        Raises:
            StateTrackerError: 传入的状态不是异常状态
        """
        if not status.is_not_ok():
            raise StateTrackerError(f"节点 {node_name} 的状态 {status.value} 不是异常状态")

        record = self.node_status.get(node_name)
        if record is None:
            record = NodeStatusRecord(node_name, status, now, now)
            self.node_status[node_name] = record
            self.logger.info(f"节点 {node_name} 进入异常状态: {status.value}")
            return NodeTransition(NodeTransitionKind.ENTERED_BAD_STATE, node_name, record)

        record.status = status
        record.last_detected = now
        return NodeTransition(NodeTransitionKind.STILL_BAD, node_name, record)

    def recover_node(self, node_name: str) -> Optional[NodeTransition]:
        """
        节点恢复为 Up，删除其记录

        Args:
            node_name: 节点名称

        Returns:
            Optional[NodeTransition]: 节点原本被跟踪时返回 RECOVERED 事件，否则 None
        """
        record = self.node_status.pop(node_name, None)
        if record is None:
            return None
        self.logger.info(f"节点 {node_name} 已恢复，异常持续 {record.duration}")
        return NodeTransition(NodeTransitionKind.RECOVERED, node_name, record)

    def tracked_nodes(self) -> List[str]:
        """
        获取当前跟踪的异常节点名称

        Returns:
            List[str]: 节点名称列表（副本，可在遍历时删除记录）
        """
        return list(self.node_status.keys())

    def is_stuck(self, node_name: str, threshold: timedelta) -> bool:
        """判断节点异常持续时间是否达到阈值"""
        record = self.node_status.get(node_name)
        return record is not None and record.duration >= threshold

    def should_alert_stuck(self, node_name: str, threshold: timedelta,
                           policy: NodeStuckAlertPolicy) -> bool:
        """
        判断是否需要发出长时间异常告警

        REPEAT 策略下超过阈值后每轮都返回 True；ONCE 策略下每次异常期间只返回一次。
        """
        if not self.is_stuck(node_name, threshold):
            return False
        if policy == NodeStuckAlertPolicy.ONCE:
            return not self.node_status[node_name].stuck_alerted
        return True

    def mark_stuck_alerted(self, node_name: str):
        record = self.node_status.get(node_name)
        if record is not None:
            record.stuck_alerted = True

    def should_report_recovery(self, current_state: HealthState,
                               emit_warning_details: bool) -> bool:
        """
        判断是否需要发出集群恢复告警

        当前为 Ok，且上次为 Error（或开启警告详情时上次为 Warning）时返回 True。

        Args:
            current_state: 本轮获取的聚合健康状态
            emit_warning_details: 是否上报警告详情

        Returns:
            bool: 是否需要发出恢复告警
        """
        if current_state != HealthState.OK:
            return False
        if self.last_known_cluster_state == HealthState.ERROR:
            return True
        return emit_warning_details and self.last_known_cluster_state == HealthState.WARNING

    def record_cluster_state(self, state: HealthState):
        """记录本轮的聚合健康状态，供下一轮做边沿检测"""
        if state != self.last_known_cluster_state:
            self.logger.info(
                f"集群聚合健康状态: {self.last_known_cluster_state.value} -> {state.value}")
        self.last_known_cluster_state = state

    def update_cluster_upgrade(self, completed: bool) -> bool:
        """
        更新集群升级完成标记

        Args:
            completed: 本轮观测到的升级是否处于完成状态

        Returns:
            bool: 标记发生变化（包括首次观测）时返回 True，需要上报
        """
        changed = self.cluster_upgrade_completed != completed
        self.cluster_upgrade_completed = completed
        return changed

    def update_application_upgrade(self, application_name: str, completed: bool) -> bool:
        """
        更新应用升级完成标记

        Args:
            application_name: 应用名称
            completed: 本轮观测到的升级是否处于完成状态

        Returns:
            bool: 标记发生变化（包括首次观测）时返回 True，需要上报
        """
        changed = self.application_upgrades_completed.get(application_name) != completed
        self.application_upgrades_completed[application_name] = completed
        return changed

    def get_summary(self) -> Dict[str, Any]:
        """
        获取状态摘要

        Returns:
            Dict[str, Any]: 状态摘要
        """
        return {
            'last_known_cluster_state': self.last_known_cluster_state.value,
            'cluster_upgrade_completed': self.cluster_upgrade_completed,
            'tracked_nodes': {
                name: {
                    'status': record.status.value,
                    'first_detected': record.first_detected.isoformat(),
                    'last_detected': record.last_detected.isoformat(),
                }
                for name, record in self.node_status.items()
            },
            'application_upgrades_completed': dict(self.application_upgrades_completed),
        }
