"""集群健康引擎

执行一轮监控：节点状态巡检、修复任务检查、集群升级检查、集群健康查询、
恢复边沿检测，以及对不健康实体的层级遍历（节点/应用/服务/分区/副本），
只在出现问题或刚刚恢复时通过遥测分发器上报。
"""

import asyncio
import traceback
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from ..models.health import (
    APPLICATION_EVALUATION_KINDS, NODE_EVALUATION_KINDS, SYSTEM_APPLICATION_NAME,
    ApplicationHealthState, EntityKind, HealthEvaluation, HealthEvent, HealthState,
    NodeHealthState, NodeInfo, NodeStatus, ReplicaHealthState, ServiceHealth, UpgradeProgress
)
from ..models.settings import ObserverSettings
from ..models.telemetry import TelemetryRecord, UpgradeEventData
from ..providers.base import BaseHealthProvider
from ..telemetry.classifier import try_classify
from ..telemetry.dispatcher import TelemetryDispatcher
from ..utils.exceptions import ClusterQueryError, OperationCancelledError, TransientClusterError
from ..utils.log_manager import get_logger
from .state_tracker import StateTracker

OBSERVER_NAME = 'ClusterObserver'
METRIC_AGGREGATED_CLUSTER_HEALTH = 'AggregatedClusterHealth'
METRIC_NODE_STATUS = 'NodeStatus'
METRIC_OBSERVER_FAULT = 'ClusterObserverFault'

CLUSTER_RECOVERED_MESSAGE = 'Cluster has recovered from previous Error/Warning state.'
REPAIR_JOBS_MESSAGE = 'There are currently one or more Repair Jobs processing in the cluster.\n'


def first_unhealthy_replica_per_partition(
        replica_states: Iterable[ReplicaHealthState]) -> Optional[ReplicaHealthState]:
    """
    副本选择策略：分区内第一个 Warning/Error 副本作为该分区的权威信号

    同一分区中其余不健康副本会被忽略。
    """
    for replica_state in replica_states:
        if replica_state.aggregated_health_state.is_unhealthy():
            return replica_state
    return None


@dataclass
class EventOrigin:
    """健康事件及其来源分区/副本"""
    event: HealthEvent
    partition_id: Optional[str] = None
    replica_id: Optional[str] = None


def unhealthy_events_by_recency(origins: Iterable[EventOrigin]) -> List[EventOrigin]:
    """过滤出 Warning/Error 事件，按来源时间戳从新到旧排序"""
    unhealthy = [o for o in origins if o.event.health_state.is_unhealthy()]
    return sorted(
        unhealthy,
        key=lambda o: (o.event.source_timestamp is not None,
                       o.event.source_timestamp.timestamp() if o.event.source_timestamp else 0.0),
        reverse=True
    )


def _append_text(buffer: str, text: str) -> str:
    if not text:
        return buffer
    if not buffer or buffer.endswith('\n'):
        return buffer + text
    return f"{buffer}\n{text}"


@dataclass
class _PassContext:
    settings: ObserverSettings
    token: Optional[asyncio.Event]
    nodes: Dict[str, NodeInfo] = field(default_factory=dict)

    @property
    def timeout(self) -> float:
        return self.settings.async_timeout.total_seconds()


class ClusterHealthEngine:
    """
    集群健康引擎

    依赖全部通过构造函数注入。设置在每轮开始时通过 settings_provider 重新读取。

    失败语义：
    - 瞬时集群故障（TransientClusterError）记录日志后结束本轮，不上报、不修改状态；
    - 遍历中单个实体的瞬时故障只跳过该实体；
    - 取消令牌被置位时静默返回；
    - 其他异常记录日志并尽力上报一条 Error 级记录，然后重新抛出。
    """

    def __init__(self,
                 provider: BaseHealthProvider,
                 dispatcher: TelemetryDispatcher,
                 settings_provider: Callable[[], ObserverSettings],
                 state: Optional[StateTracker] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        """
        初始化集群健康引擎

        Args:
            provider: 健康快照提供者
            dispatcher: 遥测分发器
            settings_provider: 返回当前设置的可调用对象
            state: 状态跟踪器，默认新建
            clock: 时间函数，默认 datetime.now
        """
        self.provider = provider
        self.dispatcher = dispatcher
        self.settings_provider = settings_provider
        self.state = state or StateTracker()
        self.clock = clock or datetime.now
        self.logger = get_logger('engine')

        self.cluster_id: Optional[str] = None
        self.last_run_time: Optional[datetime] = None
        self.pass_count = 0
        self.emitted_count = 0

    async def run_pass(self, token: Optional[asyncio.Event] = None):
        """
        执行一轮监控

        Args:
            token: 取消令牌，被置位后在下一个检查点静默返回

        Raises:
            Exception: 非瞬时、非取消类的异常在尽力上报后重新抛出
        """
        settings = self.settings_provider()

        if not settings.enabled or not settings.telemetry_enabled:
            self.logger.debug("监控或遥测未启用，跳过本轮")
            return

        if (self.last_run_time is not None
                and self.clock() - self.last_run_time < settings.run_interval):
            self.logger.debug("距离上次运行未达到最小间隔，跳过本轮")
            return

        ctx = _PassContext(settings=settings, token=token)
        try:
            self._check_cancelled(ctx)
            await self._resolve_cluster_id(ctx)
            await self._report_cluster_health(ctx)
            self.last_run_time = self.clock()
            self.pass_count += 1
        except OperationCancelledError:
            self.logger.info("监控轮次已取消")
        except TransientClusterError as e:
            self.logger.warning(f"处理集群健康时发生瞬时异常，本轮结束: {e.format_error()}")
        except Exception as e:
            self.logger.error(f"处理集群健康时发生未预期的异常: {e}", exc_info=True)
            await self._report_fault(e, ctx)
            raise

    def _check_cancelled(self, ctx: _PassContext):
        if ctx.token is not None and ctx.token.is_set():
            raise OperationCancelledError()

    async def _resolve_cluster_id(self, ctx: _PassContext):
        if ctx.settings.cluster_id:
            self.cluster_id = ctx.settings.cluster_id
            return
        if self.cluster_id is not None:
            return
        try:
            self.cluster_id = await self.provider.get_cluster_id(ctx.timeout)
            if self.cluster_id:
                self.logger.info(f"集群标识: {self.cluster_id}")
        except ClusterQueryError as e:
            self.logger.warning(f"读取集群标识失败: {e}")

    async def _emit(self, record: TelemetryRecord):
        await self.dispatcher.emit(record)
        self.emitted_count += 1

    def _record(self, **values) -> TelemetryRecord:
        values.setdefault('cluster_id', self.cluster_id)
        values.setdefault('source', OBSERVER_NAME)
        return TelemetryRecord(**values)

    async def _report_cluster_health(self, ctx: _PassContext):
        settings = ctx.settings

        await self.monitor_node_status(ctx)

        if settings.monitor_repair_jobs:
            await self._report_repair_tasks(ctx)

        if settings.monitor_upgrades:
            await self._report_cluster_upgrade_status(ctx)

        self._check_cancelled(ctx)
        snapshot = await self.provider.get_cluster_health(ctx.timeout)
        self._check_cancelled(ctx)
        current = snapshot.aggregated_health_state

        # 上一轮为 Error/Warning，本轮恢复为 Ok
        if self.state.should_report_recovery(current, settings.emit_warning_details):
            self.state.record_cluster_state(HealthState.OK)
            await self._emit(self._record(
                entity_kind=EntityKind.CLUSTER,
                property=EntityKind.CLUSTER.property_name,
                health_state=HealthState.OK,
                description=CLUSTER_RECOVERED_MESSAGE,
                metric=METRIC_AGGREGATED_CLUSTER_HEALTH
            ))
            return

        if current == HealthState.OK:
            self.state.record_cluster_state(current)
            return

        if current == HealthState.WARNING and not settings.emit_warning_details:
            return

        await self._walk_hierarchy(snapshot.unhealthy_evaluations,
                                   snapshot.node_health_states,
                                   snapshot.application_health_states, ctx)

        self.state.record_cluster_state(current)

    async def monitor_node_status(self, ctx: _PassContext):
        """
        节点状态巡检

        先检查已跟踪的异常节点是否恢复为 Up（上报恢复并删除记录），再对处于
        Disabled/Disabling/Down 的节点累计异常时长，超过阈值时上报 Warning。
        """
        settings = ctx.settings
        nodes = await self.provider.get_node_list(ctx.timeout)
        ctx.nodes = {node.node_name: node for node in nodes}

        for node_name in self.state.tracked_nodes():
            self._check_cancelled(ctx)
            node = ctx.nodes.get(node_name)
            if node is None or node.node_status != NodeStatus.UP:
                continue

            self.state.recover_node(node_name)
            await self._emit(self._record(
                entity_kind=EntityKind.NODE,
                property=EntityKind.NODE.property_name,
                node_name=node_name,
                node_type=node.node_type,
                health_state=HealthState.OK,
                description=f"{node_name} is now Up.",
                metric=METRIC_NODE_STATUS,
                value=0
            ))

        now = self.clock()
        for node in nodes:
            self._check_cancelled(ctx)
            if not node.node_status.is_not_ok():
                continue

            self.state.observe_bad_node(node.node_name, node.node_status, now)
            if not self.state.should_alert_stuck(node.node_name,
                                                 settings.max_time_node_status_not_ok,
                                                 settings.node_stuck_alert_policy):
                continue

            record = self.state.node_status[node.node_name]
            hours = round(record.duration.total_seconds() / 3600, 2)
            self.logger.warning(
                f"节点 {node.node_name} 处于 {record.status.value} 状态已 {hours} 小时")
            await self._emit(self._record(
                entity_kind=EntityKind.NODE,
                property=EntityKind.NODE.property_name,
                node_name=node.node_name,
                node_type=node.node_type,
                health_state=HealthState.WARNING,
                description=f"Node {node.node_name} has been {record.status.value} for {hours} hours.\n",
                metric=METRIC_NODE_STATUS,
                value=1
            ))
            self.state.mark_stuck_alerted(node.node_name)

    async def _report_repair_tasks(self, ctx: _PassContext):
        """修复任务检查：存在进行中的修复任务时汇总为一条 Ok 级记录"""
        try:
            if not await self.provider.is_repair_capability_deployed(ctx.timeout):
                return
            tasks = await self.provider.get_active_repair_tasks(ctx.timeout)
        except TransientClusterError as e:
            self.logger.warning(f"查询修复任务失败: {e}")
            return

        if not tasks:
            return

        summary = REPAIR_JOBS_MESSAGE
        for task in tasks:
            self._check_cancelled(ctx)
            summary += f"TaskId: {task.task_id}\nState: {task.state}\n"

        self.logger.info(f"集群中有 {len(tasks)} 个修复任务正在处理")
        await self._emit(self._record(
            entity_kind=EntityKind.CLUSTER,
            property=EntityKind.CLUSTER.property_name,
            health_state=HealthState.OK,
            description=summary,
            metric=METRIC_AGGREGATED_CLUSTER_HEALTH
        ))

    async def _report_cluster_upgrade_status(self, ctx: _PassContext):
        progress = await self.provider.get_upgrade_progress(ctx.timeout)
        self._check_cancelled(ctx)
        if progress is None or not progress.has_information():
            return

        if not self.state.update_cluster_upgrade(progress.upgrade_state.is_completed()):
            return

        self.logger.info(f"集群升级状态变化: {progress.upgrade_state.value}")
        await self.dispatcher.emit_upgrade(
            UpgradeEventData(cluster_id=self.cluster_id, cluster_progress=progress))

    async def _report_application_upgrade_status(self, application_name: str,
                                                 ctx: _PassContext):
        progress = await self.provider.get_upgrade_progress(ctx.timeout, application_name)
        self._check_cancelled(ctx)
        if progress is None or not progress.has_information():
            return

        if not self.state.update_application_upgrade(
                application_name, progress.upgrade_state.is_completed()):
            return

        self.logger.info(f"应用 {application_name} 升级状态变化: {progress.upgrade_state.value}")
        await self.dispatcher.emit_upgrade(
            UpgradeEventData(cluster_id=self.cluster_id, application_progress=progress))

    async def _walk_hierarchy(self, evaluations: List[HealthEvaluation],
                              node_states: List[NodeHealthState],
                              application_states: List[ApplicationHealthState],
                              ctx: _PassContext):
        """
        遍历不健康评估

        节点类评估进入节点遍历，应用类评估进入应用遍历，每轮各执行一次；
        其他评估直接生成通用记录。
        """
        nodes_walked = False
        applications_walked = False

        for evaluation in evaluations:
            self._check_cancelled(ctx)

            if evaluation.kind in NODE_EVALUATION_KINDS:
                if nodes_walked:
                    continue
                nodes_walked = True
                try:
                    await self._process_node_health(node_states, ctx)
                except TransientClusterError as e:
                    self.logger.warning(f"遍历节点健康状态失败: {e}")

            elif evaluation.kind in APPLICATION_EVALUATION_KINDS:
                if applications_walked:
                    continue
                applications_walked = True
                await self._process_applications(application_states, ctx)

            else:
                await self._emit(self._record(
                    entity_kind=EntityKind.CLUSTER,
                    property=EntityKind.CLUSTER.property_name,
                    health_state=evaluation.aggregated_health_state,
                    description=evaluation.description
                ))

    async def _process_node_health(self, node_states: List[NodeHealthState],
                                   ctx: _PassContext):
        try:
            upgrade: Optional[UpgradeProgress] = await self.provider.get_upgrade_progress(ctx.timeout)
        except TransientClusterError as e:
            self.logger.warning(f"查询集群升级进度失败，节点告警不附加升级说明: {e}")
            upgrade = None
        if upgrade is not None and not upgrade.has_information():
            upgrade = None

        for node_state in node_states:
            self._check_cancelled(ctx)
            node_name = node_state.node_name
            state = node_state.aggregated_health_state

            if not state.is_unhealthy():
                continue
            if state == HealthState.WARNING and not ctx.settings.emit_warning_details:
                continue

            prefix = f"Node in Error or Warning: {node_name}\n"
            if state == HealthState.ERROR and upgrade and upgrade.is_node_in_current_domain(node_name):
                prefix += (
                    f"Note: Cluster is currently upgrading in UD {upgrade.current_domain.domain_name}. "
                    f"Node {node_name} Error State could be due to this upgrade, which will "
                    f"temporarily take down a node as a normal part of the upgrade process.\n"
                )

            try:
                node_health = await self.provider.get_node_health(node_name, ctx.timeout)
            except TransientClusterError as e:
                self.logger.warning(f"查询节点 {node_name} 健康状态失败: {e}")
                continue

            node = ctx.nodes.get(node_name)
            status = node.node_status.value if node else ''
            template = self._record(
                entity_kind=EntityKind.NODE,
                property=EntityKind.NODE.property_name,
                node_name=node_name,
                node_type=node.node_type if node else None,
                health_state=state
            )
            await self._emit_entity_events(
                [EventOrigin(event) for event in node_health.health_events],
                template,
                node_health.unhealthy_evaluations,
                ctx,
                prefix=prefix,
                structured_suffix=f"\nNode Status: {status}"
            )

    async def _process_applications(self, application_states: List[ApplicationHealthState],
                                     ctx: _PassContext):
        for application_state in application_states:
            self._check_cancelled(ctx)
            if not application_state.aggregated_health_state.is_unhealthy():
                continue
            try:
                await self._process_application(application_state.application_name, ctx)
            except TransientClusterError as e:
                self.logger.warning(
                    f"查询应用 {application_state.application_name} 健康状态失败: {e}")

    async def _process_application(self, application_name: str, ctx: _PassContext):
        """
        应用遍历

        存在不健康服务时逐个进入服务遍历，否则直接处理应用自身的健康事件。
        """
        application_health = await self.provider.get_application_health(
            application_name, ctx.timeout)

        if ctx.settings.monitor_upgrades and application_name != SYSTEM_APPLICATION_NAME:
            await self._report_application_upgrade_status(application_name, ctx)

        unhealthy_services = [
            s for s in application_health.service_health_states
            if s.aggregated_health_state.is_unhealthy()
        ]
        if unhealthy_services:
            for service_state in unhealthy_services:
                self._check_cancelled(ctx)
                try:
                    await self._process_service(service_state.service_name, ctx)
                except TransientClusterError as e:
                    self.logger.warning(f"查询服务 {service_state.service_name} 健康状态失败: {e}")
            return

        template = self._record(
            entity_kind=EntityKind.APPLICATION,
            property=EntityKind.APPLICATION.property_name,
            application_name=application_name,
            health_state=application_health.aggregated_health_state
        )
        await self._emit_entity_events(
            [EventOrigin(event) for event in application_health.health_events],
            template,
            application_health.unhealthy_evaluations,
            ctx
        )

    async def _process_service(self, service_name: str, ctx: _PassContext):
        """
        服务遍历

        服务自身没有 Warning/Error 事件时，深入不健康的分区；分区中存在不健康副本时
        使用第一个不健康副本的事件，否则使用分区自身的事件。
        """
        service_health = await self.provider.get_service_health(service_name, ctx.timeout)
        application_name = await self.provider.get_application_name(service_name, ctx.timeout)

        if any(e.health_state.is_unhealthy() for e in service_health.health_events):
            origins = [EventOrigin(event) for event in service_health.health_events]
        else:
            origins = await self._collect_partition_events(service_health, ctx)

        template = self._record(
            entity_kind=EntityKind.SERVICE,
            property=EntityKind.SERVICE.property_name,
            application_name=application_name,
            service_name=service_name,
            health_state=service_health.aggregated_health_state
        )
        await self._emit_entity_events(origins, template, service_health.unhealthy_evaluations, ctx)

    async def _collect_partition_events(self, service_health: ServiceHealth,
                                        ctx: _PassContext) -> List[EventOrigin]:
        origins: List[EventOrigin] = []
        for partition_state in service_health.partition_health_states:
            self._check_cancelled(ctx)
            if not partition_state.aggregated_health_state.is_unhealthy():
                continue

            partition_id = partition_state.partition_id
            partition = await self.provider.get_partition_health(partition_id, ctx.timeout)
            replica_state = first_unhealthy_replica_per_partition(partition.replica_health_states)

            if replica_state is None:
                origins.extend(EventOrigin(event, partition_id) for event in partition.health_events)
                continue

            replica = await self.provider.get_replica_health(
                partition_id, replica_state.replica_id, ctx.timeout)
            origins.extend(
                EventOrigin(event, partition_id, replica.replica_id)
                for event in replica.health_events
            )
        return origins

    async def _emit_entity_events(self, origins: List[EventOrigin], template: TelemetryRecord,
                                  evaluations: List[HealthEvaluation], ctx: _PassContext,
                                  prefix: str = '', structured_suffix: str = ''):
        """
        处理实体的健康事件

        结构化事件直接转发（附加已累计的描述）；非结构化事件的描述累计到缓冲区，
        与实体身份字段一起生成通用记录。每次上报后清空缓冲区。
        """
        buffer = prefix
        for origin in unhealthy_events_by_recency(origins):
            self._check_cancelled(ctx)
            event = origin.event

            record, structured = try_classify(event.description)
            if structured:
                description = _append_text(record.description, buffer.rstrip('\n'))
                record = replace(record, description=description + structured_suffix)
            else:
                if event.description.strip():
                    buffer = _append_text(buffer, event.description)
                else:
                    buffer = _append_text(buffer, '\n'.join(e.description for e in evaluations))
                record = replace(
                    template,
                    description=buffer,
                    partition_id=origin.partition_id or template.partition_id,
                    replica_id=origin.replica_id or template.replica_id
                )

            await self._emit(record)
            buffer = ''

    async def _report_fault(self, error: Exception, ctx: _PassContext):
        """尽力上报未预期的异常；上报本身失败时只记录日志"""
        description = (
            f"Unhandled exception in cluster health pass:\n"
            f"{''.join(traceback.format_exception(type(error), error, error.__traceback__))}"
        )
        try:
            await self._emit(self._record(
                entity_kind=EntityKind.CLUSTER,
                property=EntityKind.CLUSTER.property_name,
                health_state=HealthState.ERROR,
                description=description,
                metric=METRIC_OBSERVER_FAULT
            ))
        except Exception as report_error:
            self.logger.warning(f"上报异常信息失败: {report_error}")

    def get_status(self) -> Dict[str, object]:
        """
        获取引擎状态

        Returns:
            Dict[str, object]: 运行统计与状态摘要
        """
        return {
            'cluster_id': self.cluster_id,
            'last_run_time': self.last_run_time.isoformat() if self.last_run_time else None,
            'pass_count': self.pass_count,
            'emitted_count': self.emitted_count,
            'state': self.state.get_summary(),
        }
