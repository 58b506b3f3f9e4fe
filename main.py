#!/usr/bin/env python3
"""
集群观察器主应用程序入口

组装配置、健康快照提供者、遥测分发器和监控引擎，
处理信号并实现优雅关闭。
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import Optional, Dict, Any

from cluster_observer.providers.rest_provider import RestHealthProvider
from cluster_observer.services.cluster_health_engine import ClusterHealthEngine
from cluster_observer.services.config_manager import ConfigManager
from cluster_observer.services.config_watcher import ConfigWatcher
from cluster_observer.services.pass_scheduler import PassScheduler
from cluster_observer.services.state_tracker import StateTracker
from cluster_observer.telemetry.dispatcher import TelemetryDispatcher
from cluster_observer.telemetry.event_trace import EventTraceChannel
from cluster_observer.utils.exceptions import ClusterObserverError, ConfigError
from cluster_observer.utils.log_manager import log_manager, get_logger

# 版本信息
__version__ = "1.0.0"


class ClusterObserverApp:
    """集群观察器主应用程序类"""

    def __init__(self, config_path: str, log_overrides: Optional[Dict[str, Any]] = None):
        """初始化应用程序

        Args:
            config_path: 配置文件路径
            log_overrides: 命令行指定的日志配置，覆盖配置文件中的 global 段
        """
        self.config_path = config_path
        self.log_overrides = log_overrides or {}
        self.logger: Optional[logging.Logger] = None
        self.is_running = False
        self.shutdown_event = asyncio.Event()

        self.config_manager: Optional[ConfigManager] = None
        self.config_watcher: Optional[ConfigWatcher] = None
        self.provider: Optional[RestHealthProvider] = None
        self.dispatcher: Optional[TelemetryDispatcher] = None
        self.engine: Optional[ClusterHealthEngine] = None
        self.scheduler: Optional[PassScheduler] = None

        self.background_tasks = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    async def initialize(self):
        """初始化应用程序组件"""
        try:
            self.config_manager = ConfigManager(self.config_path)
            config = self.config_manager.load_config()

            self._configure_logging(config.get('global') or {})
            self.logger = get_logger('main')
            self.logger.info("开始初始化集群观察器")

            self.provider = RestHealthProvider('cluster', self.config_manager.get_cluster_config())
            self.dispatcher = TelemetryDispatcher(
                self.config_manager.get_sink_configs(),
                EventTraceChannel(self.config_manager.get_event_trace_config())
            )
            self.engine = ClusterHealthEngine(
                self.provider,
                self.dispatcher,
                self.config_manager.get_observer_settings,
                state=StateTracker()
            )
            self.scheduler = PassScheduler(
                self.engine,
                self.config_manager.get_observer_settings,
                token=self.shutdown_event
            )

            self.config_watcher = ConfigWatcher(self.config_manager)
            self.config_watcher.add_change_callback(self._on_config_changed_callback)

            self.logger.info("应用程序组件初始化完成")

        except Exception as e:
            if self.logger:
                self.logger.error(f"应用程序初始化失败: {e}", exc_info=True)
            else:
                print(f"应用程序初始化失败: {e}", file=sys.stderr)
            raise

    def _configure_logging(self, global_config: Dict[str, Any]):
        """配置日志系统

        Args:
            global_config: 全局配置
        """
        global_config = {**global_config, **self.log_overrides}
        log_config = {
            'log_level': global_config.get('log_level', 'INFO'),
            'enable_console': True,
            'enable_file': bool(global_config.get('log_file'))
        }

        if global_config.get('log_file'):
            log_config['log_file'] = global_config['log_file']
            log_config['max_file_size'] = global_config.get('max_log_size', 10 * 1024 * 1024)
            log_config['backup_count'] = global_config.get('log_backup_count', 5)

        log_manager.configure(log_config)

    def _on_config_changed_callback(self, old_config: Dict[str, Any],
                                    new_config: Dict[str, Any]):
        """配置文件变更回调，可能在文件监控线程中调用"""
        if self._loop is not None and self._loop.is_running():
            self._loop.call_soon_threadsafe(self._apply_config, old_config, new_config)
        else:
            self._apply_config(old_config, new_config)

    def _apply_config(self, old_config: Dict[str, Any], new_config: Dict[str, Any]):
        """应用新配置；观察器设置在下一轮开始时自动读取"""
        try:
            self.logger.info("检测到配置文件变更，重新加载配置")

            self._configure_logging(new_config.get('global') or {})

            self.dispatcher.reload(
                self.config_manager.get_sink_configs(),
                EventTraceChannel(self.config_manager.get_event_trace_config())
            )

            if old_config.get('cluster') != new_config.get('cluster'):
                self.provider = RestHealthProvider('cluster', self.config_manager.get_cluster_config())
                self.engine.provider = self.provider
                self.logger.info(f"集群网关已切换: {self.provider.endpoint}")

            self.logger.info("配置重新加载完成")

        except ClusterObserverError as e:
            self.logger.error(f"应用新配置失败: {e.format_error()}")

    async def start(self):
        """启动应用程序

        Raises:
            Exception: 调度器因未预期的异常停止
        """
        if self.is_running:
            self.logger.warning("应用程序已经在运行")
            return

        try:
            self.is_running = True
            self._loop = asyncio.get_running_loop()
            self.logger.info("启动集群观察器")

            self.config_watcher.start_watching()

            config_watcher_task = asyncio.create_task(
                self.config_watcher.watch_config_changes_async()
            )
            self.background_tasks.add(config_watcher_task)
            config_watcher_task.add_done_callback(self.background_tasks.discard)

            scheduler_task = asyncio.create_task(self.scheduler.start())
            shutdown_task = asyncio.create_task(self.shutdown_event.wait())

            self.logger.info("集群观察器启动完成")

            await asyncio.wait({scheduler_task, shutdown_task},
                               return_when=asyncio.FIRST_COMPLETED)

            shutdown_task.cancel()
            if not scheduler_task.done():
                await scheduler_task
            # 调度器因异常退出时在这里重新抛出
            scheduler_task.result()

        except Exception as e:
            self.logger.error(f"应用程序运行异常: {e}", exc_info=True)
            raise
        finally:
            await self.stop()

    async def stop(self):
        """停止应用程序"""
        if not self.is_running:
            return

        self.logger.info("正在停止集群观察器...")
        self.is_running = False
        self.shutdown_event.set()

        if self.config_watcher:
            self.config_watcher.stop_watching()

        for task in self.background_tasks:
            if not task.done():
                task.cancel()

        if self.background_tasks:
            await asyncio.gather(*self.background_tasks, return_exceptions=True)

        self.background_tasks.clear()

        if self.provider:
            await self.provider.close()

        self.logger.info("集群观察器已停止")
        log_manager.cleanup()

    def shutdown(self):
        """触发应用程序关闭"""
        if self.logger:
            self.logger.info("收到关闭信号")
        self.shutdown_event.set()

    def get_status(self) -> Dict[str, Any]:
        """获取应用程序状态

        Returns:
            应用程序状态信息
        """
        status = {
            'is_running': self.is_running,
            'config_path': self.config_path,
            'background_tasks_count': len(self.background_tasks)
        }

        if self.scheduler:
            status['scheduler_stats'] = self.scheduler.get_stats()

        if self.engine:
            status['engine'] = self.engine.get_status()

        if self.dispatcher:
            status['telemetry'] = {
                'sinks': self.dispatcher.get_sink_names(),
                'sent_count': self.dispatcher.sent_count,
                'failed_count': self.dispatcher.failed_count,
            }

        return status


# 全局应用程序实例
app: Optional[ClusterObserverApp] = None


def signal_handler(signum, frame):
    """信号处理器"""
    signal_name = signal.Signals(signum).name
    print(f"\n收到信号 {signal_name} ({signum})")

    if app:
        app.shutdown()
    else:
        print("应用程序未初始化，直接退出")
        sys.exit(0)


def create_argument_parser() -> argparse.ArgumentParser:
    """创建命令行参数解析器"""
    parser = argparse.ArgumentParser(
        prog='cluster-observer',
        description='集群观察器 - 周期性检查集群聚合健康状态，只在出现问题或恢复时上报遥测',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例用法:
  %(prog)s config.yaml                    # 使用指定配置文件启动监控
  %(prog)s --validate config.yaml        # 验证配置文件格式
  %(prog)s --run-once config.yaml        # 执行一轮监控后退出
  %(prog)s --version                      # 显示版本信息

配置文件格式请参考 config/example.yaml
        """
    )

    parser.add_argument(
        'config_file',
        nargs='?',
        help='YAML配置文件路径'
    )

    parser.add_argument(
        '--version', '-v',
        action='version',
        version=f'%(prog)s {__version__}'
    )

    parser.add_argument(
        '--validate',
        action='store_true',
        help='验证配置文件格式并退出'
    )

    parser.add_argument(
        '--run-once',
        action='store_true',
        help='执行一轮监控后退出'
    )

    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        help='设置日志级别（覆盖配置文件设置）'
    )

    parser.add_argument(
        '--log-file',
        help='日志文件路径（覆盖配置文件设置）'
    )

    return parser


def validate_config_file(config_path: str) -> bool:
    """验证配置文件

    Args:
        config_path: 配置文件路径

    Returns:
        验证是否成功
    """
    try:
        print(f"正在验证配置文件: {config_path}")

        if not os.path.exists(config_path):
            print(f"❌ 配置文件不存在: {config_path}")
            return False

        config_manager = ConfigManager(config_path)
        config_manager.load_config()
        settings = config_manager.get_observer_settings()
        sinks = config_manager.get_sink_configs()

        print("✅ 配置文件验证成功!")
        print(f"   - 集群网关: {config_manager.get_cluster_config()['endpoint']}")
        print(f"   - 监控启用: {settings.enabled}，轮询间隔: {settings.loop_sleep}")
        print(f"   - 遥测输出数量: {len(sinks)}")
        for sink_config in sinks:
            print(f"     * {sink_config['name']} ({sink_config['type']})")

        return True

    except ClusterObserverError as e:
        print(f"❌ 配置文件验证失败: {e}")
        return False


async def run_once(config_path: str, log_overrides: Optional[Dict[str, Any]] = None) -> bool:
    """执行一轮监控

    Args:
        config_path: 配置文件路径
        log_overrides: 日志配置覆盖

    Returns:
        本轮是否在超时前完成
    """
    once_app = ClusterObserverApp(config_path, log_overrides)
    try:
        print(f"正在执行一轮集群健康检查: {config_path}")
        await once_app.initialize()

        completed = await once_app.scheduler.run_once()
        status = once_app.engine.get_status()

        if completed:
            print(f"✅ 本轮完成，上报 {status['emitted_count']} 条记录")
            print(f"   - 集群状态: {status['state']['last_known_cluster_state']}")
        else:
            print("❌ 本轮执行超时")
        return completed

    except ClusterObserverError as e:
        print(f"❌ 健康检查失败: {e}")
        return False
    finally:
        if once_app.provider:
            await once_app.provider.close()


async def main():
    """主函数"""
    global app

    parser = create_argument_parser()
    args = parser.parse_args()

    if not args.config_file:
        parser.print_help()
        sys.exit(1)

    config_path = args.config_file

    if not os.path.exists(config_path):
        print(f"配置文件不存在: {config_path}", file=sys.stderr)
        sys.exit(1)

    if args.validate:
        success = validate_config_file(config_path)
        sys.exit(0 if success else 1)

    log_overrides = {}
    if args.log_level:
        log_overrides['log_level'] = args.log_level
    if args.log_file:
        log_overrides['log_file'] = args.log_file

    if args.run_once:
        success = await run_once(config_path, log_overrides)
        sys.exit(0 if success else 1)

    try:
        app = ClusterObserverApp(config_path, log_overrides)

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        await app.initialize()

        print(f"集群观察器 v{__version__} 已启动")
        print(f"配置文件: {config_path}")
        print("按 Ctrl+C 停止程序")

        await app.start()

    except KeyboardInterrupt:
        print("\n用户中断程序")
    except ConfigError as e:
        print(f"配置错误: {e}", file=sys.stderr)
        sys.exit(1)
    except ClusterObserverError as e:
        print(f"集群观察器错误: {e}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"未预期的错误: {e}", file=sys.stderr)
        import traceback
        traceback.print_exc()
        sys.exit(1)
    finally:
        if app:
            await app.stop()


def cli():
    """命令行入口"""
    if sys.platform == "win32":
        asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

    asyncio.run(main())


if __name__ == "__main__":
    cli()
