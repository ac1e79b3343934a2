"""
EngineManager - 面板的唯一服务对象

持有全部共享状态（进程句柄、订阅状态表、配置锁），
HTTP 层与 CLI 只通过这里暴露的操作修改状态。

锁顺序: 配置锁 (_config_lock) → 进程锁 (ProcessSupervisor._lock)，不得反向获取。
"""
import json
import threading
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

from miao.core.adapters import SubprocessRunner
from miao.core.errors import (
    ConfigError,
    ConnectivityCheckFailed,
    MiaoError,
    NotFoundError,
    NotRunning,
)
from miao.core.ports import ICommandRunner
from miao.core.schema import CheckSource, EngineAction
from miao.core.utils import logger
from miao.lib.config import ConfigStore, PanelConfig
from miao.lib.engine.history import EngineHistory, PeriodicCheck
from miao.lib.engine.probe import ConnectivityProbe
from miao.lib.engine.rules import RuleSetCompiler
from miao.lib.engine.selection import (
    ControlApiClient,
    LastProxySelection,
    LastProxySelectionStore,
)
from miao.lib.engine.subscription import SubscriptionStatusBoard
from miao.lib.engine.supervisor import ProcessSupervisor
from miao.lib.engine.synthesizer import (
    DIRECT_TAG,
    ConfigSynthesizer,
    SynthesisReport,
    config_path,
)
from miao.lib.engine.translator import SKIPPED, ProxyDescriptor, translate
from miao.lib.upgrade import UpgradeManager


class EngineManager:
    """sing-box 控制面服务

    Args:
        store: config.yaml 读写
        runner: 命令执行器（规则集编译、升级验证）
        session: 可注入的 HTTP 客户端，传给所有出站请求的组件
        其余参数用于替换默认组件（测试用）
    """

    def __init__(
        self,
        store: ConfigStore,
        runner: Optional[ICommandRunner] = None,
        session: Optional[Any] = None,
        synthesizer: Optional[ConfigSynthesizer] = None,
        probe: Optional[ConnectivityProbe] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        selection: Optional[LastProxySelectionStore] = None,
        rules: Optional[RuleSetCompiler] = None,
        upgrader: Optional[UpgradeManager] = None,
        history: Optional[EngineHistory] = None,
    ) -> None:
        config = store.load()
        engine = config.engine
        runner = runner or SubprocessRunner()

        self.store = store
        self.home = config.home
        self.group = engine.group
        self._config_lock = threading.RLock()
        self.history = history or EngineHistory()

        self.synthesizer = synthesizer or ConfigSynthesizer(
            board=SubscriptionStatusBoard(), session=session,
        )
        self.probe = probe or ConnectivityProbe(
            url=engine.probe_url,
            attempts=engine.probe_attempts,
            timeout=engine.probe_timeout,
            session=session,
        )
        self.selection = selection or LastProxySelectionStore(
            self.home,
            ControlApiClient(f"http://127.0.0.1:{engine.api_port}", session=session),
        )
        self.supervisor = supervisor or ProcessSupervisor(
            self.home,
            self.probe,
            binary=engine.binary,
            on_started=self._on_started,
            on_stopped=self._on_stopped,
        )
        self.rules = rules or RuleSetCompiler(
            self.home, runner, binary=engine.binary, session=session,
        )
        self.checker = PeriodicCheck(self.scheduled_check, interval=engine.check_interval)
        self.upgrader = upgrader or UpgradeManager(
            runner,
            self.home,
            repo=config.upgrade.repo,
            asset_prefix=config.upgrade.asset_prefix,
            stop_engine=self.supervisor.stop,
            start_engine=self.supervisor.start,
            session=session,
        )

    @property
    def board(self) -> SubscriptionStatusBoard:
        return self.synthesizer.board

    def _on_started(self, pid: int) -> None:
        self.history.record_action(EngineAction.START, pid)
        self.selection.restore_async()

    def _on_stopped(self, pid: int) -> None:
        self.history.record_action(EngineAction.STOP, pid)

    def load_config(self) -> PanelConfig:
        with self._config_lock:
            return self.store.load()

    # ── 进程控制 ────────────────────────────────────────

    def status(self) -> Dict[str, Any]:
        return self.supervisor.status().to_dict()

    def start(self) -> Dict[str, Any]:
        self.supervisor.start()
        return self.status()

    def stop(self) -> bool:
        return self.supervisor.stop()

    def restart(self) -> Dict[str, Any]:
        self.supervisor.restart()
        return self.status()

    def regenerate_and_restart(self) -> SynthesisReport:
        """重新合成配置并重启 sing-box

        合成失败（无节点）时不重启，旧进程继续使用旧配置。
        """
        with self._config_lock:
            report = self.synthesizer.synthesize(self.store.load())
            self.supervisor.restart()
            return report

    def _mutate_and_apply(self, mutate: Callable[[PanelConfig], PanelConfig]) -> PanelConfig:
        """持久化配置修改，然后重新合成并重启（同一把配置锁内完成）"""
        with self._config_lock:
            updated = self.store.update(mutate)
            report = self.synthesizer.synthesize(updated)
            logger.info(f"  -> 节点组成员: {report.total} 个")
            self.supervisor.restart()
            return updated

    # ── 启动 / 退出 ─────────────────────────────────────

    def startup(self) -> bool:
        """面板启动时生成配置并拉起 sing-box，失败只记日志，HTTP 接口照常提供

        无论 sing-box 是否启动成功都会开启后台定时检测。
        """
        started = self._start_engine_at_startup()
        self.checker.start()
        return started

    def _start_engine_at_startup(self) -> bool:
        with self._config_lock:
            try:
                self.synthesizer.synthesize(self.store.load())
            except MiaoError as e:
                logger.error(f"  -> ✗ 生成配置失败: {e.message}")
                if not config_path(self.home).exists():
                    return False
                logger.warning("  -> [WARN] 使用已有的 config.json 启动")

            try:
                self.supervisor.start()
            except MiaoError as e:
                logger.error(f"  -> ✗ sing-box 启动失败: {e.message}")
                return False

        self.upgrader.discard_backup()
        return True

    def shutdown(self) -> None:
        logger.info(">>> [Shutdown] 正在停止 sing-box...")
        self.checker.stop()
        self.supervisor.stop()

    # ── 订阅 ────────────────────────────────────────────

    def list_subs(self) -> List[Dict[str, Any]]:
        config = self.load_config()
        return [status.to_dict() for status in self.board.snapshot(config.subs)]

    def add_sub(self, url: str) -> List[Dict[str, Any]]:
        url = url.strip()

        def _add(config: PanelConfig) -> PanelConfig:
            if url in config.subs:
                raise ConfigError(f"订阅已存在: {url}")
            config.subs.append(url)
            return config

        logger.info(">>> [Subs] 添加订阅")
        self._mutate_and_apply(_add)
        return self.list_subs()

    def delete_sub(self, url: str) -> List[Dict[str, Any]]:
        def _delete(config: PanelConfig) -> PanelConfig:
            if url not in config.subs:
                raise NotFoundError(f"订阅不存在: {url}")
            config.subs.remove(url)
            return config

        logger.info(">>> [Subs] 删除订阅")
        self._mutate_and_apply(_delete)
        return self.list_subs()

    def refresh_subs(self) -> List[Dict[str, Any]]:
        logger.info(">>> [Subs] 刷新全部订阅")
        self.regenerate_and_restart()
        return self.list_subs()

    # ── 手动节点 ────────────────────────────────────────

    def list_nodes(self) -> List[Dict[str, Any]]:
        config = self.load_config()
        return [_node_info(json.loads(raw)) for raw in config.nodes]

    def add_node(self, descriptor: ProxyDescriptor) -> Dict[str, Any]:
        outbound = translate(descriptor)
        if outbound is SKIPPED:
            raise ConfigError(f"不支持的节点类型: {descriptor.kind.value}")

        def _add(config: PanelConfig) -> PanelConfig:
            if descriptor.name in config.node_tags:
                raise ConfigError(f"节点已存在: {descriptor.name}")
            if descriptor.name in (config.engine.group, DIRECT_TAG):
                raise ConfigError(f"节点名与内置出站重名: {descriptor.name}")
            config.nodes.append(json.dumps(outbound, ensure_ascii=False))
            return config

        logger.info(f">>> [Nodes] 添加节点: {descriptor.name}")
        self._mutate_and_apply(_add)
        return _node_info(outbound)

    def delete_node(self, tag: str) -> None:
        def _delete(config: PanelConfig) -> PanelConfig:
            remaining = [raw for raw in config.nodes if json.loads(raw).get("tag") != tag]
            if len(remaining) == len(config.nodes):
                raise NotFoundError(f"节点不存在: {tag}")
            config.nodes = remaining
            return config

        logger.info(f">>> [Nodes] 删除节点: {tag}")
        self._mutate_and_apply(_delete)

    # ── 节点选择 ────────────────────────────────────────

    def set_last_proxy(self, name: str, group: Optional[str] = None) -> Dict[str, str]:
        selection = LastProxySelection(group=group or self.group, name=name)
        self.selection.save(selection)
        return {"group": selection.group, "name": selection.name}

    # ── 检测 ────────────────────────────────────────────

    def test_connectivity(self, url: str, name: Optional[str] = None) -> Dict[str, Any]:
        result = self.probe.measure(url)
        return {
            "name": name or urlparse(url).hostname or url,
            "url": url,
            "latency_ms": result.latency_ms,
            "success": result.success,
        }

    def net_check(self) -> Dict[str, Any]:
        result = self.probe.check_once()
        self.history.record_check(result, CheckSource.MANUAL)
        if not result.success:
            raise ConnectivityCheckFailed(f"无法连接外网: {result.error}")
        return result.to_dict()

    def scheduled_check(self) -> Dict[str, Any]:
        """后台定时检测，结果只记录不抛异常"""
        result = self.probe.check_once()
        record = self.history.record_check(result, CheckSource.AUTO)
        if not result.success:
            logger.warning(f"  -> [WARN] 定时检测: 无法连接外网 ({result.error})")
        return record.to_dict()

    def check_history(self) -> List[Dict[str, Any]]:
        return self.history.checks()

    def action_records(self) -> List[Dict[str, Any]]:
        return self.history.actions()

    # ── sing-box 配置 / 日志 / 规则 ─────────────────────

    def read_config(self) -> Dict[str, Any]:
        try:
            return self.synthesizer.read_current(self.home)
        except FileNotFoundError as e:
            raise NotFoundError("config.json 尚未生成") from e

    def generate_config(self) -> Dict[str, Any]:
        """只重新生成配置，不重启"""
        with self._config_lock:
            report = self.synthesizer.synthesize(self.store.load())
        return {
            "path": str(report.path),
            "members": report.members,
            "subscriptions": [s.to_dict() for s in report.subscriptions],
        }

    def tail_log(self, lines: int = 50) -> List[str]:
        """sing-box 运行中才提供日志

        Raises:
            NotRunning: sing-box 未运行
        """
        if not self.supervisor.status().running:
            raise NotRunning()
        return self.supervisor.tail_log(lines)

    def generate_rules(self) -> Dict[str, Any]:
        config = self.load_config()
        if config.rules is None:
            raise ConfigError("config.yaml 未配置 rules.direct_txt")
        return self.rules.generate(config.rules.direct_txt).to_dict()

    # ── 升级 ────────────────────────────────────────────

    def version_info(self) -> Dict[str, Any]:
        return self.upgrader.check().to_dict()

    def upgrade(self) -> str:
        with self._config_lock:
            return self.upgrader.upgrade()


def _node_info(outbound: Dict[str, Any]) -> Dict[str, Any]:
    tls = outbound.get("tls") or {}
    return {
        "tag": outbound.get("tag"),
        "server": outbound.get("server"),
        "server_port": outbound.get("server_port"),
        "sni": tls.get("server_name"),
        "protocol": outbound.get("type"),
        "source": "manual",
    }
