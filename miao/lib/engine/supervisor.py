"""
ProcessSupervisor - sing-box 进程托管

- 全局唯一的子进程句柄，所有状态迁移在同一把锁内完成
- 启动: spawn → 短暂等待确认未立即退出 → 等待网卡初始化 → 连通性检测
- 停止: SIGTERM → 限时轮询 → SIGKILL 并等待内核确认退出

sing-box 以 TUN 模式为整机维护路由规则，必须先尝试优雅退出，
直接 SIGKILL 可能留下失效的路由表项导致整机断网。
"""
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any, Callable, Dict, List, Optional

from miao.core.errors import (
    AlreadyRunning,
    ConnectivityCheckFailed,
    EngineStartError,
    ImmediateExit,
)
from miao.core.schema import SupervisorState
from miao.core.utils import logger
from miao.lib.engine.probe import ConnectivityProbe
from miao.lib.engine.synthesizer import config_path


_PID_FILENAME = "engine.pid"
_STDERR_FILENAME = "engine.stderr.log"
_ENGINE_LOG_FILENAME = "box.log"

SETTLE_INTERVAL = 0.5     # 判断是否立即退出
INIT_INTERVAL = 3.0       # 等待 TUN 网卡就绪
STOP_TIMEOUT = 3.0        # SIGTERM 后最长等待
POLL_INTERVAL = 0.1
RESTART_PAUSE = 1.0       # 释放端口 / 网卡


@dataclass
class SupervisedProcess:
    handle: subprocess.Popen
    started_at: float
    stderr: Optional[IO[Any]] = None


@dataclass
class EngineStatus:
    running: bool
    state: SupervisorState
    pid: Optional[int] = None
    uptime_secs: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "state": self.state.value,
            "pid": self.pid,
            "uptime_secs": self.uptime_secs,
        }


class ProcessSupervisor:
    """sing-box 进程托管

    Args:
        home: sing-box 工作目录（二进制与 config.json 所在目录）
        probe: 启动后的连通性检测
        binary: 二进制文件名
        on_started: 每次成功启动后以 PID 回调（不得阻塞，如恢复节点选择）
        on_stopped: 每次主动停止进程后以 PID 回调
    """

    def __init__(
        self,
        home: Path,
        probe: ConnectivityProbe,
        binary: str = "sing-box",
        settle_interval: float = SETTLE_INTERVAL,
        init_interval: float = INIT_INTERVAL,
        stop_timeout: float = STOP_TIMEOUT,
        poll_interval: float = POLL_INTERVAL,
        restart_pause: float = RESTART_PAUSE,
        on_started: Optional[Callable[[int], Any]] = None,
        on_stopped: Optional[Callable[[int], Any]] = None,
    ) -> None:
        self.home = home
        self.probe = probe
        self.binary = binary
        self.settle_interval = settle_interval
        self.init_interval = init_interval
        self.stop_timeout = stop_timeout
        self.poll_interval = poll_interval
        self.restart_pause = restart_pause
        self.on_started = on_started
        self.on_stopped = on_stopped

        self._lock = threading.RLock()
        self._state = SupervisorState.STOPPED
        self._process: Optional[SupervisedProcess] = None

    @property
    def _bin_path(self) -> Path:
        return self.home / self.binary

    @property
    def _config_file(self) -> Path:
        return config_path(self.home)

    @property
    def _pid_file(self) -> Path:
        return self.home / _PID_FILENAME

    @property
    def _stderr_file(self) -> Path:
        return self.home / _STDERR_FILENAME

    @property
    def state(self) -> SupervisorState:
        return self._state

    # ── Start ───────────────────────────────────────────

    def start(self) -> int:
        """启动 sing-box，返回 PID

        Raises:
            AlreadyRunning: 已在运行或正在启动
            EngineStartError: 二进制 / 配置缺失，或 spawn 失败
            ImmediateExit: 进程启动后立即退出
            ConnectivityCheckFailed: 连通性检测全部失败（进程已被清理）
        """
        with self._lock:
            self._reap_locked()
            if self._state in (SupervisorState.RUNNING, SupervisorState.STARTING):
                raise AlreadyRunning()

            self._state = SupervisorState.STARTING
            try:
                pid = self._start_locked()
            except BaseException:
                if self._process is not None:
                    self._terminate_locked(self._process)
                    self._clear_locked()
                self._state = SupervisorState.STOPPED
                raise

            self._state = SupervisorState.RUNNING

        _notify(self.on_started, pid, "启动")
        return pid

    def _start_locked(self) -> int:
        if not self._bin_path.exists():
            raise EngineStartError(f"sing-box 二进制不存在: {self._bin_path}")
        if not self._config_file.exists():
            raise EngineStartError(f"配置文件不存在: {self._config_file}")

        logger.info(">>> [Engine] 正在启动 sing-box...")
        self.home.mkdir(parents=True, exist_ok=True)
        stderr_f = open(self._stderr_file, "a", encoding="utf-8")

        env = dict(os.environ)
        env["PATH"] = f"{self.home}{os.pathsep}{env.get('PATH', '')}"
        try:
            handle = subprocess.Popen(
                [str(self._bin_path), "run", "-c", str(self._config_file)],
                cwd=str(self.home),
                env=env,
                stdout=subprocess.DEVNULL,
                stderr=stderr_f,
                start_new_session=True,
            )
        except OSError as e:
            stderr_f.close()
            raise EngineStartError(f"sing-box 启动失败: {e}") from e

        time.sleep(self.settle_interval)
        code = handle.poll()
        if code is not None:
            stderr_f.close()
            logger.error(f"  -> ✗ sing-box 启动后立即退出 (code={code}), 请查看: {self._stderr_file}")
            raise ImmediateExit(code)

        self._process = SupervisedProcess(handle=handle, started_at=time.time(), stderr=stderr_f)
        logger.info(f"  -> 进程已启动 (PID: {handle.pid})，等待网卡初始化...")

        time.sleep(self.init_interval)
        code = handle.poll()
        if code is not None:
            self._clear_locked()
            raise ImmediateExit(code)

        result = self.probe.check()
        if not result.success:
            logger.error("  -> ✗ sing-box 已启动但连通性检测失败，正在停止...")
            raise ConnectivityCheckFailed(
                f"sing-box 已启动但无法连接外网 ({result.attempts} 次尝试: {result.error})"
            )

        self._pid_file.write_text(str(handle.pid))
        logger.info(f"  -> ✓ sing-box 运行中 (PID: {handle.pid})")
        return handle.pid

    # ── Stop ────────────────────────────────────────────

    def stop(self) -> bool:
        """停止 sing-box（幂等）

        Returns:
            True 表示确实停止了一个进程，False 表示本来就未运行
        """
        with self._lock:
            self._reap_locked()
            if self._process is None:
                self._state = SupervisorState.STOPPED
                return False

            self._state = SupervisorState.STOPPING
            process = self._process
            try:
                self._terminate_locked(process)
            finally:
                self._clear_locked()
                self._state = SupervisorState.STOPPED
            logger.info(f"  -> ✓ sing-box 已停止 (PID: {process.handle.pid})")
            _notify(self.on_stopped, process.handle.pid, "停止")
            return True

    def restart(self) -> int:
        """stop → 短暂等待 → start，整个过程持有锁"""
        with self._lock:
            self.stop()
            time.sleep(self.restart_pause)
            return self.start()

    def _terminate_locked(self, process: SupervisedProcess) -> None:
        """SIGTERM → 轮询等待 → SIGKILL，尽力而为，不抛异常"""
        handle = process.handle
        if handle.poll() is not None:
            return

        _signal_group(handle, signal.SIGTERM)

        deadline = time.monotonic() + self.stop_timeout
        while time.monotonic() < deadline:
            if handle.poll() is not None:
                return
            time.sleep(self.poll_interval)

        logger.warning(f"  -> [WARN] sing-box (PID: {handle.pid}) SIGTERM 超时，强制 SIGKILL")
        _signal_group(handle, signal.SIGKILL)
        try:
            handle.wait()
        except OSError as e:
            logger.error(f"  -> ✗ 等待 sing-box 退出失败 (PID: {handle.pid}): {e}")

    # ── Status ──────────────────────────────────────────

    def status(self) -> EngineStatus:
        """查询状态，不会被进行中的启动/停止阻塞"""
        if not self._lock.acquire(timeout=0.05):
            # 状态迁移进行中，直接报告当前状态
            process = self._process
            return self._build_status(process)
        try:
            self._reap_locked()
            return self._build_status(self._process)
        finally:
            self._lock.release()

    def is_running(self) -> bool:
        return self.status().running

    def _build_status(self, process: Optional[SupervisedProcess]) -> EngineStatus:
        state = self._state
        if process is None:
            return EngineStatus(running=False, state=state)
        return EngineStatus(
            running=state is SupervisorState.RUNNING,
            state=state,
            pid=process.handle.pid,
            uptime_secs=int(time.time() - process.started_at),
        )

    def _reap_locked(self) -> None:
        """进程已自行退出时回收句柄，状态自愈为 STOPPED"""
        if self._process is None:
            return
        code = self._process.handle.poll()
        if code is None:
            return
        logger.warning(f"  -> [WARN] sing-box 已退出 (PID: {self._process.handle.pid}, code={code})")
        self._clear_locked()
        self._state = SupervisorState.STOPPED

    def _clear_locked(self) -> None:
        if self._process is not None and self._process.stderr is not None:
            self._process.stderr.close()
        self._process = None
        self._pid_file.unlink(missing_ok=True)

    # ── Logs ────────────────────────────────────────────

    def tail_log(self, lines: int = 50) -> List[str]:
        """读取 sing-box 日志尾部（box.log 优先，其次 stderr 输出）"""
        for name in (_ENGINE_LOG_FILENAME, _STDERR_FILENAME):
            path = self.home / name
            if path.exists():
                content = path.read_text(encoding="utf-8", errors="replace")
                return content.splitlines()[-lines:]
        return []


def _signal_group(handle: subprocess.Popen, sig: int) -> None:
    """向子进程所在进程组发送信号（子进程以 start_new_session 启动，组号即 PID）"""
    try:
        os.killpg(handle.pid, sig)
    except ProcessLookupError:
        pass
    except OSError as e:
        logger.warning(f"  -> [WARN] 发送信号 {sig} 失败 (PID: {handle.pid}): {e}")
        try:
            handle.send_signal(sig)
        except OSError:
            logger.warning(f"  -> [WARN] 无法向 sing-box 发送信号 (PID: {handle.pid})")


def _notify(callback: Optional[Callable[[int], Any]], pid: int, action: str) -> None:
    if callback is None:
        return
    try:
        callback(pid)
    except Exception as e:
        logger.warning(f"  -> [WARN] {action}后回调失败: {e}")
