"""
运行记录

- 连通性检测历史（后台定时检测与手动检测）
- sing-box 启停记录

只在内存中保留最近若干条，面板重启后清空。
"""
import itertools
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional

from miao.core.schema import CheckSource, EngineAction
from miao.core.utils import logger
from miao.lib.engine.probe import ProbeResult


HISTORY_LIMIT = 10
CHECK_INTERVAL = 60.0


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


@dataclass
class CheckRecord:
    id: int
    success: bool
    time: str
    source: CheckSource
    latency_ms: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "success": self.success,
            "time": self.time,
            "source": self.source.value,
            "latency_ms": self.latency_ms,
            "error": self.error,
        }


@dataclass
class ActionRecord:
    id: int
    action: EngineAction
    time: str
    pid: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action.value,
            "time": self.time,
            "pid": self.pid,
        }


class EngineHistory:
    """有界的检测 / 启停记录，多线程写入"""

    def __init__(self, limit: int = HISTORY_LIMIT) -> None:
        self._lock = threading.Lock()
        self._checks: Deque[CheckRecord] = deque(maxlen=limit)
        self._actions: Deque[ActionRecord] = deque(maxlen=limit)
        self._check_ids = itertools.count(1)
        self._action_ids = itertools.count(1)

    def record_check(self, result: ProbeResult, source: CheckSource) -> CheckRecord:
        with self._lock:
            record = CheckRecord(
                id=next(self._check_ids),
                success=result.success,
                time=_now(),
                source=source,
                latency_ms=result.latency_ms,
                error=result.error,
            )
            self._checks.append(record)
        return record

    def record_action(self, action: EngineAction, pid: Optional[int] = None) -> ActionRecord:
        with self._lock:
            record = ActionRecord(id=next(self._action_ids), action=action, time=_now(), pid=pid)
            self._actions.append(record)
        return record

    def checks(self) -> List[Dict[str, Any]]:
        """最近的检测记录，新的在前"""
        with self._lock:
            return [r.to_dict() for r in reversed(self._checks)]

    def actions(self) -> List[Dict[str, Any]]:
        """最近的启停记录，新的在前"""
        with self._lock:
            return [r.to_dict() for r in reversed(self._actions)]


class PeriodicCheck:
    """后台定时执行连通性检测的守护线程

    Args:
        check: 每个周期调用一次，异常只记日志
        interval: 周期 (秒)，<= 0 表示关闭
    """

    def __init__(self, check: Callable[[], Any], interval: float = CHECK_INTERVAL) -> None:
        self.check = check
        self.interval = interval
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        if self.interval <= 0:
            logger.debug("  -> 定时连通性检测已关闭")
            return False
        if self.running:
            return False
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="net-check", daemon=True)
        self._thread.start()
        logger.info(f"  -> 定时连通性检测已开启 (每 {self.interval:.0f}s)")
        return True

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                self.check()
            except Exception as e:
                logger.warning(f"  -> [WARN] 定时连通性检测出错: {e}")
