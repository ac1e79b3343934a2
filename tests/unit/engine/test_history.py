"""
运行记录单元测试
"""
import threading
import time

from miao.core.schema import CheckSource, EngineAction
from miao.lib.engine.history import EngineHistory, PeriodicCheck
from miao.lib.engine.probe import ProbeResult


def _result(success: bool) -> ProbeResult:
    return ProbeResult(url="https://www.gstatic.com/generate_204", success=success, latency_ms=12 if success else None)


class TestEngineHistory:
    """有界记录测试"""

    def test_keeps_latest_records_newest_first(self):
        history = EngineHistory(limit=3)
        for i in range(5):
            history.record_check(_result(i % 2 == 0), CheckSource.AUTO)

        checks = history.checks()

        assert [c["id"] for c in checks] == [5, 4, 3]
        assert checks[0]["success"] is True
        assert checks[1]["latency_ms"] is None

    def test_actions(self):
        history = EngineHistory()
        history.record_action(EngineAction.START, 42)
        history.record_action(EngineAction.STOP, 42)

        assert [(a["action"], a["pid"]) for a in history.actions()] == [("stop", 42), ("start", 42)]

    def test_concurrent_writers(self):
        """多线程写入不丢记录，编号唯一"""
        history = EngineHistory(limit=100)

        def _write():
            for _ in range(10):
                history.record_action(EngineAction.START)

        threads = [threading.Thread(target=_write) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        ids = [a["id"] for a in history.actions()]
        assert len(ids) == 50
        assert len(set(ids)) == 50


class TestPeriodicCheck:
    """定时检测线程测试"""

    def test_runs_until_stopped(self):
        ran = threading.Event()
        calls = []

        def _check():
            calls.append(True)
            if len(calls) >= 3:
                ran.set()

        checker = PeriodicCheck(_check, interval=0.01)
        assert checker.start() is True
        assert checker.start() is False

        assert ran.wait(5)
        checker.stop()

        assert checker.running is False
        count = len(calls)
        time.sleep(0.05)
        assert len(calls) == count

    def test_check_errors_do_not_stop_thread(self):
        ran = threading.Event()
        calls = []

        def _check():
            calls.append(True)
            if len(calls) >= 2:
                ran.set()
            raise RuntimeError("boom")

        checker = PeriodicCheck(_check, interval=0.01)
        checker.start()
        try:
            assert ran.wait(5)
        finally:
            checker.stop()

    def test_disabled_with_zero_interval(self):
        checker = PeriodicCheck(lambda: None, interval=0)
        assert checker.start() is False
        assert checker.running is False
