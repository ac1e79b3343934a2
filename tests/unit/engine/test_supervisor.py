"""
ProcessSupervisor 单元测试

使用真实的 shell 脚本冒充 sing-box，进程数通过 /proc 统计。
"""
import os
import signal
import threading
import time
from pathlib import Path

import pytest

from miao.core.errors import (
    AlreadyRunning,
    ConnectivityCheckFailed,
    EngineStartError,
    ImmediateExit,
)
from miao.core.schema import SupervisorState
from miao.lib.engine.supervisor import ProcessSupervisor
from tests.mocks import (
    CRASHING_ENGINE,
    LONG_RUNNING_ENGINE,
    StubProbe,
    count_engine_processes,
)


pytestmark = pytest.mark.skipif(
    os.name != "posix" or not os.path.isdir("/proc"),
    reason="需要 Linux /proc",
)

IGNORING_TERM_ENGINE = """#!/bin/sh
trap '' TERM
while true; do
    sleep 1
done
"""


@pytest.fixture
def make_supervisor(engine_home: Path):
    created = []

    def _make(probe=None, **kwargs) -> ProcessSupervisor:
        options = dict(
            settle_interval=0.5,
            init_interval=0.0,
            stop_timeout=2.0,
            poll_interval=0.05,
            restart_pause=0.0,
        )
        options.update(kwargs)
        supervisor = ProcessSupervisor(engine_home, probe or StubProbe([True]), **options)
        created.append(supervisor)
        return supervisor

    yield _make

    for supervisor in created:
        supervisor.stop()


class TestStart:
    """启动流程测试"""

    def test_start_runs_engine(self, make_supervisor, write_engine, engine_home: Path):
        bin_path = write_engine(LONG_RUNNING_ENGINE)
        supervisor = make_supervisor()

        pid = supervisor.start()

        status = supervisor.status()
        assert status.running is True
        assert status.state is SupervisorState.RUNNING
        assert status.pid == pid
        assert (engine_home / "engine.pid").read_text() == str(pid)
        assert count_engine_processes(bin_path) == 1

    def test_second_start_raises_already_running(self, make_supervisor, write_engine):
        """连续两次 start: 第二次 AlreadyRunning，系统中仍只有一个进程"""
        bin_path = write_engine(LONG_RUNNING_ENGINE)
        supervisor = make_supervisor()
        pid = supervisor.start()

        with pytest.raises(AlreadyRunning):
            supervisor.start()

        assert supervisor.status().pid == pid
        assert count_engine_processes(bin_path) == 1

    def test_probe_failure_leaves_no_child(self, make_supervisor, write_engine, engine_home: Path):
        """连通性检测全部失败: ConnectivityCheckFailed，状态 STOPPED，无残留进程"""
        bin_path = write_engine(LONG_RUNNING_ENGINE)
        probe = StubProbe([False])
        supervisor = make_supervisor(probe=probe)

        with pytest.raises(ConnectivityCheckFailed):
            supervisor.start()

        assert probe.check_calls == 1
        assert supervisor.state is SupervisorState.STOPPED
        assert supervisor.status().running is False
        assert count_engine_processes(bin_path) == 0
        assert not (engine_home / "engine.pid").exists()

    def test_immediate_exit(self, make_supervisor, write_engine, engine_home: Path):
        """进程立即退出时报告退出码，stderr 写入日志文件"""
        write_engine(CRASHING_ENGINE)
        supervisor = make_supervisor()

        with pytest.raises(ImmediateExit) as exc_info:
            supervisor.start()

        assert exc_info.value.code == 3
        assert supervisor.state is SupervisorState.STOPPED
        assert "FATAL" in (engine_home / "engine.stderr.log").read_text()

    def test_missing_binary(self, make_supervisor, engine_home: Path):
        (engine_home / "config.json").write_text("{}")
        with pytest.raises(EngineStartError):
            make_supervisor().start()

    def test_missing_config(self, make_supervisor, write_engine, engine_home: Path):
        write_engine(LONG_RUNNING_ENGINE)
        (engine_home / "config.json").unlink()
        supervisor = make_supervisor()

        with pytest.raises(EngineStartError):
            supervisor.start()
        assert supervisor.state is SupervisorState.STOPPED

    def test_on_started_callback(self, make_supervisor, write_engine):
        """启动成功后调用回调，回调异常不影响启动结果"""
        write_engine(LONG_RUNNING_ENGINE)
        calls = []

        def _callback(pid):
            calls.append(pid)
            raise RuntimeError("restore failed")

        supervisor = make_supervisor(on_started=_callback)
        pid = supervisor.start()

        assert calls == [pid]
        assert supervisor.status().running is True


    def test_concurrent_starts_spawn_one_process(self, make_supervisor, write_engine):
        """两个线程同时 start: 恰好一个成功、一个 AlreadyRunning，系统中只有一个进程"""
        bin_path = write_engine(LONG_RUNNING_ENGINE)
        supervisor = make_supervisor()
        barrier = threading.Barrier(2)
        pids, conflicts = [], []

        def _start():
            barrier.wait()
            try:
                pids.append(supervisor.start())
            except AlreadyRunning:
                conflicts.append(True)

        threads = [threading.Thread(target=_start) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert len(pids) == 1
        assert len(conflicts) == 1
        assert supervisor.status().pid == pids[0]
        assert count_engine_processes(bin_path) == 1


class TestStop:
    """停止流程测试"""

    def test_stop_is_idempotent(self, make_supervisor):
        """未运行时 stop 可反复调用"""
        supervisor = make_supervisor()
        for _ in range(3):
            assert supervisor.stop() is False
            assert supervisor.state is SupervisorState.STOPPED

    def test_stop_terminates_engine(self, make_supervisor, write_engine, engine_home: Path):
        bin_path = write_engine(LONG_RUNNING_ENGINE)
        supervisor = make_supervisor()
        supervisor.start()

        assert supervisor.stop() is True

        assert count_engine_processes(bin_path) == 0
        assert not (engine_home / "engine.pid").exists()
        assert supervisor.stop() is False

    def test_on_stopped_callback(self, make_supervisor, write_engine):
        """主动停止后以 PID 回调，未运行时的 stop 不回调"""
        write_engine(LONG_RUNNING_ENGINE)
        stopped = []
        supervisor = make_supervisor(on_stopped=stopped.append)
        pid = supervisor.start()

        supervisor.stop()
        supervisor.stop()

        assert stopped == [pid]

    def test_escalates_to_sigkill(self, make_supervisor, write_engine):
        """忽略 SIGTERM 的进程在超时后被 SIGKILL"""
        bin_path = write_engine(IGNORING_TERM_ENGINE)
        supervisor = make_supervisor(stop_timeout=0.5)
        supervisor.start()

        started = time.monotonic()
        assert supervisor.stop() is True

        assert time.monotonic() - started >= 0.5
        assert count_engine_processes(bin_path) == 0
        assert supervisor.state is SupervisorState.STOPPED


class TestStatus:
    """状态查询测试"""

    def test_reaps_externally_killed_process(self, make_supervisor, write_engine):
        """进程被外部杀死后状态自愈为 STOPPED"""
        write_engine(LONG_RUNNING_ENGINE)
        supervisor = make_supervisor()
        pid = supervisor.start()

        os.killpg(pid, signal.SIGKILL)
        deadline = time.monotonic() + 5
        while supervisor.status().running and time.monotonic() < deadline:
            time.sleep(0.05)

        status = supervisor.status()
        assert status.running is False
        assert status.state is SupervisorState.STOPPED
        assert status.pid is None

    def test_restart_replaces_process(self, make_supervisor, write_engine):
        bin_path = write_engine(LONG_RUNNING_ENGINE)
        supervisor = make_supervisor()
        first = supervisor.start()

        second = supervisor.restart()

        assert second != first
        assert count_engine_processes(bin_path) == 1


class TestTailLog:

    def test_prefers_engine_log(self, make_supervisor, engine_home: Path):
        (engine_home / "box.log").write_text("\n".join(f"line {i}" for i in range(100)))
        assert make_supervisor().tail_log(3) == ["line 97", "line 98", "line 99"]

    def test_empty_when_no_logs(self, make_supervisor):
        assert make_supervisor().tail_log() == []
