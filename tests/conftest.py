"""
Pytest 共享 Fixtures

提供 mock 服务、临时 sing-box 工作目录和假的 sing-box 可执行文件。
"""
import json
import stat
from pathlib import Path
from typing import Callable, Dict

import pytest
import yaml

from tests.mocks import FakeSession, MockRunner, StubProbe


@pytest.fixture
def mock_runner() -> MockRunner:
    """新建一个干净的 MockRunner"""
    return MockRunner()


@pytest.fixture
def fake_session() -> FakeSession:
    """没有任何预设路由的 HTTP 客户端"""
    return FakeSession()


@pytest.fixture
def stub_probe() -> StubProbe:
    """始终成功的连通性检测"""
    return StubProbe([True])


@pytest.fixture
def engine_home(tmp_path: Path) -> Path:
    """sing-box 工作目录"""
    home = tmp_path / "sing-box"
    home.mkdir(parents=True, exist_ok=True)
    return home


@pytest.fixture
def write_engine(engine_home: Path) -> Callable[[str], Path]:
    """写入假的 sing-box 可执行文件和一个最小的 config.json"""

    def _write(script: str) -> Path:
        bin_path = engine_home / "sing-box"
        bin_path.write_text(script)
        bin_path.chmod(bin_path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        (engine_home / "config.json").write_text(json.dumps({"outbounds": []}))
        return bin_path

    return _write


@pytest.fixture
def write_config(tmp_path: Path, engine_home: Path) -> Callable[..., Path]:
    """写入 config.yaml，sing_box_home 指向临时目录"""

    def _write(**overrides) -> Path:
        data: Dict = {
            "port": 6161,
            "sing_box_home": str(engine_home),
            "subs": [],
            "nodes": [],
            "region_filter": ["JP", "TW", "SG"],
        }
        data.update(overrides)
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump(data, allow_unicode=True, sort_keys=False), encoding="utf-8")
        return path

    return _write
