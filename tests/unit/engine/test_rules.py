"""
RuleSetCompiler 单元测试
"""
import json
from pathlib import Path
from typing import List, Optional

import pytest

from miao.core.errors import RuleSetError
from miao.core.ports import CommandResult
from miao.lib.engine.rules import RuleSetCompiler, parse_domain_list
from tests.mocks import FakeResponse, FakeSession, MockRunner


DIRECT_URL = "https://rules.example.com/direct.txt"
DIRECT_TXT = "baidu.com\nfull:www.qq.com\nregexp:^.*\\.cn$\n\n# comment\n"


class CompilingRunner(MockRunner):
    """编译成功时写出 --output 指定的文件"""

    def __init__(self, output: bytes = b"SRS"):
        super().__init__()
        self.output = output

    def run(self, cmd: List[str], cwd: Optional[Path] = None, timeout=None, check=True) -> CommandResult:
        result = super().run(cmd, cwd=cwd, timeout=timeout, check=check)
        if result.returncode == 0:
            Path(cmd[cmd.index("--output") + 1]).write_bytes(self.output)
        return result


class TestParseDomainList:

    def test_prefixes(self):
        rule = parse_domain_list(DIRECT_TXT.splitlines())
        assert rule == {
            "domain": ["www.qq.com"],
            "domain_suffix": ["baidu.com"],
            "domain_regex": ["^.*\\.cn$"],
        }


class TestGenerate:
    """下载 → 转换 → 编译测试"""

    def test_compiles_rule_set(self, engine_home: Path):
        runner = CompilingRunner()
        session = FakeSession({DIRECT_URL: FakeResponse(text=DIRECT_TXT)})

        info = RuleSetCompiler(engine_home, runner, session=session).generate(DIRECT_URL)

        call = runner.assert_called_with("rule-set compile --output")
        assert call.cwd == engine_home
        source = json.loads((engine_home / "direct.json").read_text())
        assert source["version"] == 3
        assert info.domain_count == 3
        assert info.size == len(b"SRS")
        assert not (engine_home / "chinasite.srs.bak").exists()

    def test_failure_restores_previous_rule_set(self, engine_home: Path):
        """编译失败时恢复旧的 chinasite.srs"""
        (engine_home / "chinasite.srs").write_bytes(b"OLD")
        runner = MockRunner()
        runner.stub_results["rule-set compile"] = CommandResult(
            returncode=1, stdout="", stderr="decode error", command="",
        )
        session = FakeSession({DIRECT_URL: FakeResponse(text=DIRECT_TXT)})

        with pytest.raises(RuleSetError, match="decode error"):
            RuleSetCompiler(engine_home, runner, binary="sing-box", session=session).generate(DIRECT_URL)

        assert (engine_home / "chinasite.srs").read_bytes() == b"OLD"

    def test_download_failure(self, engine_home: Path):
        runner = MockRunner()
        with pytest.raises(RuleSetError):
            RuleSetCompiler(engine_home, runner, session=FakeSession()).generate(DIRECT_URL)
        assert runner.calls == []
