"""
直连规则集生成

direct.txt（每行一个域名，支持 full: / regexp: 前缀）
  → direct.json（sing-box source rule-set, version 3）
  → chinasite.srs（sing-box rule-set compile）

编译失败时恢复旧的 chinasite.srs，正在运行的 sing-box 不受影响。
"""
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import requests

from miao.core.errors import RuleSetError
from miao.core.ports import ICommandRunner
from miao.core.utils import logger
from miao.lib.engine.synthesizer import RULE_SET_FILENAME
from miao.lib.utils import save_json


SOURCE_FILENAME = "direct.json"
RAW_FILENAME = "direct.txt"
RULE_SET_VERSION = 3

DOWNLOAD_TIMEOUT = 30.0
COMPILE_TIMEOUT = 60.0


def parse_domain_list(lines: Iterable[str]) -> Dict[str, List[str]]:
    """把 domain-list 文本转换为规则字段

    full:example.com   → domain
    regexp:^.*\\.cn$    → domain_regex
    example.com        → domain_suffix
    """
    rule: Dict[str, List[str]] = {"domain": [], "domain_suffix": [], "domain_regex": []}
    for raw in lines:
        item = raw.strip()
        if not item or item.startswith("#"):
            continue
        if item.startswith("full:"):
            rule["domain"].append(item[len("full:"):])
        elif item.startswith("regexp:"):
            rule["domain_regex"].append(item[len("regexp:"):])
        else:
            rule["domain_suffix"].append(item)
    return rule


def build_source_rule_set(lines: Iterable[str]) -> Dict[str, Any]:
    return {"version": RULE_SET_VERSION, "rules": [parse_domain_list(lines)]}


@dataclass
class RuleSetInfo:
    path: Path
    size: int
    modified: int
    domain_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": str(self.path),
            "size": self.size,
            "modified": self.modified,
            "domain_count": self.domain_count,
        }


class RuleSetCompiler:
    """下载 direct.txt 并编译为 chinasite.srs

    Args:
        home: sing-box 工作目录
        runner: 命令执行器（调用 sing-box rule-set compile）
        binary: sing-box 二进制文件名
        session: 可注入的 HTTP 客户端
    """

    def __init__(
        self,
        home: Path,
        runner: ICommandRunner,
        binary: str = "sing-box",
        session: Optional[Any] = None,
    ) -> None:
        self.home = home
        self.runner = runner
        self.binary = binary
        self._http = session if session is not None else requests

    @property
    def output_path(self) -> Path:
        return self.home / RULE_SET_FILENAME

    @property
    def backup_path(self) -> Path:
        return self.home / f"{RULE_SET_FILENAME}.bak"

    def generate(self, url: str) -> RuleSetInfo:
        """下载 → 转换 → 编译

        Raises:
            RuleSetError: 下载失败 / 编译失败（旧规则集已恢复）
        """
        logger.info(">>> [Rules] 正在生成直连规则集...")
        text = self._download(url)
        (self.home / RAW_FILENAME).write_text(text, encoding="utf-8")

        source = build_source_rule_set(text.splitlines())
        domain_count = sum(len(v) for v in source["rules"][0].values())
        source_path = self.home / SOURCE_FILENAME
        save_json(source_path, source, indent=2)
        logger.info(f"  -> 规则条目: {domain_count} 条")

        self._compile(source_path)

        stat = self.output_path.stat()
        logger.info(f"  -> ✓ 规则集已生成: {self.output_path} ({stat.st_size} bytes)")
        return RuleSetInfo(
            path=self.output_path,
            size=stat.st_size,
            modified=int(stat.st_mtime),
            domain_count=domain_count,
        )

    def _download(self, url: str) -> str:
        try:
            resp = self._http.get(url, timeout=DOWNLOAD_TIMEOUT)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise RuleSetError(f"下载直连列表失败: {e}") from e
        if not resp.text.strip():
            raise RuleSetError("直连列表为空")
        return resp.text

    def _compile(self, source_path: Path) -> None:
        had_previous = self.output_path.exists()
        if had_previous:
            shutil.copy2(self.output_path, self.backup_path)

        bin_path = self.home / self.binary
        cmd = [
            str(bin_path) if bin_path.exists() else self.binary,
            "rule-set", "compile",
            "--output", str(self.output_path),
            str(source_path),
        ]
        try:
            result = self.runner.run(cmd, cwd=self.home, timeout=COMPILE_TIMEOUT, check=False)
        except OSError as e:
            self._restore(had_previous)
            raise RuleSetError(f"无法执行 sing-box: {e}") from e

        if result.returncode != 0 or not self.output_path.exists():
            self._restore(had_previous)
            detail = result.stderr.strip() or f"exit code {result.returncode}"
            logger.error(f"  -> ✗ 规则集编译失败: {detail}")
            raise RuleSetError(f"规则集编译失败: {detail}")

        self.backup_path.unlink(missing_ok=True)

    def _restore(self, had_previous: bool) -> None:
        self.output_path.unlink(missing_ok=True)
        if had_previous and self.backup_path.exists():
            shutil.copy2(self.backup_path, self.output_path)
            logger.warning("  -> [WARN] 已恢复旧的规则集")
