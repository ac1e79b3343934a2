"""
sing-box 配置合成

手动节点 + 全部订阅 → <home>/config.json

规则:
- 节点组成员顺序固定: 手动节点在前，订阅节点在后
- 合并后没有任何节点时不写文件，磁盘上的旧配置（以及正在运行的进程）保持不变
- 写入为原子替换，不会留下半截配置
"""
import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from miao.core.errors import ConfigError, FetchError, NoNodesAvailable
from miao.core.utils import logger
from miao.lib.config import PanelConfig
from miao.lib.engine.subscription import (
    RegionFilter,
    SubscriptionFetcher,
    SubscriptionStatus,
    SubscriptionStatusBoard,
)
from miao.lib.engine.translator import Outbound
from miao.lib.utils import save_json


CONFIG_FILENAME = "config.json"
RULE_SET_FILENAME = "chinasite.srs"
DIRECT_TAG = "direct"

# 不走代理的本地进程
DIRECT_PROCESSES = ["/usr/bin/qbittorrent", "/usr/bin/NetworkManager"]


def config_path(home: Path) -> Path:
    return home / CONFIG_FILENAME


def base_document(config: PanelConfig, with_rule_set: bool) -> Dict[str, Any]:
    """sing-box 配置模板（TUN 透明代理 + clash_api）"""
    engine = config.engine

    dns_rules: List[Dict[str, Any]] = []
    route_rules: List[Dict[str, Any]] = [
        {"action": "sniff"},
        {"protocol": "dns", "action": "hijack-dns"},
        {"ip_is_private": True, "action": "route", "outbound": DIRECT_TAG},
        {"process_path": list(DIRECT_PROCESSES), "action": "route", "outbound": DIRECT_TAG},
    ]
    route: Dict[str, Any] = {
        "final": engine.group,
        "auto_detect_interface": True,
        "default_domain_resolver": "local",
        "rules": route_rules,
    }

    # 规则集需要先通过 /api/rule/generate 编译，不存在时不引用，避免 sing-box 启动失败
    if with_rule_set:
        dns_rules.append({"rule_set": ["chinasite"], "action": "route", "server": "local"})
        route_rules.append({"rule_set": ["chinasite"], "action": "route", "outbound": DIRECT_TAG})
        route["rule_set"] = [{
            "type": "local",
            "tag": "chinasite",
            "format": "binary",
            "path": RULE_SET_FILENAME,
        }]

    return {
        "log": {
            "disabled": False,
            "output": "./box.log",
            "timestamp": True,
            "level": "info",
        },
        "experimental": {
            "clash_api": {
                "external_controller": f"0.0.0.0:{engine.api_port}",
            },
        },
        "dns": {
            "final": "googledns",
            "strategy": "prefer_ipv4",
            "independent_cache": True,
            "servers": [
                {"type": "udp", "tag": "googledns", "server": "8.8.8.8", "detour": engine.group},
                {"type": "udp", "tag": "local", "server": "223.5.5.5"},
            ],
            "rules": dns_rules,
        },
        "inbounds": [{
            "type": "tun",
            "tag": "tun-in",
            "interface_name": "sing-tun",
            "address": ["172.18.0.1/30"],
            "mtu": 9000,
            "auto_route": True,
            "strict_route": True,
            "auto_redirect": True,
        }],
        "outbounds": [
            {"type": engine.group_type, "tag": engine.group, "outbounds": []},
            {"type": "direct", "tag": DIRECT_TAG},
        ],
        "route": route,
    }


def parse_manual_nodes(nodes: List[str]) -> List[Outbound]:
    """解析 config.yaml 中以 JSON 字符串保存的手动节点"""
    outbounds: List[Outbound] = []
    for raw in nodes:
        try:
            obj = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigError(f"手动节点不是合法 JSON: {e}") from e
        if not isinstance(obj, dict) or not obj.get("tag"):
            raise ConfigError(f"手动节点缺少 tag: {raw[:60]}")
        outbounds.append(obj)
    return outbounds


@dataclass
class SynthesisReport:
    """一次配置合成的结果摘要"""
    path: Path
    manual_tags: List[str] = field(default_factory=list)
    fetched_tags: List[str] = field(default_factory=list)
    subscriptions: List[SubscriptionStatus] = field(default_factory=list)

    @property
    def members(self) -> List[str]:
        return self.manual_tags + self.fetched_tags

    @property
    def total(self) -> int:
        return len(self.manual_tags) + len(self.fetched_tags)


class ConfigSynthesizer:
    """合成并写入 sing-box 配置

    不负责重启进程，调用方显式组合 synthesize → restart。
    """

    def __init__(
        self,
        board: Optional[SubscriptionStatusBoard] = None,
        session: Optional[Any] = None,
    ) -> None:
        self.board = board if board is not None else SubscriptionStatusBoard()
        self._session = session

    def make_fetcher(self, config: PanelConfig) -> SubscriptionFetcher:
        return SubscriptionFetcher(
            include=RegionFilter(config.region_filter),
            timeout=config.engine.fetch_timeout,
            session=self._session,
        )

    def synthesize(self, config: PanelConfig) -> SynthesisReport:
        """拉取订阅并写入 config.json

        Raises:
            ConfigError: 手动节点无法解析
            NoNodesAvailable: 合并后没有节点（不写文件）
        """
        logger.info(">>> [Config] 正在生成 sing-box 配置...")
        manual = parse_manual_nodes(config.nodes)
        logger.info(f"  -> 手动节点: {len(manual)} 个")

        # 订阅列表可能刚被修改，先清理已删除订阅的状态
        self.board.retain(config.subs)

        fetched: List[Outbound] = []
        for item in self.make_fetcher(config).fetch_all(config.subs, board=self.board):
            if isinstance(item, FetchError):
                continue
            fetched.extend(item.outbounds)

        home = config.home
        document, manual_tags, fetched_tags = self.build(
            config, manual, fetched,
            with_rule_set=(home / RULE_SET_FILENAME).exists(),
        )

        report = SynthesisReport(
            path=config_path(home),
            manual_tags=manual_tags,
            fetched_tags=fetched_tags,
            subscriptions=self.board.snapshot(config.subs),
        )

        if report.total == 0:
            logger.error("  -> ✗ 没有任何可用节点，保留原配置不变")
            raise NoNodesAvailable()

        save_json(report.path, document)
        logger.info(
            f"  -> ✓ 配置已写入 {report.path} "
            f"(手动 {len(manual_tags)} + 订阅 {len(fetched_tags)})"
        )
        return report

    def build(
        self,
        config: PanelConfig,
        manual: List[Outbound],
        fetched: List[Outbound],
        with_rule_set: bool = False,
    ) -> Tuple[Dict[str, Any], List[str], List[str]]:
        """组装完整配置文档（纯函数，不做 IO）

        同名 tag 只保留第一次出现的节点（手动优先），
        与内置出站 (节点组 / direct) 重名的节点会被丢弃。

        Returns:
            (配置文档, 手动节点 tag, 订阅节点 tag)
        """
        document = base_document(config, with_rule_set)
        seen = {config.engine.group, DIRECT_TAG}

        def _accept(outbounds: List[Outbound], source: str) -> Tuple[List[Outbound], List[str]]:
            accepted: List[Outbound] = []
            tags: List[str] = []
            for outbound in outbounds:
                tag = outbound.get("tag")
                if not tag or tag in seen:
                    logger.warning(f"  -> [WARN] 丢弃重复或保留的{source}节点: {tag}")
                    continue
                seen.add(tag)
                accepted.append(outbound)
                tags.append(tag)
            return accepted, tags

        manual_out, manual_tags = _accept(manual, "手动")
        fetched_out, fetched_tags = _accept(fetched, "订阅")

        document["outbounds"][0]["outbounds"] = manual_tags + fetched_tags
        document["outbounds"].extend(manual_out)
        document["outbounds"].extend(fetched_out)
        return document, manual_tags, fetched_tags

    @staticmethod
    def read_current(home: Path) -> Dict[str, Any]:
        """读取当前磁盘上的 config.json 及其文件信息

        Raises:
            FileNotFoundError: 配置尚未生成
        """
        path = config_path(home)
        stat = path.stat()
        try:
            content = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            content = {}
        return {
            "path": str(path),
            "size": stat.st_size,
            "modified": int(stat.st_mtime),
            "age_secs": int(time.time() - stat.st_mtime),
            "content": content,
        }
