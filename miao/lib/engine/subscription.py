"""
订阅拉取

职责:
- 下载 Clash 订阅 (YAML, proxies 列表)
- 按节点名过滤 (区域标记，可配置)
- 转换为 sing-box outbound
- 记录每个订阅的最近一次拉取状态
"""
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

import requests
import yaml

from miao.core.errors import FetchError
from miao.core.utils import logger
from miao.lib.engine.translator import Outbound, translate_clash_proxies


# 部分机场会根据 UA 返回不同格式，clash-meta 能拿到 hysteria2/anytls 节点
SUBSCRIPTION_USER_AGENT = "clash-meta"

FETCH_TIMEOUT = 30.0
MAX_FETCH_WORKERS = 8

NamePredicate = Callable[[str], bool]


class RegionFilter:
    """按节点名包含的区域标记过滤，markers 为空时保留全部节点"""

    def __init__(self, markers: Iterable[str]) -> None:
        self.markers = tuple(m for m in markers if m)

    def __call__(self, name: str) -> bool:
        if not self.markers:
            return True
        return any(marker in name for marker in self.markers)

    def __repr__(self) -> str:
        return f"RegionFilter({list(self.markers)})"


@dataclass
class SubscriptionResult:
    """单个订阅的转换结果"""
    url: str
    names: List[str]
    outbounds: List[Outbound]


@dataclass
class SubscriptionStatus:
    """订阅最近一次拉取状态"""
    url: str
    success: bool
    node_count: int = 0
    error: Optional[str] = None
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "url": self.url,
            "success": self.success,
            "node_count": self.node_count,
            "updated_at": int(self.updated_at),
        }
        if self.error is not None:
            data["error"] = self.error
        return data


class SubscriptionStatusBoard:
    """订阅状态表 (url → 状态)，多线程共享"""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, SubscriptionStatus] = {}

    def record_success(self, url: str, node_count: int) -> None:
        with self._lock:
            self._entries[url] = SubscriptionStatus(url=url, success=True, node_count=node_count)

    def record_failure(self, url: str, error: str) -> None:
        with self._lock:
            self._entries[url] = SubscriptionStatus(url=url, success=False, error=error)

    def get(self, url: str) -> Optional[SubscriptionStatus]:
        with self._lock:
            return self._entries.get(url)

    def retain(self, urls: Iterable[str]) -> None:
        """订阅列表变化后，丢弃已删除订阅的状态"""
        keep = set(urls)
        with self._lock:
            for url in list(self._entries):
                if url not in keep:
                    del self._entries[url]

    def snapshot(self, urls: Sequence[str]) -> List[SubscriptionStatus]:
        """按配置顺序返回状态；尚未拉取过的订阅视为未成功"""
        with self._lock:
            return [
                self._entries.get(url) or SubscriptionStatus(
                    url=url, success=False, error="尚未拉取", updated_at=0,
                )
                for url in urls
            ]


class SubscriptionFetcher:
    """订阅下载器

    Args:
        include: 节点名过滤谓词，默认保留全部
        timeout: 单个订阅的请求超时上限 (秒)
        session: 可注入的 HTTP 客户端（测试用），默认使用 requests 模块
    """

    def __init__(
        self,
        include: Optional[NamePredicate] = None,
        timeout: float = FETCH_TIMEOUT,
        session: Optional[Any] = None,
    ) -> None:
        self.include: NamePredicate = include or (lambda name: True)
        self.timeout = min(timeout, FETCH_TIMEOUT)
        self._http = session if session is not None else requests

    def fetch(self, url: str) -> SubscriptionResult:
        """下载并转换一个订阅

        Raises:
            FetchError: 网络错误 / 超时 / 内容为空 / 格式错误
        """
        try:
            resp = self._http.get(
                url,
                headers={"User-Agent": SUBSCRIPTION_USER_AGENT},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            text = resp.text
        except requests.RequestException as e:
            raise FetchError(url, f"下载失败: {e}") from e

        if not text or not text.strip():
            raise FetchError(url, "订阅内容为空")

        try:
            document = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise FetchError(url, f"订阅不是合法 YAML: {e}") from e

        proxies = document.get("proxies") if isinstance(document, dict) else None
        if not isinstance(proxies, list):
            raise FetchError(url, "订阅中没有 proxies 列表")

        kept = [
            p for p in proxies
            if isinstance(p, dict) and self.include(str(p.get("name", "")))
        ]
        names, outbounds = translate_clash_proxies(kept)
        logger.info(
            f"  -> 订阅 {_short(url)}: 共 {len(proxies)} 个节点, "
            f"过滤后 {len(kept)} 个, 可用 {len(outbounds)} 个"
        )
        return SubscriptionResult(url=url, names=names, outbounds=outbounds)

    def fetch_all(
        self,
        urls: Sequence[str],
        board: Optional[SubscriptionStatusBoard] = None,
    ) -> List[Union[SubscriptionResult, FetchError]]:
        """并发拉取全部订阅，共享一个总截止时间

        单个订阅失败不影响其他订阅；返回列表与 urls 顺序一致，
        每项是 SubscriptionResult 或 FetchError。
        """
        if not urls:
            return []

        results: List[Union[SubscriptionResult, FetchError]] = []
        executor = ThreadPoolExecutor(
            max_workers=min(MAX_FETCH_WORKERS, len(urls)),
            thread_name_prefix="sub-fetch",
        )
        try:
            futures = [executor.submit(self.fetch, url) for url in urls]
            # requests 的 timeout 是单次读超时，整体再受同一个截止时间约束
            wait(futures, timeout=self.timeout)

            for url, future in zip(urls, futures):
                if not future.done():
                    future.cancel()
                    results.append(FetchError(url, f"超过 {self.timeout:.0f}s 未完成"))
                    continue
                exc = future.exception()
                if exc is None:
                    results.append(future.result())
                elif isinstance(exc, FetchError):
                    results.append(exc)
                else:
                    results.append(FetchError(url, f"{type(exc).__name__}: {exc}"))
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        for item in results:
            if isinstance(item, FetchError):
                logger.warning(f"  -> [WARN] 订阅拉取失败 {_short(item.url)}: {item.cause}")
                if board is not None:
                    board.record_failure(item.url, item.cause)
            elif board is not None:
                board.record_success(item.url, len(item.outbounds))

        return results


def _short(url: str, limit: int = 48) -> str:
    """日志中截断订阅地址（通常带 token）"""
    return url if len(url) <= limit else url[:limit] + "..."
