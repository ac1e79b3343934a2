"""
节点选择持久化

sing-box 每次重启后节点组会回到默认成员，这里记录用户最后一次
选择的节点，并在启动后通过 clash_api 恢复。恢复是便利功能，
失败只记日志，不影响启动结果。
"""
import json
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, List, Optional
from urllib.parse import quote

import requests

from miao.core.utils import logger
from miao.lib.utils import save_json


LAST_PROXY_FILENAME = ".last_proxy"

API_TIMEOUT = 5.0
READY_ATTEMPTS = 10
READY_INTERVAL = 0.5


@dataclass(frozen=True)
class LastProxySelection:
    group: str
    name: str


class ControlApiClient:
    """sing-box clash_api 客户端（仅节点组相关接口）"""

    def __init__(
        self,
        base_url: str,
        secret: str = "",
        timeout: float = API_TIMEOUT,
        session: Optional[Any] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.secret = secret
        self.timeout = timeout
        self._http = session if session is not None else requests

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers["Authorization"] = f"Bearer {self.secret}"
        return headers

    def _group_url(self, group: str) -> str:
        return f"{self.base_url}/proxies/{quote(group, safe='')}"

    def group_members(self, group: str) -> Optional[List[str]]:
        """返回节点组成员，节点组不存在时返回 None

        Raises:
            requests.RequestException: API 不可达
        """
        resp = self._http.get(self._group_url(group), headers=self._headers(), timeout=self.timeout)
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        members = resp.json().get("all")
        return [str(m) for m in members] if isinstance(members, list) else []

    def select(self, group: str, name: str) -> None:
        """切换节点组当前成员

        Raises:
            requests.RequestException: API 不可达或切换失败
        """
        resp = self._http.put(
            self._group_url(group),
            headers=self._headers(),
            data=json.dumps({"name": name}),
            timeout=self.timeout,
        )
        resp.raise_for_status()


class LastProxySelectionStore:
    """保存 / 恢复最后一次选择的节点

    Args:
        home: sing-box 工作目录，记录保存在 <home>/.last_proxy
        api: clash_api 客户端
        ready_attempts / ready_interval: 等待 API 可用的轮询参数
    """

    def __init__(
        self,
        home: Path,
        api: ControlApiClient,
        ready_attempts: int = READY_ATTEMPTS,
        ready_interval: float = READY_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.home = home
        self.api = api
        self.ready_attempts = ready_attempts
        self.ready_interval = ready_interval
        self._sleep = sleep

    @property
    def path(self) -> Path:
        return self.home / LAST_PROXY_FILENAME

    def save(self, selection: LastProxySelection) -> None:
        save_json(self.path, {"group": selection.group, "name": selection.name}, indent=2)
        logger.debug(f"  -> 已记录节点选择: {selection.group} → {selection.name}")

    def load(self) -> Optional[LastProxySelection]:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return LastProxySelection(group=str(data["group"]), name=str(data["name"]))
        except (json.JSONDecodeError, KeyError, TypeError, OSError) as e:
            logger.warning(f"  -> [WARN] 节点选择记录损坏，忽略: {e}")
            return None

    def restore(self) -> bool:
        """恢复上次选择的节点

        Returns:
            True 表示已下发切换，其余情况（无记录 / 节点已不存在 / API 不可用）为 False
        """
        selection = self.load()
        if selection is None:
            return False

        members = self._wait_for_group(selection.group)
        if members is None:
            return False

        if selection.name not in members:
            logger.info(f"  -> 上次选择的节点已不存在，跳过恢复: {selection.name}")
            return False

        try:
            self.api.select(selection.group, selection.name)
        except requests.RequestException as e:
            logger.warning(f"  -> [WARN] 恢复节点选择失败: {e}")
            return False

        logger.info(f"  -> ✓ 已恢复节点选择: {selection.group} → {selection.name}")
        return True

    def restore_async(self) -> threading.Thread:
        """在后台线程中恢复，不阻塞触发重启的请求"""
        thread = threading.Thread(target=self._restore_safely, name="restore-last-proxy", daemon=True)
        thread.start()
        return thread

    def _restore_safely(self) -> None:
        try:
            self.restore()
        except Exception:
            logger.exception("  -> [WARN] 恢复节点选择时出现异常")

    def _wait_for_group(self, group: str) -> Optional[List[str]]:
        """轮询直到 clash_api 可用，返回节点组成员；超时或节点组不存在返回 None"""
        for attempt in range(1, self.ready_attempts + 1):
            try:
                members = self.api.group_members(group)
            except requests.RequestException as e:
                logger.debug(f"     clash_api 尚未就绪 ({attempt}/{self.ready_attempts}): {e}")
                self._sleep(self.ready_interval)
                continue
            if members is None:
                logger.info(f"  -> 节点组不存在，跳过恢复: {group}")
            return members

        logger.warning("  -> [WARN] clash_api 不可用，放弃恢复节点选择")
        return None
