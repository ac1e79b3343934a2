"""
Release 元数据

GitHub latest release 接口:
    {"tag_name": "v0.4.3", "assets": [{"name": ..., "browser_download_url": ...}]}
"""
import platform
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import requests


RELEASE_API = "https://api.github.com/repos/{repo}/releases/latest"
RELEASE_TIMEOUT = 15.0

_VERSION_RE = re.compile(r"^v?(\d+)\.(\d+)\.(\d+)$")

Version = Tuple[int, int, int]


def parse_version(raw: str) -> Version:
    """解析 vMAJOR.MINOR.PATCH（前缀 v 可省略）

    Raises:
        ValueError: 格式不符
    """
    match = _VERSION_RE.match(raw.strip())
    if not match:
        raise ValueError(f"无法识别的版本号: {raw!r}")
    major, minor, patch = match.groups()
    return int(major), int(minor), int(patch)


def is_newer(latest: str, current: str) -> bool:
    return parse_version(latest) > parse_version(current)


def detect_arch() -> str:
    """检测系统架构，映射到 Release 资源使用的命名

    Returns:
        amd64 / arm64，其他架构原样返回
    """
    machine = platform.machine().lower()
    if machine in ("x86_64", "amd64"):
        return "amd64"
    elif machine in ("aarch64", "arm64"):
        return "arm64"
    else:
        return machine


def asset_name(prefix: str, arch: Optional[str] = None) -> str:
    return f"{prefix}-{arch or detect_arch()}"


@dataclass
class ReleaseInfo:
    tag: str
    assets: Dict[str, str] = field(default_factory=dict)

    @property
    def version(self) -> str:
        return self.tag.lstrip("v")

    def asset_url(self, name: str) -> Optional[str]:
        return self.assets.get(name)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ReleaseInfo":
        tag = data.get("tag_name")
        if not isinstance(tag, str) or not tag:
            raise ValueError("release 缺少 tag_name")
        assets: Dict[str, str] = {}
        for item in data.get("assets") or []:
            if not isinstance(item, dict):
                continue
            name = item.get("name")
            url = item.get("browser_download_url")
            if isinstance(name, str) and isinstance(url, str):
                assets[name] = url
        return cls(tag=tag, assets=assets)


def fetch_latest_release(
    repo: str,
    session: Optional[Any] = None,
    timeout: float = RELEASE_TIMEOUT,
) -> ReleaseInfo:
    """查询最新 release

    Raises:
        requests.RequestException: 网络错误或非 2xx
        ValueError: 响应格式不符
    """
    http = session if session is not None else requests
    resp = http.get(
        RELEASE_API.format(repo=repo),
        headers={"Accept": "application/vnd.github+json", "User-Agent": "miao"},
        timeout=timeout,
    )
    resp.raise_for_status()
    data = resp.json()
    if not isinstance(data, dict):
        raise ValueError("release 响应不是 JSON 对象")
    return ReleaseInfo.from_api(data)
