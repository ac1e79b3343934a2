"""
连通性检测

sing-box 以 TUN 模式接管整机流量，直接请求 generate_204 即可验证
流量确实经由代理出网，而不只是进程活着。
"""
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import requests

from miao.core.utils import logger


DEFAULT_PROBE_URL = "https://www.gstatic.com/generate_204"
DEFAULT_ATTEMPTS = 3
DEFAULT_TIMEOUT = 10.0
DEFAULT_BACKOFF = 2.0


@dataclass
class ProbeResult:
    """一次检测的结果"""
    url: str
    success: bool
    latency_ms: Optional[int] = None
    status_code: Optional[int] = None
    error: Optional[str] = None
    attempts: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "success": self.success,
            "latency_ms": self.latency_ms,
            "status_code": self.status_code,
            "error": self.error,
            "attempts": self.attempts,
        }


class ConnectivityProbe:
    """generate_204 检测，有限次重试

    Args:
        url: 期望返回 204 的地址
        attempts: 最大尝试次数
        timeout: 单次请求超时 (秒)
        backoff: 两次尝试之间的固定间隔 (秒)
        session: 可注入的 HTTP 客户端（测试用）
        sleep: 可注入的 sleep 函数（测试用）
    """

    def __init__(
        self,
        url: str = DEFAULT_PROBE_URL,
        attempts: int = DEFAULT_ATTEMPTS,
        timeout: float = DEFAULT_TIMEOUT,
        backoff: float = DEFAULT_BACKOFF,
        session: Optional[Any] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.url = url
        self.attempts = max(1, attempts)
        self.timeout = timeout
        self.backoff = backoff
        self._http = session if session is not None else requests
        self._sleep = sleep

    def check_once(self) -> ProbeResult:
        """单次检测，只有 HTTP 204 视为成功"""
        result = self.measure(self.url, timeout=self.timeout)
        if result.status_code is not None and result.status_code != 204:
            result.success = False
            result.error = f"期望 204，实际 {result.status_code}"
        return result

    def check(self) -> ProbeResult:
        """带重试的检测，任一次成功即返回"""
        result = ProbeResult(url=self.url, success=False)
        for attempt in range(1, self.attempts + 1):
            result = self.check_once()
            result.attempts = attempt
            if result.success:
                logger.info(f"  -> ✓ 连通性检测通过 ({result.latency_ms}ms)")
                return result

            logger.warning(
                f"  -> [WARN] 连通性检测失败 ({attempt}/{self.attempts}): {result.error}"
            )
            if attempt < self.attempts:
                self._sleep(self.backoff)
        return result

    def measure(self, url: str, timeout: float = 5.0) -> ProbeResult:
        """测量任意地址的响应延迟（面板的站点测速）

        能拿到 HTTP 响应（非 5xx）即视为可达。
        """
        started = time.monotonic()
        try:
            resp = self._http.get(url, timeout=timeout, allow_redirects=False)
        except requests.RequestException as e:
            return ProbeResult(url=url, success=False, error=str(e))

        latency_ms = int((time.monotonic() - started) * 1000)
        return ProbeResult(
            url=url,
            success=resp.status_code < 500,
            latency_ms=latency_ms,
            status_code=resp.status_code,
            error=None if resp.status_code < 500 else f"HTTP {resp.status_code}",
        )
