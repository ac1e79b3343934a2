"""
异常体系

所有业务异常继承 MiaoError，并声明对应的 HTTP 状态码，
由 Web 层统一转换为 {success, message} 响应。
"""
from typing import Optional

from miao.core.schema import UpgradeStep


class MiaoError(Exception):
    """业务异常基类"""

    http_status = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigError(MiaoError):
    """用户配置非法（config.yaml 或手动节点）"""

    http_status = 400


class NotFoundError(MiaoError):
    """删除/查询的目标不存在"""

    http_status = 404


# ── 订阅 & 配置合成 ─────────────────────────────────────────

class FetchError(MiaoError):
    """单个订阅拉取失败（网络 / 解析），对整体合成非致命"""

    def __init__(self, url: str, cause: str) -> None:
        super().__init__(f"{url}: {cause}")
        self.url = url
        self.cause = cause


class NoNodesAvailable(MiaoError):
    """合并后没有任何节点，配置文件保持不变"""

    def __init__(self, message: str = "没有可用节点，已保留原配置") -> None:
        super().__init__(message)


# ── 进程托管 ────────────────────────────────────────────────

class SupervisorError(MiaoError):
    """sing-box 进程管理异常"""


class AlreadyRunning(SupervisorError):
    http_status = 409

    def __init__(self, message: str = "sing-box 已在运行") -> None:
        super().__init__(message)


class NotRunning(SupervisorError):
    http_status = 409

    def __init__(self, message: str = "sing-box 未运行") -> None:
        super().__init__(message)


class EngineStartError(SupervisorError):
    """启动前置条件不满足或 spawn 失败"""


class ImmediateExit(SupervisorError):
    """进程启动后立即退出"""

    def __init__(self, code: Optional[int]) -> None:
        super().__init__(f"sing-box 启动后立即退出 (code={code})")
        self.code = code


class ConnectivityCheckFailed(SupervisorError):
    """进程已启动但连通性检测始终失败"""

    http_status = 503

    def __init__(self, message: str = "sing-box 已启动但无法连接外网") -> None:
        super().__init__(message)


# ── 自升级 ──────────────────────────────────────────────────

class UpgradeError(MiaoError):
    """升级失败

    Attributes:
        step: 失败发生的步骤
        destructive_reached: 是否已进入会修改可执行文件的步骤
        rolled_back: 已进入破坏性步骤时，备份是否已成功恢复
    """

    def __init__(
        self,
        step: UpgradeStep,
        message: str,
        rolled_back: Optional[bool] = None,
    ) -> None:
        super().__init__(f"[{step.value}] {message}")
        self.step = step
        self.destructive_reached = step.destructive
        self.rolled_back = rolled_back


# ── 规则集 ──────────────────────────────────────────────────

class RuleSetError(MiaoError):
    """规则集下载或编译失败"""
