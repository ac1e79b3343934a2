"""
Clash 代理描述 → sing-box outbound 转换

纯函数，无状态。不支持的协议返回 SKIPPED 而不是抛异常，
这样订阅里混入未知协议时只会跳过该节点，不会中断整个订阅。
"""
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from miao.core.schema import ProxyKind
from miao.core.utils import logger


# hysteria2 带宽声明 (Mbps)
HY2_UP_MBPS = 40
HY2_DOWN_MBPS = 350

DEFAULT_SS_CIPHER = "2022-blake3-aes-128-gcm"
DEFAULT_ANYTLS_INSECURE = True


class _Skipped:
    """不支持的协议标记"""

    def __repr__(self) -> str:
        return "SKIPPED"

    def __bool__(self) -> bool:
        return False


SKIPPED = _Skipped()

Outbound = Dict[str, Any]


@dataclass(frozen=True)
class ProxyDescriptor:
    """一个代理节点的协议无关描述"""
    kind: ProxyKind
    name: str
    server: str
    port: int
    password: str
    sni: Optional[str] = None
    cipher: Optional[str] = None
    insecure_tls: Optional[bool] = None  # None = 未声明，使用协议默认值

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("节点名称不能为空")
        if not self.server:
            raise ValueError(f"节点 {self.name} 缺少 server")
        if not 0 < int(self.port) < 65536:
            raise ValueError(f"节点 {self.name} 端口非法: {self.port}")

    @classmethod
    def from_clash(cls, entry: Dict[str, Any]) -> "ProxyDescriptor":
        """从 Clash 订阅的 proxies 条目构造

        Raises:
            ValueError: 协议不支持或字段缺失
        """
        port = entry.get("port", entry.get("server_port"))
        skip_verify = entry.get("skip-cert-verify")
        return cls(
            kind=ProxyKind.parse(str(entry.get("type", ""))),
            name=str(entry.get("name", "")),
            server=str(entry.get("server") or ""),
            port=int(port) if port is not None else 0,
            password=str(entry.get("password") or ""),
            sni=entry.get("sni") or entry.get("servername"),
            cipher=entry.get("cipher"),
            insecure_tls=bool(skip_verify) if skip_verify is not None else None,
        )

    @classmethod
    def from_node(
        cls,
        node_type: str,
        tag: str,
        server: str,
        server_port: int,
        password: str,
        sni: Optional[str] = None,
        cipher: Optional[str] = None,
        insecure: Optional[bool] = None,
    ) -> "ProxyDescriptor":
        """从面板表单输入构造"""
        return cls(
            kind=ProxyKind.parse(node_type),
            name=tag,
            server=server,
            port=server_port,
            password=password,
            sni=sni or None,
            cipher=cipher or None,
            insecure_tls=insecure,
        )


def _tls_block(descriptor: ProxyDescriptor, insecure: bool) -> Dict[str, Any]:
    tls: Dict[str, Any] = {"enabled": True, "insecure": insecure}
    if descriptor.sni:
        tls["server_name"] = descriptor.sni
    return tls


def translate(descriptor: ProxyDescriptor) -> Union[Outbound, _Skipped]:
    """转换单个节点，tag 原样使用节点名（不去重）"""
    base: Outbound = {
        "type": descriptor.kind.value,
        "tag": descriptor.name,
        "server": descriptor.server,
        "server_port": int(descriptor.port),
    }

    if descriptor.kind is ProxyKind.HYSTERIA2:
        # 参考部署环境要求 hysteria2 跳过证书校验
        base.update({
            "password": descriptor.password,
            "up_mbps": HY2_UP_MBPS,
            "down_mbps": HY2_DOWN_MBPS,
            "tls": _tls_block(descriptor, insecure=True),
        })
        return base

    if descriptor.kind is ProxyKind.ANYTLS:
        insecure = (
            descriptor.insecure_tls
            if descriptor.insecure_tls is not None
            else DEFAULT_ANYTLS_INSECURE
        )
        base.update({
            "password": descriptor.password,
            "tls": _tls_block(descriptor, insecure=insecure),
        })
        return base

    if descriptor.kind is ProxyKind.SHADOWSOCKS:
        base.update({
            "method": descriptor.cipher or DEFAULT_SS_CIPHER,
            "password": descriptor.password,
        })
        return base

    return SKIPPED


def translate_clash(entry: Dict[str, Any]) -> Union[Outbound, _Skipped]:
    """转换单个 Clash 条目，未知协议返回 SKIPPED

    Raises:
        ValueError: 协议受支持但字段残缺
    """
    try:
        ProxyKind.parse(str(entry.get("type", "")))
    except ValueError:
        return SKIPPED
    return translate(ProxyDescriptor.from_clash(entry))


def translate_clash_proxies(entries: Iterable[Any]) -> Tuple[List[str], List[Outbound]]:
    """批量转换 Clash proxies 列表，跳过不支持或残缺的条目

    Returns:
        (节点名列表, outbound 列表)，两者一一对应
    """
    names: List[str] = []
    outbounds: List[Outbound] = []

    for entry in entries:
        if not isinstance(entry, dict):
            continue
        try:
            outbound = translate_clash(entry)
        except (ValueError, TypeError) as e:
            logger.debug(f"     跳过残缺节点 {entry.get('name')}: {e}")
            continue

        if outbound is SKIPPED:
            logger.debug(f"     跳过节点 {entry.get('name')} ({entry.get('type')})")
            continue

        names.append(outbound["tag"])
        outbounds.append(outbound)

    return names, outbounds
