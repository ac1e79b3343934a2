"""
HTTP 请求 / 响应模型

所有响应统一为 {success, message, data?}。
"""
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from miao.core.errors import ConfigError
from miao.core.schema import ProxyKind
from miao.lib.engine.translator import ProxyDescriptor


class ApiResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Any] = None


def ok(message: str = "ok", data: Any = None) -> dict:
    return ApiResponse(success=True, message=message, data=data).model_dump()


def fail(message: str) -> dict:
    return ApiResponse(success=False, message=message).model_dump(exclude_none=True)


class SubRequest(BaseModel):
    url: str

    @field_validator("url")
    @classmethod
    def url_is_http(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError("订阅地址必须是 http(s) URL")
        return v


class NodeRequest(BaseModel):
    """面板的手动节点表单"""
    node_type: str = "hysteria2"  # hysteria2 / anytls / ss
    tag: str = Field(min_length=1)
    server: str = Field(min_length=1)
    server_port: int = Field(ge=1, le=65535)
    password: str = ""
    sni: Optional[str] = None
    cipher: Optional[str] = None
    skip_cert_verify: Optional[bool] = None

    @field_validator("node_type")
    @classmethod
    def node_type_supported(cls, v: str) -> str:
        try:
            return ProxyKind.parse(v).value
        except ValueError:
            raise ValueError(f"不支持的节点类型: {v}") from None

    @field_validator("tag", "server")
    @classmethod
    def strip_text(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("不能为空")
        return v

    def to_descriptor(self) -> ProxyDescriptor:
        try:
            return ProxyDescriptor.from_node(
                self.node_type,
                tag=self.tag,
                server=self.server,
                server_port=self.server_port,
                password=self.password,
                sni=self.sni,
                cipher=self.cipher,
                insecure=self.skip_cert_verify,
            )
        except ValueError as e:
            raise ConfigError(str(e)) from e


class DeleteNodeRequest(BaseModel):
    tag: str = Field(min_length=1)


class LastProxyRequest(BaseModel):
    name: str = Field(min_length=1)
    group: Optional[str] = None


class ConnectivityRequest(BaseModel):
    url: str
    name: Optional[str] = None

    @field_validator("url")
    @classmethod
    def url_is_http(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("测试地址必须是 http(s) URL")
        return v
