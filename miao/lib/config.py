"""
面板配置 (config.yaml)

Pydantic 做类型校验，在启动时即可发现配置错误，
而不是在合成 sing-box 配置或重启进程中途才报错。

示例:
    port: 6161
    sing_box_home: /root/sing-box
    subs:
      - https://example.com/sub?token=xxx
    nodes:
      - '{"type":"hysteria2","tag":"my-hy2","server":"1.2.3.4","server_port":443,...}'
    region_filter: [JP, TW, SG]
"""
import json
from pathlib import Path
from typing import Callable, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from miao.core.errors import ConfigError
from miao.core.utils import logger
from miao.lib.utils import load_yaml, save_yaml


DEFAULT_CONFIG_FILE = Path("config.yaml")


class EngineOptions(BaseModel):
    """sing-box 进程与连通性检测参数"""
    binary: str = "sing-box"
    api_port: int = Field(default=6262, ge=1, le=65535)  # clash_api external_controller
    group: str = "proxy"                                 # 节点选择组的 tag
    group_type: str = "selector"                         # selector / urltest
    probe_url: str = "https://www.gstatic.com/generate_204"
    probe_attempts: int = Field(default=3, ge=1)
    probe_timeout: float = Field(default=10.0, gt=0)
    fetch_timeout: float = Field(default=30.0, gt=0, le=30.0)
    check_interval: float = Field(default=60.0, ge=0)    # 后台定时检测间隔，0 表示关闭

    @field_validator("group_type")
    @classmethod
    def group_type_supported(cls, v: str) -> str:
        if v not in ("selector", "urltest"):
            raise ValueError("group_type 只支持 selector / urltest")
        return v


class UpgradeOptions(BaseModel):
    """自升级的 Release 来源"""
    repo: str = "YUxiangLuo/miao"
    asset_prefix: str = "miao-linux"


class RulesOptions(BaseModel):
    """直连规则集来源"""
    direct_txt: str


class PanelConfig(BaseModel):
    """config.yaml 的顶层结构"""
    port: int = Field(default=6161, ge=1, le=65535)
    sing_box_home: str = "."
    subs: List[str] = []
    nodes: List[str] = []  # 每项是一个 outbound 的 JSON 字符串
    region_filter: List[str] = ["JP", "TW", "SG"]  # 为空表示不过滤
    rules: Optional[RulesOptions] = None
    engine: EngineOptions = Field(default_factory=EngineOptions)
    upgrade: UpgradeOptions = Field(default_factory=UpgradeOptions)

    @field_validator("subs")
    @classmethod
    def subs_are_http(cls, v: List[str]) -> List[str]:
        for url in v:
            if not url.startswith(("http://", "https://")):
                raise ValueError(f"订阅地址必须是 http(s) URL: {url}")
        return v

    @field_validator("nodes")
    @classmethod
    def nodes_are_outbounds(cls, v: List[str]) -> List[str]:
        for raw in v:
            try:
                obj = json.loads(raw)
            except json.JSONDecodeError as e:
                raise ValueError(f"手动节点不是合法 JSON: {e}") from e
            if not isinstance(obj, dict) or not obj.get("tag") or not obj.get("type"):
                raise ValueError(f"手动节点缺少 type/tag: {raw[:60]}")
        return v

    @property
    def home(self) -> Path:
        """sing-box 工作目录"""
        return Path(self.sing_box_home).expanduser()

    @property
    def node_tags(self) -> List[str]:
        return [json.loads(raw)["tag"] for raw in self.nodes]


class ConfigStore:
    """config.yaml 的读写

    只负责 load / save，并发控制由调用方 (EngineManager) 的配置锁保证。
    """

    def __init__(self, path: Path = DEFAULT_CONFIG_FILE) -> None:
        self.path = path

    def load(self) -> PanelConfig:
        try:
            data = load_yaml(self.path)
        except yaml.YAMLError as e:
            raise ConfigError(f"{self.path} 不是合法 YAML: {e}") from e

        if not self.path.exists():
            logger.info(f"  -> 配置文件不存在，使用默认配置: {self.path}")

        try:
            return PanelConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"{self.path} 校验失败: {e}") from e

    def save(self, config: PanelConfig) -> None:
        data = config.model_dump(mode="json", exclude_none=True)
        save_yaml(self.path, data)
        logger.debug(f"  -> 配置已保存: {self.path}")

    def update(self, mutate: Callable[[PanelConfig], PanelConfig]) -> PanelConfig:
        """load → mutate → 校验 → save，返回保存后的配置"""
        current = self.load()
        candidate = mutate(current.model_copy(deep=True))
        try:
            updated = PanelConfig.model_validate(candidate.model_dump())
        except ValidationError as e:
            raise ConfigError(str(e)) from e
        self.save(updated)
        return updated
