"""
OutboundTranslator 单元测试
"""
import pytest

from miao.core.schema import ProxyKind
from miao.lib.engine.translator import (
    DEFAULT_SS_CIPHER,
    SKIPPED,
    ProxyDescriptor,
    translate,
    translate_clash,
    translate_clash_proxies,
)


def _descriptor(kind: ProxyKind, **overrides) -> ProxyDescriptor:
    fields = dict(kind=kind, name="node-1", server="1.2.3.4", port=443, password="pw")
    fields.update(overrides)
    return ProxyDescriptor(**fields)


class TestTranslate:
    """translate 协议转换测试"""

    def test_hysteria2_always_insecure_with_bandwidth(self):
        """hysteria2 固定跳过证书校验并声明带宽"""
        out = translate(_descriptor(ProxyKind.HYSTERIA2, sni="a.example.com", insecure_tls=False))

        assert out == {
            "type": "hysteria2",
            "tag": "node-1",
            "server": "1.2.3.4",
            "server_port": 443,
            "password": "pw",
            "up_mbps": 40,
            "down_mbps": 350,
            "tls": {"enabled": True, "insecure": True, "server_name": "a.example.com"},
        }

    def test_anytls_defaults_to_insecure(self):
        """anytls 未声明 skip-cert-verify 时默认 insecure"""
        out = translate(_descriptor(ProxyKind.ANYTLS))
        assert out["tls"]["insecure"] is True
        assert "server_name" not in out["tls"]

    def test_anytls_respects_stated_verification(self):
        """anytls 显式声明时使用声明值"""
        out = translate(_descriptor(ProxyKind.ANYTLS, insecure_tls=False))
        assert out["tls"]["insecure"] is False

    def test_shadowsocks_has_method_and_no_tls(self):
        """shadowsocks 使用 method 字段，没有 tls"""
        out = translate(_descriptor(ProxyKind.SHADOWSOCKS))
        assert out["method"] == DEFAULT_SS_CIPHER
        assert "tls" not in out

        out = translate(_descriptor(ProxyKind.SHADOWSOCKS, cipher="aes-256-gcm"))
        assert out["method"] == "aes-256-gcm"

    def test_tag_is_name_verbatim(self):
        """tag 原样使用节点名"""
        out = translate(_descriptor(ProxyKind.HYSTERIA2, name="🇯🇵 JP 01 | 专线"))
        assert out["tag"] == "🇯🇵 JP 01 | 专线"


class TestProxyDescriptor:
    """ProxyDescriptor 构造测试"""

    def test_from_clash_reads_aliases(self):
        """兼容 servername / ss 简写 / skip-cert-verify"""
        d = ProxyDescriptor.from_clash({
            "name": "SG", "type": "ss", "server": "s.example.com",
            "port": "8388", "password": "pw", "cipher": "aes-128-gcm",
        })
        assert d.kind is ProxyKind.SHADOWSOCKS
        assert d.port == 8388

        d = ProxyDescriptor.from_clash({
            "name": "TW", "type": "anytls", "server": "t.example.com", "port": 443,
            "password": "pw", "servername": "sni.example.com", "skip-cert-verify": False,
        })
        assert d.sni == "sni.example.com"
        assert d.insecure_tls is False

    def test_invalid_port_rejected(self):
        """端口越界时抛出 ValueError"""
        with pytest.raises(ValueError):
            _descriptor(ProxyKind.HYSTERIA2, port=70000)

    def test_descriptor_is_immutable(self):
        """描述对象不可修改"""
        d = _descriptor(ProxyKind.HYSTERIA2)
        with pytest.raises(Exception):
            d.name = "other"

    def test_from_node_blank_sni_means_none(self):
        """表单中空 SNI 视为未设置"""
        d = ProxyDescriptor.from_node("hysteria2", "n", "1.1.1.1", 443, "pw", sni="")
        assert d.sni is None


class TestTranslateClash:
    """Clash proxies 批量转换测试"""

    def test_unknown_type_is_skipped(self):
        """未知协议返回 SKIPPED 而不是抛异常"""
        assert translate_clash({"name": "x", "type": "vmess", "server": "a", "port": 1}) is SKIPPED

    def test_batch_skips_unsupported_and_malformed(self):
        """批量转换跳过未知协议、残缺条目和非字典条目"""
        names, outbounds = translate_clash_proxies([
            {"name": "ok", "type": "hysteria2", "server": "a.example.com", "port": 443, "password": "p"},
            {"name": "vmess", "type": "vmess", "server": "b.example.com", "port": 443},
            {"name": "no-server", "type": "hysteria2", "port": 443},
            "garbage",
        ])
        assert names == ["ok"]
        assert [o["tag"] for o in outbounds] == ["ok"]
