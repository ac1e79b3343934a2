"""
miao - sing-box 网关控制面板

订阅/手动节点 → sing-box 配置合成，进程托管，HTTP 控制接口，自升级。
"""
__version__ = "0.4.2"
