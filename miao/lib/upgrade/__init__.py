"""
自升级: 从 GitHub Releases 获取新版本并替换当前可执行文件
"""
from miao.lib.upgrade.manager import UpgradeManager, VersionInfo

__all__ = ["UpgradeManager", "VersionInfo"]
