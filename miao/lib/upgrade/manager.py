"""
UpgradeManager - 自升级

流程:
  CHECK → RESOLVE → DOWNLOAD → VERIFY → STOP → BACKUP → REPLACE → PERMISSION → EXEC

- VERIFY 之前失败: 不触碰当前可执行文件，也不留下备份
- BACKUP 之后失败: 用 <exe>.bak 恢复，保证 exe 路径上始终是原文件或已验证的备份
- 不支持覆盖运行中可执行文件的平台: 写入 <exe>.new 并 exec 新路径
"""
import os
import shutil
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import requests

from miao import __version__
from miao.core.errors import UpgradeError
from miao.core.ports import ICommandRunner
from miao.core.schema import UpgradeStep
from miao.core.utils import logger
from miao.lib.upgrade.release import (
    ReleaseInfo,
    asset_name,
    fetch_latest_release,
    is_newer,
)
from miao.lib.utils import sha256


DOWNLOAD_TIMEOUT = 120.0
VERIFY_TIMEOUT = 10.0
CHUNK_SIZE = 64 * 1024

RUNTIME_DIRNAME = ".runtime"
RUNTIME_KEEP = {".last_proxy"}

UNRECOVERABLE_MARKER = "UPGRADE-UNRECOVERABLE"
UNRECOVERABLE_EXIT_CODE = 70


def current_executable() -> Optional[Path]:
    """独立打包版本返回自身可执行文件，普通解释器安装返回 None"""
    if getattr(sys, "frozen", False):
        return Path(sys.executable).resolve()
    return None


def can_replace_running_executable() -> bool:
    """能否删除并覆盖正在运行的可执行文件

    POSIX 上删除运行中的文件只是解除目录项，inode 保留到进程退出；
    Windows 会锁定运行中的映像文件。
    """
    return os.name == "posix"


@dataclass
class VersionInfo:
    current: str
    latest: str
    has_update: bool
    download_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current": self.current,
            "latest": self.latest,
            "has_update": self.has_update,
            "download_url": self.download_url,
        }


class UpgradeManager:
    """自升级管理

    Args:
        runner: 命令执行器（验证下载的可执行文件）
        home: sing-box 工作目录（其中 .runtime 缓存在升级时清理）
        repo: GitHub 仓库 owner/name
        asset_prefix: 资源名前缀，完整名为 <prefix>-<arch>
        stop_engine: 替换前停止 sing-box 的回调，返回是否确实停止了进程
        start_engine: 替换失败（未进入 exec）时重新拉起 sing-box 的回调
        exe_path: 当前可执行文件，默认按是否独立打包自动判断
        current_version: 当前版本号
        execv: 进程替换函数，默认 os.execv
        argv: 重新执行时沿用的命令行参数
        exit_func: 无法恢复时的退出函数，默认 os._exit
    """

    def __init__(
        self,
        runner: ICommandRunner,
        home: Path,
        repo: str,
        asset_prefix: str = "miao-linux",
        stop_engine: Optional[Callable[[], Any]] = None,
        start_engine: Optional[Callable[[], Any]] = None,
        exe_path: Optional[Path] = None,
        current_version: str = __version__,
        session: Optional[Any] = None,
        arch: Optional[str] = None,
        execv: Callable[[str, Sequence[str]], Any] = os.execv,
        argv: Optional[List[str]] = None,
        exit_func: Callable[[int], Any] = os._exit,
        replace_supported: Optional[bool] = None,
    ) -> None:
        self.runner = runner
        self.home = home
        self.repo = repo
        self.asset_prefix = asset_prefix
        self.stop_engine = stop_engine
        self.start_engine = start_engine
        self.exe_path = exe_path if exe_path is not None else current_executable()
        self.current_version = current_version
        self.arch = arch
        self._session = session
        self._http = session if session is not None else requests
        self._execv = execv
        self._argv = argv if argv is not None else list(sys.argv)
        self._exit = exit_func
        self._replace_supported = (
            replace_supported if replace_supported is not None else can_replace_running_executable()
        )

    @property
    def backup_path(self) -> Optional[Path]:
        if self.exe_path is None:
            return None
        return self.exe_path.with_name(self.exe_path.name + ".bak")

    # ── Check ───────────────────────────────────────────

    def check(self) -> VersionInfo:
        """查询是否有新版本

        Raises:
            UpgradeError: 无法获取 release 信息 (step=CHECK)
        """
        release = self._fetch_release()
        try:
            has_update = is_newer(release.tag, self.current_version)
        except ValueError as e:
            raise UpgradeError(UpgradeStep.CHECK, str(e)) from e

        return VersionInfo(
            current=self.current_version,
            latest=release.version,
            has_update=has_update,
            download_url=release.asset_url(self._asset_name()),
        )

    def _fetch_release(self) -> ReleaseInfo:
        try:
            return fetch_latest_release(self.repo, session=self._session)
        except (requests.RequestException, ValueError) as e:
            raise UpgradeError(UpgradeStep.CHECK, f"获取最新版本失败: {e}") from e

    def _asset_name(self) -> str:
        return asset_name(self.asset_prefix, self.arch)

    # ── Upgrade ─────────────────────────────────────────

    def upgrade(self) -> str:
        """执行升级；成功时进程被新版本替换

        Returns:
            已是最新时返回当前版本；execv 被替换为不退出的实现时返回新版本

        Raises:
            UpgradeError: 任一步骤失败，step 标明失败位置
        """
        exe = self.exe_path
        if exe is None:
            raise UpgradeError(UpgradeStep.CHECK, "not a standalone build")

        logger.info(">>> [Upgrade] 正在检查新版本...")
        info = self.check()
        if not info.has_update:
            logger.info(f"  -> ✓ 已是最新版本 ({info.current})")
            return info.current
        logger.info(f"  -> 发现新版本: {info.current} → {info.latest}")

        if not info.download_url:
            raise UpgradeError(UpgradeStep.RESOLVE, f"release 中没有 {self._asset_name()}")

        workdir = Path(tempfile.mkdtemp(prefix="miao-upgrade-"))
        try:
            candidate = self._download(info.download_url, workdir)
            self._verify(candidate)

            engine_stopped = self._stop_engine()
            try:
                backup = self._backup(exe)
                target = self._replace(exe, candidate, backup)
                self._set_permission(target, exe, backup)
            except UpgradeError:
                if engine_stopped:
                    self._resume_engine()
                raise
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

        self.cleanup_runtime()
        logger.info(f"  -> ✓ 已安装 {info.latest}，正在重新启动...")
        self._exec(target, exe, backup)
        return info.latest

    def _download(self, url: str, workdir: Path) -> Path:
        candidate = workdir / self._asset_name()
        logger.info(f"  -> 正在下载: {url}")
        try:
            with self._http.get(url, stream=True, timeout=DOWNLOAD_TIMEOUT) as resp:
                resp.raise_for_status()
                with open(candidate, "wb") as f:
                    for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            f.write(chunk)
        except (requests.RequestException, OSError) as e:
            raise UpgradeError(UpgradeStep.DOWNLOAD, f"下载失败: {e}") from e

        if candidate.stat().st_size == 0:
            raise UpgradeError(UpgradeStep.DOWNLOAD, "下载的文件为空")

        candidate.chmod(0o755)
        logger.info(f"     已下载 {candidate.stat().st_size} bytes (sha256 {sha256(candidate)[:12]})")
        return candidate

    def _verify(self, candidate: Path) -> None:
        try:
            result = self.runner.run(
                [str(candidate), "--version"],
                timeout=VERIFY_TIMEOUT,
                check=False,
            )
        except OSError as e:
            candidate.unlink(missing_ok=True)
            raise UpgradeError(UpgradeStep.VERIFY, f"新版本无法执行: {e}") from e

        if result.returncode != 0:
            candidate.unlink(missing_ok=True)
            detail = result.stderr.strip() or f"exit code {result.returncode}"
            logger.error(f"  -> ✗ 新版本验证失败: {detail}")
            raise UpgradeError(UpgradeStep.VERIFY, f"新版本验证失败: {detail}")
        logger.info(f"     验证通过: {result.stdout.strip()}")

    def _stop_engine(self) -> bool:
        """停止 sing-box，返回之前是否在运行

        停止报错时继续升级，按仍在运行处理，失败回滚后会尝试重新拉起。
        """
        if self.stop_engine is None:
            return False
        try:
            return bool(self.stop_engine())
        except Exception as e:
            logger.warning(f"  -> [WARN] [{UpgradeStep.STOP.value}] 停止 sing-box 失败，继续升级: {e}")
            return True

    def _resume_engine(self) -> None:
        """升级在 exec 之前失败，原程序仍在原位，恢复 sing-box 运行"""
        if self.start_engine is None:
            return
        logger.info("  -> 升级未完成，正在重新启动 sing-box...")
        try:
            self.start_engine()
        except Exception as e:
            logger.error(f"  -> ✗ 重新启动 sing-box 失败，需要手动启动: {e}")

    def _backup(self, exe: Path) -> Path:
        backup = exe.with_name(exe.name + ".bak")
        try:
            shutil.copy2(exe, backup)
        except OSError as e:
            backup.unlink(missing_ok=True)
            raise UpgradeError(UpgradeStep.BACKUP, f"备份失败: {e}") from e
        return backup

    def _replace(self, exe: Path, candidate: Path, backup: Path) -> Path:
        if not self._replace_supported:
            target = exe.with_name(exe.name + ".new")
            logger.warning(f"  -> [WARN] 当前平台无法覆盖运行中的程序，改为写入 {target}")
            try:
                shutil.copy2(candidate, target)
            except OSError as e:
                target.unlink(missing_ok=True)
                raise UpgradeError(UpgradeStep.REPLACE, f"写入新版本失败: {e}", rolled_back=True) from e
            return target

        try:
            exe.unlink(missing_ok=True)
            shutil.copy2(candidate, exe)
        except OSError as e:
            restored = self._restore_backup(exe, backup)
            raise UpgradeError(UpgradeStep.REPLACE, f"替换失败: {e}", rolled_back=restored) from e
        return exe

    def _set_permission(self, target: Path, exe: Path, backup: Path) -> None:
        try:
            target.chmod(0o755)
        except OSError as e:
            restored = True
            if target == exe:
                restored = self._restore_backup(exe, backup)
            else:
                target.unlink(missing_ok=True)
            raise UpgradeError(UpgradeStep.PERMISSION, f"设置权限失败: {e}", rolled_back=restored) from e

    def _restore_backup(self, exe: Path, backup: Path) -> bool:
        """用备份覆盖 exe，按文件大小确认恢复成功"""
        try:
            exe.unlink(missing_ok=True)
            shutil.copy2(backup, exe)
            exe.chmod(0o755)
        except OSError as e:
            logger.error(f"  -> ✗ 恢复备份失败: {e}")
            return False
        if exe.stat().st_size != backup.stat().st_size:
            logger.error("  -> ✗ 恢复后的文件大小与备份不一致")
            return False
        logger.warning(f"  -> [WARN] 已从备份恢复: {exe}")
        return True

    def _exec(self, target: Path, exe: Path, backup: Path) -> None:
        args = [str(target)] + self._argv[1:]
        try:
            self._execv(str(target), args)
            return
        except OSError as e:
            logger.error(f"  -> ✗ 启动新版本失败: {e}")

        if target == exe and not self._restore_backup(exe, backup):
            self._unrecoverable(exe)
            return
        try:
            self._execv(str(exe), [str(exe)] + self._argv[1:])
        except OSError as e:
            logger.error(f"  -> ✗ 重新启动原版本失败: {e}")
            self._unrecoverable(exe)

    def _unrecoverable(self, exe: Path) -> None:
        logger.critical(
            f"{UNRECOVERABLE_MARKER}: 升级失败且无法恢复运行，请手动检查 {exe} 与 {exe}.bak"
        )
        self._exit(UNRECOVERABLE_EXIT_CODE)

    # ── Housekeeping ────────────────────────────────────

    def cleanup_runtime(self) -> None:
        """清理 .runtime 缓存目录（保留节点选择记录）"""
        runtime = self.home / RUNTIME_DIRNAME
        if not runtime.is_dir():
            return
        for entry in runtime.iterdir():
            if entry.name in RUNTIME_KEEP:
                continue
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry, ignore_errors=True)
            else:
                entry.unlink(missing_ok=True)
        logger.debug(f"     已清理运行时缓存: {runtime}")

    def discard_backup(self) -> bool:
        """新版本成功启动后删除 <exe>.bak"""
        backup = self.backup_path
        if backup is None or not backup.exists():
            return False
        backup.unlink()
        logger.info(f"  -> 已删除升级备份: {backup}")
        return True
