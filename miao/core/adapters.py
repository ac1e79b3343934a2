"""
适配器 - 生产环境的接口实现
"""
import subprocess
from pathlib import Path
from typing import List, Optional

from miao.core.ports import ICommandRunner, CommandResult
from miao.core.utils import logger


class SubprocessRunner(ICommandRunner):
    """生产环境命令执行器

    超时视为失败结果 (returncode=-1)，而不是抛出 TimeoutExpired。
    """

    def run(
        self,
        cmd: List[str],
        cwd: Optional[Path] = None,
        timeout: Optional[float] = None,
        check: bool = True,
    ) -> CommandResult:
        cmd_str = " ".join(cmd)
        logger.debug(f"[CMD] {cmd_str}")

        try:
            result = subprocess.run(
                cmd,
                cwd=cwd,
                timeout=timeout,
                capture_output=True,
                text=True,
            )
        except subprocess.TimeoutExpired:
            logger.debug(f"[TIMEOUT] {cmd_str} (>{timeout}s)")
            if check:
                raise
            return CommandResult(returncode=-1, stdout="", stderr="timeout", command=cmd_str)

        if result.stdout:
            logger.debug(f"[STDOUT] {result.stdout.strip()}")
        if result.stderr:
            logger.debug(f"[STDERR] {result.stderr.strip()}")

        if check and result.returncode != 0:
            raise subprocess.CalledProcessError(
                result.returncode, cmd, result.stdout, result.stderr
            )

        return CommandResult(
            returncode=result.returncode,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
            command=cmd_str,
        )
