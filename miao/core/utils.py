"""
工具函数
"""
import logging
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler


LOGGER_NAME = "miao"


def setup_logger(log_file: Optional[Path] = None, debug: bool = False) -> logging.Logger:
    """配置全局日志，终端输出 INFO（debug 模式输出 DEBUG），文件输出 DEBUG"""
    _logger = logging.getLogger(LOGGER_NAME)
    _logger.setLevel(logging.DEBUG)

    # 避免重复添加 handler
    if _logger.handlers:
        # 如果 debug 模式，更新已有 console handler 的级别
        if debug:
            for h in _logger.handlers:
                if isinstance(h, RichHandler):
                    h.setLevel(logging.DEBUG)
        return _logger

    # 终端 Handler (INFO 级别，debug 模式输出 DEBUG)
    console_handler = RichHandler(
        console=Console(stderr=False),
        show_time=False,
        show_path=False,
        markup=False,
        rich_tracebacks=debug,
    )
    console_handler.setLevel(logging.DEBUG if debug else logging.INFO)
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    _logger.addHandler(console_handler)

    # 文件 Handler (DEBUG 级别，详细日志)
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_formatter = logging.Formatter(
            "[%(asctime)s] [%(levelname)s] [%(module)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )
        file_handler.setFormatter(file_formatter)
        _logger.addHandler(file_handler)

    return _logger


logger = logging.getLogger(LOGGER_NAME)
