"""
miao 入口

    miao [serve|generate|check|version] [-c config.yaml] [-p port] [--debug]

serve (默认): 生成配置 → 启动 sing-box → 提供 HTTP 控制接口
generate:     只生成 sing-box 配置
check:        连通性检测
version:      打印版本
"""
import argparse
import sys
from pathlib import Path
from typing import List, Optional

import uvicorn

from miao import __version__
from miao.core.errors import MiaoError
from miao.core.utils import logger, setup_logger
from miao.lib.config import DEFAULT_CONFIG_FILE, ConfigStore
from miao.lib.engine import EngineManager
from miao.web.api import create_app


LOG_FILENAME = "miao.log"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="miao", description="sing-box 网关控制面板")
    parser.add_argument(
        "action",
        nargs="?",
        default="serve",
        choices=["serve", "generate", "check", "version"],
        help="执行的动作 (默认 serve)",
    )
    parser.add_argument("-c", "--config", type=Path, default=DEFAULT_CONFIG_FILE, help="配置文件路径")
    parser.add_argument("-p", "--port", type=int, help="HTTP 端口（覆盖配置文件）")
    parser.add_argument("--static", type=Path, help="面板静态文件目录")
    parser.add_argument("--debug", action="store_true", help="调试模式")
    parser.add_argument("--version", action="version", version=f"miao {__version__}")
    return parser


def serve(manager: EngineManager, port: int, static_dir: Optional[Path], debug: bool) -> None:
    logger.info(">>> [Startup] 正在初始化 sing-box...")
    if not manager.startup():
        logger.warning("  -> [WARN] sing-box 未启动，可通过面板修复配置后重试")

    app = create_app(manager, static_dir=static_dir)
    logger.info(f">>> [Server] 监听 0.0.0.0:{port}")
    uvicorn.run(app, host="0.0.0.0", port=port, log_level="debug" if debug else "info")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.action == "version":
        print(__version__)
        return 0

    setup_logger(args.config.expanduser().resolve().parent / LOG_FILENAME, debug=args.debug)

    try:
        store = ConfigStore(args.config)
        manager = EngineManager(store)
    except MiaoError as e:
        logger.error(f"  -> ✗ {e.message}")
        return 1

    if args.action == "generate":
        try:
            result = manager.generate_config()
        except MiaoError as e:
            logger.error(f"  -> ✗ {e.message}")
            return 1
        logger.info(f"  -> ✓ {result['path']} ({len(result['members'])} 个节点)")
        return 0

    if args.action == "check":
        result = manager.probe.check()
        return 0 if result.success else 1

    port = args.port or manager.load_config().port
    serve(manager, port, args.static, args.debug)
    return 0


if __name__ == "__main__":
    sys.exit(main())
