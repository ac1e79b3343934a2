"""
HTTP 控制接口

路由函数都是同步函数，由 FastAPI 放到线程池执行；
业务异常直接抛出，由统一的异常处理器转换为 {success, message} 响应。
"""
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.concurrency import run_in_threadpool

from miao import __version__
from miao.core.errors import MiaoError
from miao.core.utils import logger
from miao.lib.engine import EngineManager
from miao.web.schema import (
    ConnectivityRequest,
    DeleteNodeRequest,
    LastProxyRequest,
    NodeRequest,
    SubRequest,
    fail,
    ok,
)


def create_app(manager: EngineManager, static_dir: Optional[Path] = None) -> FastAPI:
    """构建 FastAPI 应用

    Args:
        manager: 全局唯一的服务对象
        static_dir: 面板静态文件目录（可选）
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await run_in_threadpool(manager.shutdown)

    app = FastAPI(title="miao", version=__version__, lifespan=lifespan)
    app.state.manager = manager

    # ── 异常处理 ────────────────────────────────────────

    @app.exception_handler(MiaoError)
    async def handle_miao_error(request: Request, exc: MiaoError) -> JSONResponse:
        logger.warning(f"  -> [WARN] {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.http_status, content=fail(exc.message))

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        messages = []
        for err in exc.errors():
            loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
            messages.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
        return JSONResponse(status_code=400, content=fail("; ".join(messages) or "请求参数错误"))

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"  -> ✗ {request.method} {request.url.path} 未处理的异常")
        return JSONResponse(status_code=500, content=fail(f"内部错误: {exc}"))

    # ── 进程控制 ────────────────────────────────────────

    @app.get("/api/status")
    def get_status():
        return ok(data=manager.status())

    @app.post("/api/service/start")
    def start_service():
        return ok("sing-box 已启动", manager.start())

    @app.post("/api/service/stop")
    def stop_service():
        stopped = manager.stop()
        return ok("sing-box 已停止" if stopped else "sing-box 未在运行", manager.status())

    @app.post("/api/service/restart")
    def restart_service():
        return ok("sing-box 已重启", manager.restart())

    @app.get("/api/service/log")
    def service_log(lines: int = Query(default=50, ge=1, le=1000)):
        return ok(data=manager.tail_log(lines))

    @app.get("/api/service/records")
    def service_records():
        return ok(data=manager.action_records())

    # ── 订阅 ────────────────────────────────────────────

    @app.get("/api/subs")
    def list_subs():
        return ok(data=manager.list_subs())

    @app.post("/api/subs")
    def add_sub(body: SubRequest):
        return ok("订阅已添加", manager.add_sub(body.url))

    @app.delete("/api/subs")
    def delete_sub(body: SubRequest):
        return ok("订阅已删除", manager.delete_sub(body.url))

    @app.post("/api/subs/refresh")
    def refresh_subs():
        return ok("订阅已刷新", manager.refresh_subs())

    # ── 手动节点 ────────────────────────────────────────

    @app.get("/api/nodes")
    def list_nodes():
        return ok(data=manager.list_nodes())

    @app.post("/api/nodes")
    def add_node(body: NodeRequest):
        return ok("节点已添加", manager.add_node(body.to_descriptor()))

    @app.delete("/api/nodes")
    def delete_node(body: DeleteNodeRequest):
        manager.delete_node(body.tag)
        return ok("节点已删除")

    @app.post("/api/last-proxy")
    def set_last_proxy(body: LastProxyRequest):
        return ok(data=manager.set_last_proxy(body.name, body.group))

    # ── 检测 ────────────────────────────────────────────

    @app.post("/api/connectivity")
    def connectivity(body: ConnectivityRequest):
        return ok(data=manager.test_connectivity(body.url, body.name))

    @app.get("/api/net-check")
    def net_check():
        return ok(data=manager.net_check())

    @app.get("/api/checks")
    def check_history():
        return ok(data=manager.check_history())

    # ── sing-box 配置 / 规则 ────────────────────────────

    @app.get("/api/config")
    def get_config():
        return ok(data=manager.read_config())

    @app.post("/api/config/generate")
    def generate_config():
        return ok("配置已生成", manager.generate_config())

    @app.post("/api/rule/generate")
    def generate_rules():
        return ok("规则集已生成", manager.generate_rules())

    # ── 升级 ────────────────────────────────────────────

    @app.get("/api/version")
    def get_version():
        return ok(data=manager.version_info())

    @app.post("/api/upgrade")
    def upgrade():
        version = manager.upgrade()
        return ok(f"当前版本 {version}", {"version": version})

    if static_dir is not None:
        if static_dir.is_dir():
            app.mount("/", StaticFiles(directory=str(static_dir), html=True), name="panel")
        else:
            logger.warning(f"  -> [WARN] 静态文件目录不存在，跳过: {static_dir}")

    return app
