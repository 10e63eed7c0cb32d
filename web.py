from fastapi import FastAPI, Request, APIRouter
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from fastapi.responses import JSONResponse
import json
import os
from typing import Any
from apis.generation import router as generation_router
from apis.image import router as image_router
from apis.payment import router as payment_router
from apis.user import router as user_router
from core.app_settings import get_app_settings
from core.config import cfg, VERSION, API_BASE
from core.db import DB
from core.log import get_logger, trace_ctx
from core.events import log_event, E
from jobs.staging_sweep import start_staging_sweep_worker

logger = get_logger(__name__)


class UnicodeJSONResponse(JSONResponse):
    """自定义 JSON 响应类，确保非 ASCII 字符不被转义"""
    def render(self, content: Any) -> bytes:
        return json.dumps(
            content,
            ensure_ascii=False,
            allow_nan=False,
            indent=None,
            separators=(",", ":"),
        ).encode("utf-8")


app = FastAPI(
    title="CoverFlow API",
    description="视频封面生成与次数计费服务",
    version=VERSION,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    default_response_class=UnicodeJSONResponse,
)

# CORS配置
app.add_middleware(
    CORSMiddleware,
    allow_origins=cfg.get("server.cors_origins", ["*"]),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_trace_header(request: Request, call_next):
    with trace_ctx(request.headers.get("X-Trace-Id")) as trace_id:
        response = await call_next(request)
    response.headers["X-Trace-Id"] = trace_id
    response.headers["X-Version"] = VERSION
    return response


# 创建API路由分组
api_router = APIRouter(prefix=f"{API_BASE}")
api_router.include_router(generation_router)
api_router.include_router(image_router)
api_router.include_router(payment_router)
api_router.include_router(user_router)


@api_router.get("/health", tags=["默认"])
async def health():
    return {"status": "ok"}


app.include_router(api_router)


@app.on_event("startup")
async def on_startup():
    DB.create_tables()
    settings = get_app_settings()
    log_event(
        logger,
        E.SYSTEM_STARTUP,
        version=VERSION,
        base_url=settings.storage.base_url,
        staging=settings.storage.staging_backend,
    )
    if settings.storage.staging_backend == "memory":
        start_staging_sweep_worker()


# 生成结果静态文件
_storage_dir = get_app_settings().storage.storage_dir
os.makedirs(_storage_dir, exist_ok=True)
app.mount("/storage", StaticFiles(directory=_storage_dir), name="storage")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "web:app",
        host=str(cfg.get("server.host", "0.0.0.0")),
        port=int(cfg.get("server.port", 8080)),
    )
