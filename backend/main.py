import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# 在应用启动前加载环境变量
load_dotenv()

logger = logging.getLogger("ethicsflow")

_SENTRY_ENABLED = False
try:
    from ethicsflow.core.sentry_init import init_sentry

    _SENTRY_ENABLED = init_sentry()
    if _SENTRY_ENABLED:
        logger.info("[sentry] enabled")
except Exception as e:
    # 中文注释: 零崩溃原则: Sentry 任何异常不得阻塞启动
    logger.warning(f"[sentry] init failed (ignored): {e}")

from ethicsflow.api.v1 import artifacts, assignments, conflicts, internal, reviews, submissions
from ethicsflow.core.config import ReviewPolicyConfig
from ethicsflow.core.errors import WorkflowError
from ethicsflow.core.middleware import ExceptionHandlerMiddleware, workflow_error_handler


@asynccontextmanager
async def lifespan(app: FastAPI):
    policy = ReviewPolicyConfig.from_env()
    logger.info(
        f"[policy] quotas={policy.quotas} review_window_days={policy.review_window_days} "
        f"bucket={policy.documents_bucket}"
    )
    yield


app = FastAPI(
    title="EthicsFlow API",
    description="Research ethics review workflow backend",
    version="1.0.0",
    lifespan=lifespan,
)

if _SENTRY_ENABLED:
    try:
        from sentry_sdk.integrations.asgi import SentryAsgiMiddleware

        app.add_middleware(SentryAsgiMiddleware)
    except Exception as e:
        logger.warning(f"[sentry] middleware attach failed (ignored): {e}")


def _parse_frontend_origins() -> list[str]:
    """
    解析允许跨域的前端 Origins。

    中文注释:
    - 本地默认: http://localhost:3000
    - 生产/预发: 通过 FRONTEND_ORIGIN 或 FRONTEND_ORIGINS 注入（逗号分隔）
    """
    origins: list[str] = []

    single = (os.environ.get("FRONTEND_ORIGIN") or "").strip()
    if single:
        origins.append(single.rstrip("/"))

    many = (os.environ.get("FRONTEND_ORIGINS") or "").strip()
    if many:
        for part in many.split(","):
            o = (part or "").strip().rstrip("/")
            if o:
                origins.append(o)

    if not origins:
        origins = ["http://localhost:3000"]

    # 去重保持顺序
    return list(dict.fromkeys(origins))


# === 中间件配置 ===
# 1. 跨域资源共享 (CORS) - 允许前端访问
app.add_middleware(
    CORSMiddleware,
    allow_origins=_parse_frontend_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 2. 统一异常处理：工作流错误 -> {"detail", "type"}
app.add_middleware(ExceptionHandlerMiddleware)
app.add_exception_handler(WorkflowError, workflow_error_handler)

# === 路由注册 ===
app.include_router(submissions.router, prefix="/api/v1")
app.include_router(assignments.router, prefix="/api/v1")
app.include_router(reviews.router, prefix="/api/v1")
app.include_router(conflicts.router, prefix="/api/v1")
app.include_router(artifacts.router, prefix="/api/v1")
app.include_router(internal.router, prefix="/api/v1")


@app.get("/")
async def root():
    return {"message": "EthicsFlow API is running", "docs": "/docs"}
