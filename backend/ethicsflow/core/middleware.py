import time
import logging
from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from ethicsflow.core.errors import WorkflowError

# === 结构化日志配置 ===
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("ethicsflow")


def workflow_error_response(exc: WorkflowError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


async def workflow_error_handler(request: Request, exc: WorkflowError) -> JSONResponse:
    """
    工作流校验错误统一输出 {"detail", "type"}，并保留 current/requested 等上下文。
    """
    logger.info(
        f"Workflow rejected: {request.method} {request.url.path} type={exc.code} detail={exc.detail}"
    )
    return workflow_error_response(exc)


class ExceptionHandlerMiddleware(BaseHTTPMiddleware):
    """
    统一异常捕获中间件：记录请求耗时，兜底未处理异常。
    """
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        try:
            response = await call_next(request)
            process_time = time.time() - start_time
            logger.info(f"Method: {request.method} Path: {request.url.path} Status: {response.status_code} Time: {process_time:.4f}s")
            return response
        except WorkflowError as exc:
            return workflow_error_response(exc)
        except HTTPException as exc:
            return JSONResponse(
                status_code=exc.status_code,
                content={"detail": exc.detail, "type": "http_exception"}
            )
        except Exception as e:
            logger.error(f"Unhandled Exception: {str(e)}", exc_info=True)
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal server error, please contact the administrator", "type": "server_error"}
            )
