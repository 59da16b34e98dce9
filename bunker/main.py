"""
FastAPI main application entry point
地堡游戏服务主应用入口
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from sqlalchemy.exc import SQLAlchemyError

from bunker.core.config import settings
from bunker.core.database import init_db, close_db
from bunker.core.errors import GameError, Internal
from bunker.core.redis_client import init_redis, close_redis
from bunker.api.v1.api import api_router
from bunker.services.background_tasks import start_background_tasks, stop_background_tasks
import logging
import os

# Configure logging - 同时输出到控制台和文件
log_level = getattr(logging, settings.LOG_LEVEL.upper())
handlers = [logging.StreamHandler()]

if settings.LOG_TO_FILE:
    # 确保日志目录存在
    log_dir = os.path.join(os.path.dirname(os.path.dirname(__file__)), 'logs')
    os.makedirs(log_dir, exist_ok=True)
    handlers.append(logging.FileHandler(os.path.join(log_dir, 'app.log'), encoding='utf-8'))

logging.basicConfig(level=log_level, format=settings.LOG_FORMAT, handlers=handlers)
logger = logging.getLogger(__name__)

# 减少 SQLAlchemy 的日志噪音
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    logger.info("Starting bunker game service...")

    try:
        await init_db()
        await init_redis()
        await start_background_tasks()
        logger.info("Application startup completed")
    except Exception as e:
        logger.error(f"Failed to start application: {e}")
        raise

    yield

    logger.info("Shutting down application...")
    try:
        await stop_background_tasks()
        await close_redis()
        await close_db()
        logger.info("Application shutdown completed")
    except Exception as e:
        logger.error(f"Error during shutdown: {e}")


app = FastAPI(
    title="Bunker",
    description="Bunker Game Service - 多人地堡生存推理游戏",
    version="1.0.0",
    lifespan=lifespan,
    # 禁用尾部斜杠重定向，避免 307 Redirect 导致 Authorization header 丢失
    redirect_slashes=False
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(GameError)
async def game_error_handler(request: Request, exc: GameError):
    """统一错误响应: {"detail", "code"}"""
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=exc.headers)


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error(f"Database error on {request.method} {request.url.path}: {exc}")
    error = Internal("数据库错误")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


app.include_router(api_router, prefix="/api/v1")


@app.get("/")
async def root():
    return {
        "message": "Bunker Game API",
        "status": "running",
        "version": "1.0.0"
    }
