from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from app.presentation.api import router
from app.database import engine, create_tables
from app.logging_config import configure_logging
from app.config import settings

logger = configure_logging(settings.LOG_LEVEL)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Управление жизненным циклом приложения"""
    await create_tables()
    logger.info("Таблицы проверены")

    yield

    logger.info("Приложение останавливается...")
    await engine.dispose()


app = FastAPI(
    title="Order Service",
    description="Сервис заказов: создание, статусы, возврат остатков",
    version="1.0.0",
    lifespan=lifespan
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Ошибки схемы запроса: 400, как и доменные ошибки валидации"""
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": jsonable_encoder(exc.errors())}
    )


app.include_router(router)


@app.get("/")
async def root():
    return {"message": "Order Service работает"}


@app.get("/health")
async def health():
    """Проверка доступности базы данных"""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        logger.error(f"Health check: база данных недоступна: {e}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"status": "down", "error": str(e)}
        )
    return {"status": "healthy"}
