import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.database import Base, engine
from app.logging_config import get_logger, setup_logging
from app.routers import message

setup_logging()
logger = get_logger("main")

app = FastAPI(
    title="ULAL Intake Agent",
    description="Enrollment and information assistant for WhatsApp, Facebook and Instagram",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(message.router)


@app.on_event("startup")
def create_tables() -> None:
    if not settings.auto_create_tables or os.environ.get("PYTEST_CURRENT_TEST"):
        return
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables ensured")


@app.get("/health")
async def health():
    return {"status": "ok"}
