# timebank/main.py
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from timebank import models  # noqa: F401  registers tables on Base.metadata
from timebank.config import settings
from timebank.database import Base, engine
from timebank.api import admin, credits, notification, session

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Create database tables
Base.metadata.create_all(bind=engine)

# Initialize FastAPI app
app = FastAPI(title="TimeBank Session API", debug=settings.DEBUG)

# CORS Middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://0.0.0.0:8000",
        "http://localhost:8000",
        "http://127.0.0.1:8000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API routers
app.include_router(session.router)       # /sessions/*
app.include_router(credits.router)       # /credits/*
app.include_router(notification.router)  # /notifications/*
app.include_router(admin.router)         # /admin/*

logger.info("TimeBank API started (env=%s)", settings.APP_ENV)


@app.get("/health")
def health_check():
    return {
        "status": "healthy",
        "message": "TimeBank API is running",
        "version": "1.0.0",
    }
