# timebank/database.py
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from timebank.config import settings


def _create_engine(url: str):
    if str(url).startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url)


try:
    engine = _create_engine(settings.DATABASE_URL)
except ModuleNotFoundError as exc:  # pragma: no cover - psycopg2 missing locally
    if "psycopg2" not in str(exc):
        raise
    engine = _create_engine(settings.FALLBACK_DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """FastAPI dependency: one ORM session per request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
