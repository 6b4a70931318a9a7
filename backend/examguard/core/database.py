import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.pool import QueuePool, StaticPool
from .config import settings

logger = logging.getLogger(__name__)


def build_engine(database_url: str):
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        # in-memory sqlite must share one connection across threads
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False, "timeout": 30})
    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=20,
        max_overflow=40,
        pool_pre_ping=True,
        pool_recycle=1800,
        pool_timeout=20,
        echo=False,
        connect_args={
            "connect_timeout": 10,
            "application_name": "examguard_api"
        }
    )


engine = build_engine(settings.database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_db_and_tables():
    from .. import models  # noqa: F401  registers the mappers on Base.metadata

    try:
        Base.metadata.create_all(engine, checkfirst=True)
        logger.info("Database tables created successfully")
    except Exception as e:
        logger.error(f"Database tables creation error (may be normal if tables exist): {e}")
