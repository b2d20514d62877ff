from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from notifier.config.settings import settings


def build_engine(database_url: str) -> Engine:
    """Create the engine; SQLite gets thread-sharing and a busy timeout."""
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
            echo=False,
        )
    return create_engine(
        database_url,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
        pool_recycle=3600,
        isolation_level="READ_COMMITTED",
        echo=False,
    )


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, class_=Session, expire_on_commit=False)


engine = build_engine(str(settings.DATABASE_URL))

SessionLocal = build_session_factory(engine)
