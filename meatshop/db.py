from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from meatshop.config import settings


class Base(DeclarativeBase):
    pass


def _engine_kwargs(database_url: str, timeout: float) -> dict:
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False, "timeout": timeout}}
        # In-memory SQLite uses a singleton pool without a checkout timeout.
        if ":memory:" not in database_url and database_url.rstrip("/") != "sqlite:":
            kwargs["pool_timeout"] = timeout
        return kwargs
    connect_args = {}
    if database_url.startswith("postgresql"):
        connect_args["connect_timeout"] = max(1, int(timeout))
    return {"connect_args": connect_args, "pool_timeout": timeout}


engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,
    **_engine_kwargs(settings.database_url, settings.store_timeout_seconds),
)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
