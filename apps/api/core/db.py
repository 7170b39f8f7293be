from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from core.config import Settings, get_settings

settings = get_settings()


def engine_options(settings: Settings) -> dict[str, Any]:
    timeout = settings.store_timeout_seconds
    if settings.database_url.startswith("sqlite"):
        # busy timeout bounds how long a writer waits on another writer's lock
        return {"connect_args": {"check_same_thread": False, "timeout": timeout}}
    return {
        "pool_pre_ping": True,
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        "pool_timeout": timeout,
        "pool_recycle": settings.db_pool_recycle,
        "connect_args": {
            "connect_timeout": max(int(timeout), 1),
            "options": f"-c statement_timeout={int(timeout * 1000)} -c lock_timeout={int(timeout * 1000)}",
        },
    }


engine = create_engine(settings.database_url, **engine_options(settings))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()
