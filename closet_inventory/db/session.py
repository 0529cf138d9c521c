import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


CLOSET_DB_URL = _require_env("CLOSET_DB_URL")

engine_closet = create_engine(
    CLOSET_DB_URL,
    pool_pre_ping=True,
    future=True,
)

SessionLocalCloset = sessionmaker(
    bind=engine_closet,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)
