from collections.abc import Generator

from .session import SessionLocalCloset


def get_closet_db() -> Generator:
    db = SessionLocalCloset()
    try:
        yield db
    finally:
        db.close()
