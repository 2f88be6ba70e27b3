from sqlmodel import SQLModel, create_engine
from .config import settings
import os


db_url = settings.database_url or settings.sqlite_url
# Writers queue on the SQLite lock instead of failing fast under concurrent redemptions
connect_args = (
    {"check_same_thread": False, "timeout": settings.sqlite_lock_timeout}
    if db_url.startswith("sqlite")
    else {}
)
engine = create_engine(db_url, echo=False, connect_args=connect_args, pool_pre_ping=True)


def init_db() -> None:
    from . import models  # noqa: F401  register tables

    SQLModel.metadata.create_all(engine)
    os.makedirs(settings.storage_dir, exist_ok=True)

