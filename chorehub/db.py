from datetime import datetime, timezone

from sqlmodel import SQLModel, create_engine, Session

from .config import settings


def build_engine(url: str, **kwargs):
    connect_args = {"check_same_thread": False, "timeout": 30} if url.startswith("sqlite") else {}
    connect_args.update(kwargs.pop("connect_args", {}))
    return create_engine(
        url,
        connect_args=connect_args,
        isolation_level=kwargs.pop("isolation_level", settings.db_isolation),
        **kwargs,
    )


engine = build_engine(settings.database_url)


def utcnow() -> datetime:
    """Naive UTC timestamp, comparable with values read back from SQLite."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_session():
    with Session(engine) as session:
        yield session


def session_factory() -> Session:
    return Session(engine)


def init_db():
    SQLModel.metadata.create_all(engine)
