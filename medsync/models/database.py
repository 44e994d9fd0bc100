from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

from medsync.config import settings


class Base(DeclarativeBase):
    pass


def make_engine(url: str) -> Engine:
    """Engine for a database URL. In-memory SQLite shares one connection across threads."""
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True, pool_size=5)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


def init_db(engine: Engine) -> None:
    # Import for side effect: registers the tables on Base.metadata
    import medsync.models.medication  # noqa: F401

    Base.metadata.create_all(bind=engine)


def default_engine() -> Engine:
    return make_engine(settings.DATABASE_URL)
