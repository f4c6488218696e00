from __future__ import annotations

from collections.abc import Generator

from fastapi import Request
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from hierarchy_authz.settings import Settings


def build_engine(settings: Settings) -> Engine:
    url = settings.resolved_db_url()
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True, pool_timeout=10)


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, class_=Session, expire_on_commit=False)


def get_db(request: Request) -> Generator[Session, None, None]:
    """Request-scoped session from the factory the app was started with."""

    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()
