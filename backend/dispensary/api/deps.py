"""FastAPI dependencies: session factory, DB session and the calling actor.

Authentication happens upstream; the gateway forwards the tenant and the
authenticated user as headers.
"""
from typing import Generator

from fastapi import Depends, Header
from sqlalchemy.orm import Session, sessionmaker

from dispensary.core.context import Actor
from dispensary.db.session import SessionLocal


def get_session_factory() -> sessionmaker:
    """Mutating routes open their own unit of work from this factory."""
    return SessionLocal


def get_db(factory: sessionmaker = Depends(get_session_factory)) -> Generator[Session, None, None]:
    """Get database session for read-only routes."""
    db = factory()
    try:
        yield db
    finally:
        db.close()


def get_actor(
    x_tenant_id: str = Header(..., min_length=1, max_length=64),
    x_actor_id: str = Header(..., min_length=1, max_length=64),
) -> Actor:
    return Actor(tenant_id=x_tenant_id, user_id=x_actor_id)
