"""
Engine, session factory and declarative base for the Orders service.

Orders, payments and both histories live in one database so that a change
to an order and its payment can be committed in a single transaction.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import DATABASE_URL


def make_engine(url: str):
    """
    Create an engine for the given database URL.

    SQLite connections are shared across the request threadpool, so the
    same-thread check is disabled for them.
    """
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args)


# Create SQLAlchemy engine
engine = make_engine(DATABASE_URL)

# Sessions are created per request by get_db
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Declarative base shared by every model
Base = declarative_base()

def get_db():
    """
    Dependency function that provides a database session.

    Yields:
        Session: SQLAlchemy database session

    Usage:
        Use as a FastAPI dependency to inject database sessions into route handlers.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
