"""
Database connection and session management for the SQL session tier
"""
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker


def create_db_engine(database_url: str) -> Engine:
    """Create a sync engine; sqlite URLs get thread-safe connection settings"""
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            echo=False,
            connect_args={"check_same_thread": False},
        )
    return create_engine(
        database_url,
        echo=False,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    """Session maker bound to the given engine"""
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
