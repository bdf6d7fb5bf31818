from sqlmodel import SQLModel, create_engine, Session
from sqlalchemy.pool import StaticPool
import os
import logging

logger = logging.getLogger(__name__)

# SECURITY: Disable SQL echo in production to prevent sensitive data leakage
DB_ECHO = os.getenv("DB_ECHO", "false").lower() == "true"

SQLITE_FILE = os.path.join(os.path.dirname(__file__), "carelink_dev.db")
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{SQLITE_FILE}")

if DATABASE_URL.startswith("sqlite"):
    if DATABASE_URL in ("sqlite://", "sqlite:///:memory:"):
        # In-memory database shared by every connection (tests, demos)
        engine = create_engine(
            DATABASE_URL,
            echo=DB_ECHO,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(DATABASE_URL, echo=DB_ECHO, connect_args={"check_same_thread": False})
else:
    # Production configuration with connection pooling
    engine = create_engine(
        DATABASE_URL,
        echo=DB_ECHO,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,  # Handle stale connections
        pool_recycle=300,  # Recycle connections every 5 minutes
    )

logger.info(f"Database engine configured for {engine.url.get_backend_name()}")

def get_session():
    with Session(engine) as session:
        yield session

def create_db_and_tables():
    SQLModel.metadata.create_all(engine)
