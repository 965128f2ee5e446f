from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.exc import SQLAlchemyError

from .models import Base
from .core.config import get_settings
from .core.logging_config import get_logger

logger = get_logger(__name__)

# Database configuration
DATABASE_URL = get_settings().database_url


def create_db_engine(database_url: str = DATABASE_URL):
    """Create an engine with the connection arguments the backend needs"""
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            echo=False  # Set to True for SQL query logging in development
        )
    # For PostgreSQL or other databases
    return create_engine(database_url, echo=False, pool_pre_ping=True)


engine = create_db_engine()

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind=None):
    """Initialize the database by creating all tables"""
    try:
        Base.metadata.create_all(bind=bind or engine)
        logger.info("Database tables created successfully")
    except SQLAlchemyError as e:
        logger.error(f"Error creating database tables: {e}")
        raise


def get_db():
    """Get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
