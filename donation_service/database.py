from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from donation_service.config import get_settings

DATABASE_URL = get_settings().database_url
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL is not set. Check your .env file.")

engine = create_engine(
    DATABASE_URL,
    pool_pre_ping=not DATABASE_URL.startswith("sqlite"),
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
)

# Donations are handed back to callers after the session closes
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
Base = declarative_base()
