import os
import logging

from sqlalchemy import create_engine, text
from sqlalchemy.orm import declarative_base, sessionmaker

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./grocery_prices.db")
APP_ENV = os.getenv("APP_ENV", "development")

# Heroku-style URLs still use the old scheme
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)


def engine_options(url: str, app_env: str) -> dict:
    """Opciones del engine según el motor: TLS en producción y snapshot por request."""
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}

    options = {"pool_pre_ping": True}
    if url.startswith("postgresql"):
        # Cada request lee una única foto consistente del store
        options["isolation_level"] = "REPEATABLE READ"
        if app_env == "production":
            options["connect_args"] = {"sslmode": "require"}
    return options


engine = create_engine(DATABASE_URL, **engine_options(DATABASE_URL, APP_ENV))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_connection() -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logging.error(f"❌ Database connection failed: {e}")
        return False
