# app/database.py
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import declarative_base

from app.core.config import get_settings

settings = get_settings()

database_url = settings.DATABASE_URL
if not database_url:
    raise ValueError("DATABASE_URL is not set in environment variables")

# Hosted Postgres hands out postgresql:// URLs; the app needs the asyncpg driver
if database_url.startswith('postgresql://'):
    database_url = database_url.replace('postgresql://', 'postgresql+asyncpg://', 1)

engine_kwargs = {"echo": False}
if database_url.startswith('postgresql'):
    # Pool sizing only applies to server databases
    engine_kwargs.update(
        pool_size=10,
        max_overflow=20,
        pool_timeout=30,
        pool_recycle=1800
    )

engine = create_async_engine(database_url, **engine_kwargs)

# Sessions are handed out per request by app.dependencies.get_db. The token
# cache's credential loader opens its own from the same factory.
async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)

Base = declarative_base()
