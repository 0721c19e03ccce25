from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from duelsync.load_secrets import database_url

# Centralized session factory; the local SQLite file is used when nothing is configured.
if database_url is None:
    from duelsync.create_sqlite_engine import engine
elif database_url.startswith("postgresql"):
    from duelsync.create_postgres_engine import engine
else:
    engine = create_async_engine(database_url)

Session = async_sessionmaker(
    autocommit=False,
    class_=AsyncSession,
    autoflush=True,
    bind=engine,
)
