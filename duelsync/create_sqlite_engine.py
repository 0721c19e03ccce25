import pathlib

from sqlalchemy.ext.asyncio import create_async_engine

from duelsync.load_secrets import sqlite_path

# Local fallback when no server database is configured
file_path = pathlib.Path(sqlite_path) if sqlite_path else pathlib.Path(__file__).parents[1] / "duelsync.sqlite3"
sqlite_url = f"sqlite+aiosqlite:///{file_path}"

engine = create_async_engine(url=sqlite_url, echo=False)
