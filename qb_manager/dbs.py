import os

from peewee import SqliteDatabase

from .config import Config


SQLITE_DB_PATH = Config.SQLITE_DB_PATH


def ensure_db_dir(path: str = SQLITE_DB_PATH) -> None:
    """Create the directory holding the SQLite file if it does not exist yet."""
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)


# Cascading deletes of instances rely on SQLite enforcing foreign keys
sdb = SqliteDatabase(SQLITE_DB_PATH, pragmas={"foreign_keys": 1})
