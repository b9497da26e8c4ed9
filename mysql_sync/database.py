import os
from typing import Dict

from sqlalchemy.engine import Engine
from sqlmodel import create_engine, SQLModel, Session

_engines: Dict[str, Engine] = {}


def get_engine(database_path: str) -> Engine:
    database_path = os.path.abspath(database_path)
    if database_path not in _engines:
        _engines[database_path] = create_engine(f"sqlite:///{database_path}")
    return _engines[database_path]


def create_db_and_tables(database_path: str) -> Engine:
    # Ensure the data directory exists
    os.makedirs(os.path.dirname(os.path.abspath(database_path)), exist_ok=True)
    engine = get_engine(database_path)
    SQLModel.metadata.create_all(engine)
    return engine


def get_session(database_path: str) -> Session:
    return Session(create_db_and_tables(database_path))
