from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from growroom.core import config

SQLALCHEMY_DATABASE_URL = config.DATABASE_URL

# check_same_thread is SQLite-only; the scheduler thread pool shares the engine
_connect_args = {"check_same_thread": False} if SQLALCHEMY_DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args=_connect_args, pool_pre_ping=True)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
