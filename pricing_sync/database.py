from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from pricing_sync.config import DATABASE_URL

# Default is a lightweight local sqlite DB; production points DATABASE_URL at Postgres.
# FastAPI resolves sync dependencies in a threadpool, so sqlite must allow cross-thread use.
connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, connect_args=connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

class Base(DeclarativeBase):
	pass
