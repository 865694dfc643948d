# loyalty/db.py
import os
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from dotenv import load_dotenv
load_dotenv()

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///loyalty.db")

is_cloud_run = os.getenv("K_SERVICE") is not None

if is_cloud_run:
    # Cloud Run: keep the pool small, every instance shares one Postgres
    engine = create_engine(
        DATABASE_URL,
        pool_size=4,
        max_overflow=0,
        pool_recycle=60,
        pool_pre_ping=True,
        pool_timeout=15,
        echo=False
    )
elif DATABASE_URL.startswith("sqlite"):
    # local runs and tests; request threads each open their own connection
    engine = create_engine(
        DATABASE_URL,
        poolclass=NullPool,
        connect_args={"check_same_thread": False, "timeout": 30},
        echo=False
    )

    @event.listens_for(engine, "connect")
    def _sqlite_connect(dbapi_connection, connection_record):
        # SQLAlchemy emits BEGIN itself
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _sqlite_begin(conn):
        # writers queue on the busy timeout instead of failing a lock upgrade
        conn.exec_driver_sql("BEGIN IMMEDIATE")

else:
    engine = create_engine(
        DATABASE_URL,
        poolclass=NullPool,
        echo=False
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)
