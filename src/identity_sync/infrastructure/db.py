from __future__ import annotations
from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from identity_sync.config import get_settings


class Base(DeclarativeBase):
    pass


def _dsn() -> str:
    s = get_settings()
    if s.database_url:
        return s.database_url
    if s.supabase_project_ref and s.supabase_db_password:
        host = f"db.{s.supabase_project_ref}.supabase.co"
        return f"postgresql+psycopg2://{s.supabase_db_user}:{s.supabase_db_password}@{host}:5432/{s.supabase_db_name}?sslmode=require"
    return "sqlite:///./identity_sync.db"


def build_engine(url: str):
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True, pool_size=10, max_overflow=20)
    eng = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})

    # sqlite has no row locks; take the write lock at BEGIN so concurrent
    # writers queue on the busy timeout instead of failing on lock upgrade.
    @event.listens_for(eng, "connect")
    def _sqlite_connect(dbapi_conn, _record):  # noqa
        dbapi_conn.isolation_level = None

    @event.listens_for(eng, "begin")
    def _sqlite_begin(conn):  # noqa
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return eng


engine = build_engine(_dsn())
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def override_engine(e):  # test helper
    global engine, SessionLocal
    engine = e
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def get_session():
    """Session from the current factory; resolves late so override_engine applies."""
    return SessionLocal()


def dialect_name(session) -> str:
    return session.get_bind().dialect.name


def healthcheck() -> bool:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
        return True
