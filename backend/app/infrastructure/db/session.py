from collections.abc import Generator
from time import perf_counter

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import settings
from app.infrastructure.observability.metrics import observe_db_query


def _before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    conn.info.setdefault("query_started_at_stack", []).append(perf_counter())


def _after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    stack = conn.info.get("query_started_at_stack", [])
    if not stack:
        return
    started_at = stack.pop(-1)
    observe_db_query(perf_counter() - started_at, operation="sync_sql")


def build_engine(database_uri: str) -> Engine:
    if database_uri.startswith("sqlite"):
        # In-memory SQLite must share one connection across sessions and threads.
        built = create_engine(
            database_uri,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        built = create_engine(database_uri, pool_pre_ping=True)
    event.listen(built, "before_cursor_execute", _before_cursor_execute)
    event.listen(built, "after_cursor_execute", _after_cursor_execute)
    return built


def build_session_factory(bind: Engine) -> sessionmaker[Session]:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


engine = build_engine(settings.sqlalchemy_database_uri)
SessionLocal = build_session_factory(engine)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
