from sqlalchemy import event
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings


def _create_engine() -> Engine:
    settings = get_settings()
    connect_args: dict[str, object] = {}
    if settings.database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    from sqlalchemy import create_engine

    eng = create_engine(settings.database_url, connect_args=connect_args)
    if settings.database_url.startswith("sqlite"):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


engine = _create_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


def insert_ignoring_conflicts(session: Session, model, index_elements: list[str]):
    """Build an INSERT that silently skips rows hitting ``index_elements``.

    The conflict target must be backed by a unique constraint; callers read
    ``rowcount`` to tell an inserted row from a skipped one.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "sqlite":
        stmt = sqlite.insert(model.__table__)
    elif dialect == "postgresql":
        stmt = postgresql.insert(model.__table__)
    else:
        raise NotImplementedError(f"Unsupported database dialect: {dialect}")
    return stmt.on_conflict_do_nothing(index_elements=index_elements)


