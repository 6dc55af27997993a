import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings
from errors import ConstraintViolation, LedgerError, StorageFailure

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def create_store_engine(
    database_url: str, echo: bool = False, **engine_kwargs: object
) -> Engine:
    connect_args: dict[str, object] = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False

    eng = create_engine(
        database_url, connect_args=connect_args, echo=echo, **engine_kwargs
    )
    if database_url.startswith("sqlite"):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def make_sessionmaker(eng: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=eng, autoflush=False, expire_on_commit=False)


def init_db(eng: Engine) -> None:
    # Import registers the mapped classes on Base.metadata.
    import models  # noqa: F401

    Base.metadata.create_all(eng)
    logger.info(f"init_db: url={eng.url.render_as_string(hide_password=True)}")


def dispose_engine(eng: Engine) -> None:
    eng.dispose()
    logger.info("dispose_engine: connections released")


_store: Optional[tuple[Engine, sessionmaker[Session]]] = None


def _default_store() -> tuple[Engine, sessionmaker[Session]]:
    global _store
    if _store is None:
        settings = get_settings()
        eng = create_store_engine(settings.database_url, echo=settings.echo_sql)
        _store = (eng, make_sessionmaker(eng))
    return _store


def get_engine() -> Engine:
    return _default_store()[0]


def SessionLocal() -> Session:
    _, factory = _default_store()
    return factory()


def shutdown() -> None:
    global _store
    if _store is not None:
        dispose_engine(_store[0])
    _store = None


@contextmanager
def unit_of_work(session: Session, action: str) -> Iterator[Session]:
    """Commit everything done inside the block, or roll all of it back.

    Store errors are translated into the ledger error taxonomy.
    """
    try:
        yield session
        session.commit()
    except LedgerError:
        session.rollback()
        raise
    except IntegrityError as exc:
        session.rollback()
        logger.warning(f"{action}: constraint violated: {exc.orig}")
        raise ConstraintViolation(
            f"{action} violates a constraint: {exc.orig}"
        ) from exc
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception(f"{action}: storage failure")
        raise StorageFailure(f"{action} failed: {exc}") from exc
    except Exception:
        session.rollback()
        raise


@contextmanager
def session_scope() -> Iterator[Session]:
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
