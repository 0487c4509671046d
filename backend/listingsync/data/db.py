# listingsync/data/db.py
from __future__ import annotations

import logging
from typing import Generator

from fastapi import Request
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session as ORMSession, sessionmaker
from sqlalchemy.pool import StaticPool

from listingsync.core.config import Settings

logger = logging.getLogger("lsync.db")


# ---- ORM Base -------------------------------------------------------------
class Base(DeclarativeBase):
    pass


# ---- Engine + session factory, built once per process ---------------------
class Database:
    def __init__(self, url: str, *, echo: bool = False, pool_pre_ping: bool = True, pool_recycle: int = 1800):
        kwargs: dict = {"future": True, "echo": echo}
        if url.startswith("postgres://"):
            url = url.replace("postgres://", "postgresql://", 1)
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in url or url.rstrip("/") == "sqlite:":
                kwargs["poolclass"] = StaticPool
        else:
            kwargs["pool_pre_ping"] = pool_pre_ping
            kwargs["pool_recycle"] = pool_recycle

        self.url = url
        self.engine: Engine = create_engine(url, **kwargs)
        self.SessionLocal = sessionmaker(
            bind=self.engine,
            class_=ORMSession,
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            future=True,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        return cls(
            settings.DATABASE_URL,
            echo=settings.DB_ECHO,
            pool_pre_ping=settings.DB_POOL_PRE_PING,
            pool_recycle=settings.DB_POOL_RECYCLE,
        )

    def create_all(self) -> None:
        import listingsync.data.models  # noqa: F401 - register models

        Base.metadata.create_all(bind=self.engine)

    def dispose(self) -> None:
        self.engine.dispose()


# ---- write tracking -------------------------------------------------------
def _reset_mutation_flag(sess: ORMSession) -> None:
    sess.info.pop("has_writes", None)


def _mark_mutated(sess: ORMSession) -> None:
    sess.info["has_writes"] = True


# reset on every transaction so a previous one does not leak its flag
@event.listens_for(ORMSession, "after_begin")
def _on_tx_begin(sess: ORMSession, tx, connection) -> None:
    _reset_mutation_flag(sess)


@event.listens_for(ORMSession, "after_flush")
def _on_after_flush(sess: ORMSession, ctx) -> None:
    if sess.new or sess.dirty or sess.deleted:
        _mark_mutated(sess)


# bulk insert/update/delete statements count as writes too
@event.listens_for(ORMSession, "do_orm_execute")
def _on_do_orm_execute(exec_state) -> None:
    if not exec_state.is_select:
        _mark_mutated(exec_state.session)


def _has_writes(sess: ORMSession) -> bool:
    if sess.info.get("has_writes"):
        return True
    return bool(sess.new or sess.dirty or sess.deleted)


# ---- FastAPI dependency: request scoped session ---------------------------
def get_db(request: Request) -> Generator[ORMSession, None, None]:
    """
    Unit of work per request:
    - writes detected -> COMMIT; read only -> ROLLBACK to end the transaction
    - exception -> ROLLBACK and re-raise
    - always CLOSE
    """
    database: Database = request.app.state.database
    db: ORMSession = database.SessionLocal()
    _reset_mutation_flag(db)

    try:
        yield db

        tx = db.get_transaction()
        if tx is not None and tx.is_active:
            if _has_writes(db):
                try:
                    db.commit()
                except Exception:
                    try:
                        db.rollback()
                    finally:
                        logger.exception("DB COMMIT failed -> ROLLBACK")
                        raise
            else:
                db.rollback()
    except Exception:
        tx = db.get_transaction()
        if tx is not None and tx.is_active:
            db.rollback()
        raise
    finally:
        db.close()
