# Async facade over the relational store.
# Each call runs a short-lived SQLAlchemy session on a worker thread so the event loop never blocks,
# then publishes row-level ChangeEvents for the rows it wrote.
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Type, TypeVar

from sqlalchemy import inspect as sa_inspect
from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from .db import SessionLocal
from .feed import INSERT, UPDATE, ChangeEvent, ChangeFeed, Handler, Predicate, Subscription

logger = logging.getLogger("lodgely.store")

T = TypeVar("T")


def row_to_dict(obj: Any) -> Dict[str, Any]:
    """Column values of an ORM instance, keyed by column attribute name."""
    mapper = sa_inspect(obj).mapper
    return {attr.key: getattr(obj, attr.key) for attr in mapper.column_attrs}


class RemoteStore:
    """
    Point queries, filtered/ordered list queries, inserts, conditional updates,
    and a change-feed subscription keyed by table and row predicate.

    Rows are returned detached (sessions are opened with expire_on_commit=False),
    so they are safe to read on the event loop after the worker thread is done.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None, feed: Optional[ChangeFeed] = None) -> None:
        self._session_factory = session_factory or SessionLocal
        self.feed = feed or ChangeFeed()

    # ----------------
    # Plumbing
    # ----------------
    def _in_session(self, fn: Callable[[Session], T]) -> T:
        db = self._session_factory()
        try:
            result = fn(db)
            db.commit()
            return result
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    async def run(self, fn: Callable[[Session], T]) -> T:
        """Run `fn(session)` on a worker thread inside a committed unit of work."""
        return await asyncio.to_thread(self._in_session, fn)

    def _publish(self, table: str, kind: str, rows: Iterable[Any]) -> None:
        for obj in rows:
            self.feed.publish(ChangeEvent(table=table, type=kind, new=row_to_dict(obj)))

    # ----------------
    # Reads
    # ----------------
    async def get(self, model: Type[T], ident: Any) -> Optional[T]:
        return await self.run(lambda db: db.get(model, ident))

    async def select(
        self,
        model: Type[T],
        *criteria: Any,
        order_by: Sequence[Any] = (),
        limit: Optional[int] = None,
    ) -> List[T]:
        def _query(db: Session) -> List[T]:
            stmt = select(model)
            if criteria:
                stmt = stmt.where(*criteria)
            if order_by:
                stmt = stmt.order_by(*order_by)
            if limit is not None:
                stmt = stmt.limit(limit)
            return list(db.scalars(stmt).all())

        return await self.run(_query)

    async def first(self, model: Type[T], *criteria: Any, order_by: Sequence[Any] = ()) -> Optional[T]:
        rows = await self.select(model, *criteria, order_by=order_by, limit=1)
        return rows[0] if rows else None

    # ----------------
    # Writes
    # ----------------
    async def insert(self, obj: T) -> T:
        """Insert one row and publish an INSERT event. IntegrityError propagates to the caller."""

        def _insert(db: Session) -> T:
            db.add(obj)
            db.flush()
            db.refresh(obj)
            return obj

        row = await self.run(_insert)
        self._publish(row.__tablename__, INSERT, [row])  # type: ignore[attr-defined]
        return row

    async def update_where(self, model: Type[T], criteria: Sequence[Any], values: Dict[str, Any]) -> List[T]:
        """
        Conditional update: apply `values` to rows matching every criterion at write time.

        Returns the rows that were actually changed (empty when nothing matched), which
        makes it usable as compare-and-swap: include the expected current value in
        `criteria` and treat an empty result as "lost the race".
        """

        def _update(db: Session) -> List[T]:
            dialect = db.get_bind().dialect
            stmt = update(model).where(*criteria).values(**values)
            if getattr(dialect, "update_returning", False):
                return list(
                    db.scalars(stmt.returning(model), execution_options={"synchronize_session": False}).all()
                )

            # No UPDATE ... RETURNING (e.g., MySQL): lock candidate ids, update them, read them back
            pk = sa_inspect(model).primary_key[0]
            id_query = select(pk).where(*criteria)
            if dialect.name != "sqlite":
                id_query = id_query.with_for_update()
            ids = list(db.scalars(id_query).all())
            if not ids:
                return []
            db.execute(
                update(model).where(pk.in_(ids), *criteria).values(**values),
                execution_options={"synchronize_session": False},
            )
            db.flush()
            return list(db.scalars(select(model).where(pk.in_(ids))).all())

        rows = await self.run(_update)
        if rows:
            self._publish(model.__tablename__, UPDATE, rows)  # type: ignore[attr-defined]
        return rows

    # ----------------
    # Change feed
    # ----------------
    def subscribe(self, table: str, predicate: Optional[Predicate], handler: Handler, name: str = "") -> Subscription:
        return self.feed.subscribe(table, predicate, handler, name=name)
