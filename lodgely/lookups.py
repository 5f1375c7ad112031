# Read-only enrichment sources keyed by id: profile display names and property summaries.
# Batch interface (get_many) so listings issue one query per source instead of one per row.
from __future__ import annotations

import logging
from typing import Dict, Generic, Iterable, Type, TypeVar

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from . import models, schemas
from .errors import TransientFetchError
from .store import RemoteStore

logger = logging.getLogger("lodgely.lookups")

S = TypeVar("S", bound=BaseModel)


class Directory(Generic[S]):
    """Batch lookup of `schema` summaries for rows of `model`."""

    def __init__(self, store: RemoteStore, model: Type, schema: Type[S]) -> None:
        self._store = store
        self._model = model
        self._schema = schema

    async def get_many(self, ids: Iterable[int]) -> Dict[int, S]:
        """
        Return {id: summary} for the ids that exist; unknown ids are simply absent.

        Raises TransientFetchError when the lookup itself fails, so callers can
        degrade (omit the enrichment) instead of failing the whole read.
        """
        wanted = sorted({i for i in ids if i is not None})
        if not wanted:
            return {}
        try:
            rows = await self._store.select(self._model, self._model.id.in_(wanted))
        except SQLAlchemyError as exc:
            raise TransientFetchError(f"{self._model.__tablename__} lookup failed: {exc}") from exc
        return {row.id: self._schema.model_validate(row) for row in rows}


class ProfileDirectory(Directory[schemas.ProfileSummary]):
    def __init__(self, store: RemoteStore) -> None:
        super().__init__(store, models.Profile, schemas.ProfileSummary)


class PropertyDirectory(Directory[schemas.PropertySummary]):
    def __init__(self, store: RemoteStore) -> None:
        super().__init__(store, models.Property, schemas.PropertySummary)


async def best_effort(directory: Directory[S], ids: Iterable[int], purpose: str) -> Dict[int, S]:
    """get_many that logs and returns {} on TransientFetchError."""
    try:
        return await directory.get_many(ids)
    except TransientFetchError as exc:
        logger.warning("lookup.degraded", extra={"purpose": purpose, "error": exc.detail})
        return {}
