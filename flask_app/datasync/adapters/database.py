"""Database adapter reading the source store through SQLAlchemy Core."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Iterator

from sqlalchemy import create_engine, func, select, text
from sqlalchemy.engine import URL, Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from flask_app.models import db

from ..errors import ConnectionFailed, EntityNotSupported
from .base import SourceAdapter, SyncFilters
from .source_schema import (
    SOURCE_TABLES,
    SourceTable,
    customer_address_table,
    order_comment_table,
    order_item_table,
    product_table,
    stock_table,
)

logger = logging.getLogger(__name__)

DEFAULT_DRIVER = "mysql+pymysql"


def build_source_url(
    *,
    host: str | None,
    database: str,
    username: str,
    password: str | None = None,
    port: int | None = None,
    driver: str = DEFAULT_DRIVER,
) -> URL:
    return URL.create(
        drivername=driver,
        username=username,
        password=password or None,
        host=host or "localhost",
        port=int(port) if port else None,
        database=database,
    )


class DatabaseAdapter(SourceAdapter):
    """
    Reads source tables on the ``source`` bind, or on an explicit URL.

    The engine is created once per adapter instance and reused for every
    entity type read during the run.
    """

    code = "database"
    label = "Source Database"
    supported_entities = tuple(SOURCE_TABLES.keys())

    def __init__(self, engine: Engine | None = None) -> None:
        super().__init__()
        self._engine = engine
        self._owns_engine = False

    def _connection_context(self) -> dict[str, Any]:
        return {
            "host": self.options.get("host"),
            "database": self.options.get("database"),
            "password": self.options.get("password"),
        }

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            url = self.options.get("url")
            if url is None and self.options.get("database"):
                url = build_source_url(
                    host=self.options.get("host"),
                    database=self.options["database"],
                    username=self.options.get("username", ""),
                    password=self.options.get("password"),
                    port=self.options.get("port"),
                    driver=self.options.get("driver", DEFAULT_DRIVER),
                )
            try:
                if url is not None:
                    self._engine = create_engine(url, pool_pre_ping=True)
                    self._owns_engine = True
                else:
                    self._engine = db.engines["source"]
            except (SQLAlchemyError, ImportError, KeyError) as exc:
                raise ConnectionFailed(
                    f"Cannot create source database engine: {exc}",
                    context=self._connection_context(),
                ) from exc
        return self._engine

    def validate(self) -> bool:
        self._ensure_configured()
        try:
            with self.engine.connect() as connection:
                connection.execute(text("SELECT 1")).scalar()
        except SQLAlchemyError as exc:
            raise ConnectionFailed(str(exc), context=self._connection_context()) from exc
        return True

    def _spec(self, entity_type: str) -> SourceTable:
        spec = SOURCE_TABLES.get(entity_type)
        if spec is None:
            raise EntityNotSupported(entity_type, owner=f"Adapter {self.code}")
        return spec

    def _statement(self, spec: SourceTable, filters: SyncFilters):
        table = spec.table
        id_column = table.c[spec.id_column]
        statement = select(table)
        if spec.date_column is not None:
            date_column = table.c[spec.date_column]
            if filters.date_from_bound is not None:
                statement = statement.where(date_column >= filters.date_from_bound.replace(tzinfo=None))
            if filters.date_to_bound is not None:
                statement = statement.where(date_column <= filters.date_to_bound.replace(tzinfo=None))
        if filters.id_from is not None:
            statement = statement.where(id_column >= filters.id_from)
        if filters.id_to is not None:
            statement = statement.where(id_column <= filters.id_to)
        if filters.entity_ids is not None:
            statement = statement.where(id_column.in_(filters.entity_ids))
        if filters.increment_ids is not None and "increment_id" in table.c:
            statement = statement.where(table.c.increment_id.in_(filters.increment_ids))
        if filters.store_id is not None and "store_id" in table.c:
            statement = statement.where(table.c.store_id.in_(filters.store_id))
        for key, value in filters.extra.items():
            if key in table.c:
                statement = statement.where(table.c[key] == value)
        statement = statement.order_by(id_column)
        if filters.limit is not None:
            statement = statement.limit(filters.limit)
        if filters.offset:
            statement = statement.offset(filters.offset)
        return statement

    def read(self, entity_type: str, filters: SyncFilters | None = None) -> Iterator[dict[str, Any]]:
        self._ensure_configured()
        spec = self._spec(entity_type)
        statement = self._statement(spec, SyncFilters.from_mapping(filters))
        try:
            with self.engine.connect() as connection:
                rows = connection.execute(statement).mappings().all()
                for row in rows:
                    record = dict(row)
                    record.setdefault("entity_id", record[spec.id_column])
                    yield self._enrich(connection, entity_type, record)
        except SQLAlchemyError as exc:
            raise ConnectionFailed(f"Database query failed: {exc}", context=self._connection_context()) from exc

    def _enrich(self, connection: Connection, entity_type: str, record: dict[str, Any]) -> dict[str, Any]:
        entity_id = record["entity_id"]
        if entity_type == "customer":
            record["addresses"] = [
                dict(row)
                for row in connection.execute(
                    select(customer_address_table)
                    .where(customer_address_table.c.parent_id == entity_id)
                    .order_by(customer_address_table.c.entity_id)
                ).mappings()
            ]
        elif entity_type == "order":
            record["items"] = [
                dict(row)
                for row in connection.execute(
                    select(order_item_table)
                    .where(order_item_table.c.order_id == entity_id)
                    .order_by(order_item_table.c.item_id)
                ).mappings()
            ]
            record["comments"] = [
                dict(row)
                for row in connection.execute(
                    select(order_comment_table)
                    .where(order_comment_table.c.parent_id == entity_id)
                    .order_by(order_comment_table.c.entity_id)
                ).mappings()
            ]
        return record

    def count(self, entity_type: str, filters: SyncFilters | None = None) -> int | None:
        self._ensure_configured()
        spec = self._spec(entity_type)
        statement = self._statement(spec, SyncFilters.from_mapping(filters)).order_by(None)
        try:
            with self.engine.connect() as connection:
                return connection.execute(select(func.count()).select_from(statement.subquery())).scalar_one()
        except SQLAlchemyError:
            logger.warning("Could not count source rows", extra={"datasync_entity_type": entity_type}, exc_info=True)
            return None

    def read_stock_by_sku(self, sku_pattern: str | None = None) -> list[dict[str, Any]]:
        """Source stock rows joined to their product SKU, ordered by SKU."""
        statement = (
            select(product_table.c.sku, stock_table)
            .join(stock_table, stock_table.c.product_id == product_table.c.entity_id)
            .order_by(product_table.c.sku)
        )
        if sku_pattern:
            statement = statement.where(product_table.c.sku.like(sku_pattern))
        try:
            with self.engine.connect() as connection:
                return [dict(row) for row in connection.execute(statement).mappings()]
        except SQLAlchemyError as exc:
            raise ConnectionFailed(f"Database query failed: {exc}", context=self._connection_context()) from exc

    def existing_ids(self, entity_type: str, ids: Iterable[int]) -> set[int]:
        wanted = sorted({int(value) for value in ids})
        if not wanted:
            return set()
        spec = self._spec(entity_type)
        id_column = spec.table.c[spec.id_column]
        try:
            with self.engine.connect() as connection:
                return set(connection.execute(select(id_column).where(id_column.in_(wanted))).scalars())
        except SQLAlchemyError as exc:
            raise ConnectionFailed(f"Database query failed: {exc}", context=self._connection_context()) from exc

    def close(self) -> None:
        if self._owns_engine and self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._owns_engine = False

    def info(self) -> dict[str, Any]:
        payload = super().info()
        payload.update({"host": self.options.get("host"), "database": self.options.get("database")})
        return payload
