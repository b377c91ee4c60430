"""PostgreSQL item store.

Items live in a single ``items`` table. Substring predicates use ``ILIKE``
with escaped patterns, which is fast enough for a personal working set.

Connection management
- The asyncpg pool is created lazily on first use and closed by ``close``
- Queries are funneled through ``_execute_query`` for uniform error handling
"""

from typing import Any, List, Optional, Sequence, Tuple

import asyncpg
import structlog
from asyncpg import Pool

from .base import ItemAlreadyExistsError, ItemStore, ItemStoreError
from .models import ContentType, Item, ItemFilters

logger = structlog.get_logger("items.postgres")

SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS items (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        title TEXT NOT NULL,
        body TEXT,
        source_url TEXT,
        content_type VARCHAR(20) NOT NULL,
        tags TEXT[] NOT NULL DEFAULT '{}',
        created_at TIMESTAMPTZ NOT NULL
    );
    CREATE INDEX IF NOT EXISTS items_owner_created_idx
        ON items (owner_id, created_at DESC);
"""

_COLUMNS = "id, owner_id, title, body, source_url, content_type, tags, created_at"


def escape_like(value: str) -> str:
    """Escape LIKE metacharacters so user text matches literally."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def build_filter_clause(
    owner_id: str,
    filters: ItemFilters,
) -> Tuple[str, List[Any]]:
    """Translate ``ItemFilters`` into a WHERE clause and positional params."""
    params: List[Any] = [owner_id]
    conditions = ["owner_id = $1"]

    def bind(value: Any) -> str:
        params.append(value)
        return f"${len(params)}"

    if filters.text:
        pattern = bind(f"%{escape_like(filters.text)}%")
        conditions.append(
            f"(title ILIKE {pattern} OR body ILIKE {pattern} "
            f"OR EXISTS (SELECT 1 FROM unnest(tags) AS t WHERE t ILIKE {pattern}))"
        )
    if filters.content_type is not None:
        conditions.append(f"content_type = {bind(filters.content_type.value)}")
    if filters.date_range is not None:
        if filters.date_range.start is not None:
            conditions.append(f"created_at >= {bind(filters.date_range.start)}")
        if filters.date_range.end is not None:
            conditions.append(f"created_at <= {bind(filters.date_range.end)}")
    if filters.tags:
        wanted = bind([tag.lower() for tag in filters.tags])
        conditions.append(
            f"(SELECT array_agg(lower(t)) FROM unnest(tags) AS t) @> {wanted}::text[]"
        )

    return " AND ".join(conditions), params


def _row_to_item(row: Any) -> Item:
    return Item(
        id=row["id"],
        owner_id=row["owner_id"],
        title=row["title"],
        body=row["body"],
        source_url=row["source_url"],
        content_type=ContentType(row["content_type"]),
        tags=tuple(row["tags"] or ()),
        created_at=row["created_at"],
    )


class PostgresItemStore(ItemStore):
    """asyncpg-backed item store."""

    def __init__(self, dsn: str, pool_size: int = 10, command_timeout: int = 30):
        self.dsn = dsn
        self.pool_size = pool_size
        self.command_timeout = command_timeout
        self._pool: Optional[Pool] = None

    async def _get_pool(self) -> Pool:
        if self._pool is None:
            try:
                self._pool = await asyncpg.create_pool(
                    self.dsn,
                    min_size=1,
                    max_size=self.pool_size,
                    command_timeout=self.command_timeout,
                )
                logger.info("Created item store connection pool", pool_size=self.pool_size)
            except Exception as e:
                logger.error("Failed to create item store connection pool", error=str(e))
                raise ItemStoreError(f"Failed to create connection pool: {e}") from e
        return self._pool

    async def _execute_query(
        self,
        query: str,
        *args: Any,
        fetch: bool = False,
        fetch_val: bool = False,
    ) -> Any:
        try:
            pool = await self._get_pool()
            async with pool.acquire() as conn:
                if fetch_val:
                    return await conn.fetchval(query, *args)
                if fetch:
                    return await conn.fetch(query, *args)
                return await conn.execute(query, *args)
        except ItemStoreError:
            raise
        except asyncpg.UniqueViolationError as e:
            raise ItemAlreadyExistsError(str(e)) from e
        except Exception as e:
            logger.error("Item store query failed", error=str(e))
            raise ItemStoreError(f"Query failed: {e}") from e

    async def ensure_schema(self) -> None:
        """Create the items table and index if missing."""
        await self._execute_query(SCHEMA_SQL)

    async def add(self, item: Item) -> Item:
        await self._execute_query(
            f"INSERT INTO items ({_COLUMNS}) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)",
            item.id,
            item.owner_id,
            item.title,
            item.body,
            item.source_url,
            item.content_type.value,
            list(item.tags),
            item.created_at,
        )
        logger.info("Stored item", item_id=item.id, owner_id=item.owner_id)
        return item

    async def get_many(self, owner_id: str, item_ids: Sequence[str]) -> List[Item]:
        if not item_ids:
            return []
        rows = await self._execute_query(
            f"SELECT {_COLUMNS} FROM items WHERE owner_id = $1 AND id = ANY($2::text[])",
            owner_id,
            list(item_ids),
            fetch=True,
        )
        by_id = {row["id"]: _row_to_item(row) for row in rows}
        return [by_id[item_id] for item_id in item_ids if item_id in by_id]

    async def list_by_owner(
        self,
        owner_id: str,
        filters: Optional[ItemFilters] = None,
        limit: Optional[int] = None,
    ) -> List[Item]:
        where, params = build_filter_clause(owner_id, filters or ItemFilters())
        sql = f"SELECT {_COLUMNS} FROM items WHERE {where} ORDER BY created_at DESC, id"
        if limit is not None:
            params.append(limit)
            sql += f" LIMIT ${len(params)}"
        rows = await self._execute_query(sql, *params, fetch=True)
        return [_row_to_item(row) for row in rows]

    async def delete(self, owner_id: str, item_id: str) -> bool:
        result = await self._execute_query(
            "DELETE FROM items WHERE owner_id = $1 AND id = $2",
            owner_id,
            item_id,
        )
        deleted = result.split()[-1] != "0"
        if deleted:
            logger.info("Deleted item", item_id=item_id, owner_id=owner_id)
        return deleted

    async def count(self, owner_id: str) -> int:
        return await self._execute_query(
            "SELECT COUNT(*) FROM items WHERE owner_id = $1",
            owner_id,
            fetch_val=True,
        )

    async def health_check(self) -> bool:
        try:
            await self._execute_query("SELECT 1", fetch_val=True)
            return True
        except ItemStoreError as e:
            logger.error("Item store health check failed", error=str(e))
            return False

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("Closed item store connection pool")
