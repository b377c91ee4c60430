"""PgVector implementation of the vector index.

Vectors are stored in PostgreSQL using the pgvector extension, one row per
item. Cosine distance is computed with the ``<=>`` operator and converted
to a similarity (``1 - distance``).

Connection management
- A shared asyncpg pool is created on demand and reused across calls
- Queries are funneled through ``_execute_query`` which maps driver errors
  onto the ``VectorStoreError`` hierarchy
"""

from typing import Any, List, Optional

import asyncpg
import numpy as np
import structlog
from asyncpg import Connection, Pool
from pgvector.asyncpg import register_vector

from .base import (
    VectorHit,
    VectorIndex,
    VectorOwnershipError,
    VectorStoreConnectionError,
    VectorStoreError,
    VectorStoreNotProvisionedError,
    VectorStoreQueryError,
    as_vector,
    require_owner,
)

logger = structlog.get_logger("vector_store.pgvector")

_NOT_PROVISIONED = (
    asyncpg.exceptions.UndefinedTableError,
    asyncpg.exceptions.UndefinedObjectError,
)
_CONNECTION_ERRORS = (
    OSError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.InterfaceError,
)


class PgVectorIndex(VectorIndex):
    """PgVector implementation of the vector index."""

    def __init__(
        self,
        dsn: str,
        vector_dimension: int,
        pool_size: int = 10,
        command_timeout: int = 30,
        table_name: str = "item_embeddings",
    ):
        """Configure a PgVector-backed index.

        Parameters
        - dsn: PostgreSQL DSN including database and credentials
        - vector_dimension: Dimensionality of every stored vector
        - pool_size: Max size of asyncpg connection pool
        - command_timeout: Seconds to allow per DB command
        - table_name: Table holding the embeddings
        """
        self.dsn = dsn
        self.vector_dimension = vector_dimension
        self.pool_size = pool_size
        self.command_timeout = command_timeout
        self.table_name = table_name
        self._pool: Optional[Pool] = None

    async def _init_connection(self, conn: Connection) -> None:
        """Register the pgvector codec for asyncpg connections."""
        await register_vector(conn)

    async def _get_pool(self) -> Pool:
        """Get or create the connection pool."""
        if self._pool is None:
            try:
                self._pool = await asyncpg.create_pool(
                    self.dsn,
                    min_size=1,
                    max_size=self.pool_size,
                    command_timeout=self.command_timeout,
                    init=self._init_connection,
                )
                logger.info("Created PgVector connection pool", pool_size=self.pool_size)
            except ValueError as e:
                # register_vector raises ValueError when the extension is missing
                logger.error("pgvector extension is not installed", error=str(e))
                raise VectorStoreNotProvisionedError(f"pgvector not provisioned: {e}") from e
            except Exception as e:
                logger.error("Failed to create PgVector connection pool", error=str(e))
                raise VectorStoreConnectionError(f"Failed to create connection pool: {e}") from e

        return self._pool

    async def _execute_query(
        self,
        query: str,
        *args: Any,
        fetch: bool = False,
        fetch_one: bool = False,
        fetch_val: bool = False,
    ) -> Any:
        """Execute a query, translating driver failures."""
        try:
            pool = await self._get_pool()
            async with pool.acquire() as conn:
                if fetch_val:
                    return await conn.fetchval(query, *args)
                if fetch_one:
                    return await conn.fetchrow(query, *args)
                if fetch:
                    return await conn.fetch(query, *args)
                return await conn.execute(query, *args)
        except VectorStoreError:
            raise
        except _NOT_PROVISIONED as e:
            logger.error("Vector table is not provisioned", table=self.table_name, error=str(e))
            raise VectorStoreNotProvisionedError(f"{self.table_name} is not provisioned: {e}") from e
        except _CONNECTION_ERRORS as e:
            logger.error("Vector backend unreachable", error=str(e))
            raise VectorStoreConnectionError(f"Vector backend unreachable: {e}") from e
        except Exception as e:
            logger.error("Query execution failed", error=str(e))
            raise VectorStoreQueryError(f"Query failed: {e}") from e

    async def ensure_schema(self) -> None:
        """Create the extension, table and HNSW index if missing.

        Uses a plain connection because the pool's codec registration needs
        the extension to exist first.
        """
        try:
            conn = await asyncpg.connect(self.dsn, command_timeout=self.command_timeout)
        except Exception as e:
            raise VectorStoreConnectionError(f"Failed to connect: {e}") from e
        try:
            await conn.execute("CREATE EXTENSION IF NOT EXISTS vector")
            await conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self.table_name} (
                    item_id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    embedding vector({self.vector_dimension}) NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await conn.execute(
                f"CREATE INDEX IF NOT EXISTS {self.table_name}_owner_idx "
                f"ON {self.table_name} (owner_id)"
            )
            await conn.execute(
                f"CREATE INDEX IF NOT EXISTS {self.table_name}_hnsw_idx "
                f"ON {self.table_name} USING hnsw (embedding vector_cosine_ops)"
            )
            logger.info("Ensured vector schema", table=self.table_name)
        except Exception as e:
            raise VectorStoreQueryError(f"Failed to create schema: {e}") from e
        finally:
            await conn.close()

    async def upsert(self, owner_id: str, item_id: str, vector: np.ndarray) -> None:
        require_owner(owner_id)
        array = as_vector(vector, self.vector_dimension)
        result = await self._execute_query(
            f"""
            INSERT INTO {self.table_name} (item_id, owner_id, embedding)
            VALUES ($1, $2, $3)
            ON CONFLICT (item_id) DO UPDATE SET
                embedding = EXCLUDED.embedding,
                updated_at = CURRENT_TIMESTAMP
            WHERE {self.table_name}.owner_id = EXCLUDED.owner_id
            """,
            item_id,
            owner_id,
            array,
        )
        if result.split()[-1] == "0":
            raise VectorOwnershipError(f"Item {item_id} is indexed under another owner")
        logger.info("Stored embedding", owner_id=owner_id, item_id=item_id)

    async def remove(self, item_id: str) -> bool:
        result = await self._execute_query(
            f"DELETE FROM {self.table_name} WHERE item_id = $1",
            item_id,
        )
        deleted = result.split()[-1] != "0"
        if deleted:
            logger.info("Deleted embedding", item_id=item_id)
        return deleted

    async def query(
        self,
        owner_id: str,
        query_vector: np.ndarray,
        k: int,
    ) -> List[VectorHit]:
        require_owner(owner_id)
        if k <= 0:
            return []
        array = as_vector(query_vector, self.vector_dimension)
        rows = await self._execute_query(
            f"""
            SELECT item_id, 1 - (embedding <=> $2) AS similarity
            FROM {self.table_name}
            WHERE owner_id = $1
            ORDER BY embedding <=> $2, item_id
            LIMIT $3
            """,
            owner_id,
            array,
            k,
            fetch=True,
        )
        hits = [VectorHit(item_id=row["item_id"], score=float(row["similarity"])) for row in rows]
        # Re-sort so ties on the float similarity break by id.
        hits.sort(key=lambda hit: (-hit.score, hit.item_id))

        logger.debug(
            "Vector similarity search completed",
            owner_id=owner_id,
            limit=k,
            results_count=len(hits),
        )
        return hits

    async def get(self, owner_id: str, item_id: str) -> Optional[np.ndarray]:
        require_owner(owner_id)
        row = await self._execute_query(
            f"SELECT embedding FROM {self.table_name} WHERE owner_id = $1 AND item_id = $2",
            owner_id,
            item_id,
            fetch_one=True,
        )
        if row is None:
            return None
        return np.asarray(row["embedding"], dtype=np.float32)

    async def count(self, owner_id: str) -> int:
        require_owner(owner_id)
        return await self._execute_query(
            f"SELECT COUNT(*) FROM {self.table_name} WHERE owner_id = $1",
            owner_id,
            fetch_val=True,
        )

    async def health_check(self) -> bool:
        try:
            await self._execute_query("SELECT 1", fetch_val=True)
            return True
        except VectorStoreError as e:
            logger.error("Health check failed", error=str(e))
            return False

    async def close(self) -> None:
        """Close the connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("Closed PgVector connection pool")
