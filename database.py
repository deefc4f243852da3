"""
Pricing Priors Database Module - PostgreSQL Connection
Uses DATABASE_URL environment variable.

Backs the async pricing estimate with point lookups on pricing_priors:

    pricing_priors(technology, material_canon, parts_bucket, n, p10, p50, p90, updated_at)

Null dimensions are matched with IS NULL, so (CNC, null, null) is the
technology-wide cohort, not "any row for CNC".
"""
import json
import logging
import os
from typing import Dict, List, Mapping, Optional

from cachetools import TTLCache

from priors import GLOBAL_TECHNOLOGY_SENTINEL, GroupKey

logger = logging.getLogger(__name__)

# Check if we have a database URL
DATABASE_URL = os.environ.get("DATABASE_URL")

# Seconds to trust a schema capability check
SCHEMA_CACHE_TTL = int(os.environ.get("PRICING_PRIORS_SCHEMA_TTL", "300"))

PRICING_PRIORS_TABLE = "pricing_priors"
REQUIRED_COLUMNS = ("technology", "material_canon", "parts_bucket", "n", "p10", "p50", "p90")

# Request log scanned for estimates shown without a matching prior
OPS_EVENTS_TABLE = "ops_events"
OPS_EVENTS_COLUMNS = ("event_type", "payload", "created_at")
ESTIMATE_SHOWN_EVENT = "estimate_shown"
MAX_OPS_EVENTS_SCAN = 5000

# undefined_table, undefined_column
MISSING_SCHEMA_SQLSTATES = {"42P01", "42703"}

# PostgreSQL connection pool (lazy initialization)
_pool = None


class PriorStoreError(Exception):
    """Base exception for pricing prior store errors."""
    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class PriorStoreUnavailableError(PriorStoreError):
    """No database configured for the prior store."""
    pass


def is_missing_schema_error(error: Exception) -> bool:
    """True when a query failed because the table or a column does not exist."""
    return getattr(error, "sqlstate", None) in MISSING_SCHEMA_SQLSTATES


async def get_pool():
    """Get or create the connection pool."""
    global _pool
    if _pool is None and DATABASE_URL:
        import asyncpg
        # asyncpg needs postgresql://
        db_url = DATABASE_URL.replace("postgres://", "postgresql://", 1)
        _pool = await asyncpg.create_pool(db_url, min_size=1, max_size=10)
    return _pool


async def close_pool():
    """Close the connection pool."""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None


class PriorStore:
    """
    Point-lookup access to pricing priors.

    Implementations must match null dimensions against rows stored as null
    (not as "any"), and report a missing table/columns through
    has_pricing_priors_schema rather than per-key errors where possible.
    """

    async def has_pricing_priors_schema(self) -> bool:
        raise NotImplementedError

    async def fetch_prior_row(self, key: GroupKey) -> Optional[Mapping]:
        raise NotImplementedError


def build_prior_query(key: GroupKey):
    """SELECT for exactly one cohort. Returns (sql, params)."""
    conditions = ["technology = $1"]
    params: List = [key.storage_technology]

    if key.material:
        params.append(key.material)
        conditions.append(f"material_canon = ${len(params)}")
    else:
        conditions.append("material_canon IS NULL")

    if key.parts_bucket:
        params.append(key.parts_bucket)
        conditions.append(f"parts_bucket = ${len(params)}")
    else:
        conditions.append("parts_bucket IS NULL")

    sql = (
        f"SELECT {', '.join(REQUIRED_COLUMNS)} FROM {PRICING_PRIORS_TABLE} "
        f"WHERE {' AND '.join(conditions)} LIMIT 1"
    )
    return sql, params


class PostgresPriorStore(PriorStore):
    """PriorStore over the pricing_priors table via asyncpg."""

    def __init__(self, pool=None, schema_ttl: int = SCHEMA_CACHE_TTL):
        """
        Args:
            pool: asyncpg pool; defaults to the module pool from DATABASE_URL
            schema_ttl: Seconds to cache the schema capability check
        """
        self._pool = pool
        self._schema_cache: TTLCache = TTLCache(maxsize=4, ttl=schema_ttl)

    async def _get_pool(self):
        if self._pool is not None:
            return self._pool
        return await get_pool()

    async def _has_columns(self, table: str, required) -> bool:
        """Check that a table exists with every required column (cached per table)."""
        if table in self._schema_cache:
            return self._schema_cache[table]

        pool = await self._get_pool()
        if not pool:
            logger.info(f"No DATABASE_URL configured - {table} unavailable")
            return False

        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch(
                    """SELECT column_name FROM information_schema.columns
                       WHERE table_schema = current_schema() AND table_name = $1""",
                    table
                )
        except Exception as e:
            logger.warning(f"{table} schema check failed: {type(e).__name__}: {e}")
            return False

        present = {row['column_name'] for row in rows}
        missing = [col for col in required if col not in present]
        supported = not missing
        if not supported:
            logger.info(f"{table} schema unsupported, missing columns: {missing}")

        self._schema_cache[table] = supported
        return supported

    async def has_pricing_priors_schema(self) -> bool:
        """Check that pricing_priors exists with every required column."""
        return await self._has_columns(PRICING_PRIORS_TABLE, REQUIRED_COLUMNS)

    async def has_ops_events_schema(self) -> bool:
        """Check that ops_events can be scanned for estimate_shown events."""
        return await self._has_columns(OPS_EVENTS_TABLE, OPS_EVENTS_COLUMNS)

    async def fetch_prior_row(self, key: GroupKey) -> Optional[Dict]:
        """Fetch the single row for a cohort, or None if there is none."""
        pool = await self._get_pool()
        if not pool:
            raise PriorStoreUnavailableError("DATABASE_URL not configured")

        # A technology literally named like the sentinel is not the global cohort
        if not key.is_global and key.storage_technology == GLOBAL_TECHNOLOGY_SENTINEL:
            return None

        sql, params = build_prior_query(key)
        async with pool.acquire() as conn:
            row = await conn.fetchrow(sql, *params)
        return dict(row) if row else None

    async def fetch_all_prior_rows(self) -> List[Dict]:
        """Every prior row, for snapshot estimates and monitoring."""
        pool = await self._get_pool()
        if not pool:
            raise PriorStoreUnavailableError("DATABASE_URL not configured")

        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {', '.join(REQUIRED_COLUMNS)} FROM {PRICING_PRIORS_TABLE}"
            )
        return [dict(row) for row in rows]

    async def fetch_latest_updated_at(self):
        """Most recent updated_at, or None if the column is missing or the table is empty."""
        pool = await self._get_pool()
        if not pool:
            raise PriorStoreUnavailableError("DATABASE_URL not configured")

        try:
            async with pool.acquire() as conn:
                return await conn.fetchval(
                    f"SELECT MAX(updated_at) FROM {PRICING_PRIORS_TABLE}"
                )
        except Exception as e:
            if is_missing_schema_error(e):
                logger.info("pricing_priors.updated_at missing - freshness unavailable")
                return None
            raise

    async def fetch_estimate_shown_payloads(self, since, limit: int = MAX_OPS_EVENTS_SCAN) -> List[Dict]:
        """
        Payloads of estimate_shown events created at or after `since`, newest first.

        Args:
            since: Timezone-aware datetime lower bound
            limit: Maximum number of events scanned

        Returns:
            List of payload dicts; payloads that are not JSON objects are skipped
        """
        pool = await self._get_pool()
        if not pool:
            raise PriorStoreUnavailableError("DATABASE_URL not configured")

        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"""SELECT payload FROM {OPS_EVENTS_TABLE}
                    WHERE event_type = $1 AND created_at >= $2
                    ORDER BY created_at DESC LIMIT $3""",
                ESTIMATE_SHOWN_EVENT, since, limit
            )

        payloads = []
        for row in rows:
            payload = row['payload']
            # asyncpg returns json/jsonb as text unless a codec is registered
            if isinstance(payload, str):
                try:
                    payload = json.loads(payload)
                except ValueError:
                    continue
            if isinstance(payload, dict):
                payloads.append(payload)
        return payloads
