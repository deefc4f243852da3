"""
Tests for the pricing_priors store (asyncpg pool faked).
"""
import asyncio
from datetime import datetime, timezone
import unittest
import sys
import os
from unittest.mock import AsyncMock, MagicMock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import database as db
from database import (
    PostgresPriorStore,
    MAX_OPS_EVENTS_SCAN,
    PriorStoreUnavailableError,
    REQUIRED_COLUMNS,
    build_prior_query,
    is_missing_schema_error,
)
from priors import GLOBAL_TECHNOLOGY_SENTINEL, ByTechnology, GroupKey

CNC = ByTechnology("CNC")


class _Acquire:
    def __init__(self, conn):
        self.conn = conn

    async def __aenter__(self):
        return self.conn

    async def __aexit__(self, *exc):
        return False


def make_pool():
    conn = MagicMock()
    conn.fetch = AsyncMock()
    conn.fetchrow = AsyncMock()
    conn.fetchval = AsyncMock()
    pool = MagicMock()
    pool.acquire.side_effect = lambda: _Acquire(conn)
    return pool, conn


class SqlStateError(Exception):
    def __init__(self, sqlstate, message="error"):
        super().__init__(message)
        self.sqlstate = sqlstate


class TestBuildPriorQuery(unittest.TestCase):

    def test_full_key(self):
        sql, params = build_prior_query(GroupKey(CNC, "Aluminum 6061", "2-3"))
        self.assertEqual(params, ["CNC", "Aluminum 6061", "2-3"])
        self.assertIn("technology = $1", sql)
        self.assertIn("material_canon = $2", sql)
        self.assertIn("parts_bucket = $3", sql)
        self.assertTrue(sql.endswith("LIMIT 1"))

    def test_null_dimensions_use_is_null(self):
        sql, params = build_prior_query(GroupKey(CNC, None, "11+"))
        self.assertEqual(params, ["CNC", "11+"])
        self.assertIn("material_canon IS NULL", sql)
        self.assertIn("parts_bucket = $2", sql)

    def test_global_key_uses_sentinel(self):
        sql, params = build_prior_query(GroupKey.global_key())
        self.assertEqual(params, [GLOBAL_TECHNOLOGY_SENTINEL])
        self.assertIn("material_canon IS NULL", sql)
        self.assertIn("parts_bucket IS NULL", sql)

    def test_selects_required_columns(self):
        sql, _ = build_prior_query(GroupKey(CNC))
        for column in REQUIRED_COLUMNS:
            self.assertIn(column, sql)


class TestMissingSchemaError(unittest.TestCase):

    def test_undefined_table_and_column(self):
        self.assertTrue(is_missing_schema_error(SqlStateError("42P01")))
        self.assertTrue(is_missing_schema_error(SqlStateError("42703")))

    def test_other_errors(self):
        self.assertFalse(is_missing_schema_error(SqlStateError("57014")))
        self.assertFalse(is_missing_schema_error(ConnectionResetError("reset")))


class TestPostgresPriorStore(unittest.TestCase):

    def test_schema_supported_and_cached(self):
        pool, conn = make_pool()
        conn.fetch.return_value = [{"column_name": c} for c in REQUIRED_COLUMNS + ("updated_at",)]
        store = PostgresPriorStore(pool=pool)

        async def run_test():
            self.assertTrue(await store.has_pricing_priors_schema())
            self.assertTrue(await store.has_pricing_priors_schema())

        asyncio.run(run_test())
        self.assertEqual(conn.fetch.await_count, 1)

    def test_schema_missing_column(self):
        pool, conn = make_pool()
        conn.fetch.return_value = [{"column_name": c} for c in REQUIRED_COLUMNS if c != "p90"]
        store = PostgresPriorStore(pool=pool)
        self.assertFalse(asyncio.run(store.has_pricing_priors_schema()))

    def test_schema_missing_table(self):
        pool, conn = make_pool()
        conn.fetch.return_value = []
        store = PostgresPriorStore(pool=pool)
        self.assertFalse(asyncio.run(store.has_pricing_priors_schema()))

    def test_schema_check_error_not_cached(self):
        pool, conn = make_pool()
        conn.fetch.side_effect = [
            OSError("connection refused"),
            [{"column_name": c} for c in REQUIRED_COLUMNS],
        ]
        store = PostgresPriorStore(pool=pool)

        async def run_test():
            with self.assertLogs("database", level="WARNING"):
                self.assertFalse(await store.has_pricing_priors_schema())
            self.assertTrue(await store.has_pricing_priors_schema())

        asyncio.run(run_test())

    def test_fetch_prior_row(self):
        pool, conn = make_pool()
        conn.fetchrow.return_value = {"technology": "CNC", "material_canon": None, "parts_bucket": None,
                                      "n": 500, "p10": 10, "p50": 20, "p90": 30}
        store = PostgresPriorStore(pool=pool)
        result = asyncio.run(store.fetch_prior_row(GroupKey(CNC)))
        self.assertEqual(result["n"], 500)
        args = conn.fetchrow.await_args.args
        self.assertIn("material_canon IS NULL", args[0])
        self.assertEqual(args[1:], ("CNC",))

    def test_fetch_prior_row_none(self):
        pool, conn = make_pool()
        conn.fetchrow.return_value = None
        store = PostgresPriorStore(pool=pool)
        self.assertIsNone(asyncio.run(store.fetch_prior_row(GroupKey(CNC, "Steel", "1"))))

    def test_sentinel_named_technology_not_queried(self):
        pool, conn = make_pool()
        conn.fetchrow.return_value = {"technology": GLOBAL_TECHNOLOGY_SENTINEL, "material_canon": None,
                                      "parts_bucket": None, "n": 1000, "p10": 1, "p50": 2, "p90": 3}
        store = PostgresPriorStore(pool=pool)
        key = GroupKey(ByTechnology(GLOBAL_TECHNOLOGY_SENTINEL))
        self.assertIsNone(asyncio.run(store.fetch_prior_row(key)))
        conn.fetchrow.assert_not_awaited()
        self.assertIsNotNone(asyncio.run(store.fetch_prior_row(GroupKey.global_key())))

    def test_ops_events_schema_cached_separately(self):
        pool, conn = make_pool()
        conn.fetch.side_effect = [
            [{"column_name": c} for c in REQUIRED_COLUMNS],
            [{"column_name": "event_type"}, {"column_name": "payload"}],
        ]
        store = PostgresPriorStore(pool=pool)

        async def run_test():
            self.assertTrue(await store.has_pricing_priors_schema())
            self.assertFalse(await store.has_ops_events_schema())
            self.assertFalse(await store.has_ops_events_schema())

        asyncio.run(run_test())
        self.assertEqual(conn.fetch.await_count, 2)
        self.assertEqual(conn.fetch.await_args_list[1].args[1], "ops_events")

    def test_estimate_shown_payloads(self):
        pool, conn = make_pool()
        conn.fetch.return_value = [
            {"payload": {"process": "CNC"}},
            {"payload": '{"process": "FDM"}'},
            {"payload": "not json"},
            {"payload": "[1, 2]"},
            {"payload": None},
        ]
        store = PostgresPriorStore(pool=pool)
        since = datetime(2024, 6, 1, tzinfo=timezone.utc)
        payloads = asyncio.run(store.fetch_estimate_shown_payloads(since))
        self.assertEqual(payloads, [{"process": "CNC"}, {"process": "FDM"}])
        args = conn.fetch.await_args.args
        self.assertEqual(args[1:], ("estimate_shown", since, MAX_OPS_EVENTS_SCAN))

    def test_fetch_errors_propagate(self):
        """The estimator decides how to treat fetch errors; the store raises them."""
        pool, conn = make_pool()
        conn.fetchrow.side_effect = SqlStateError("42P01", 'relation "pricing_priors" does not exist')
        store = PostgresPriorStore(pool=pool)
        with self.assertRaises(SqlStateError):
            asyncio.run(store.fetch_prior_row(GroupKey(CNC)))

    def test_fetch_all_prior_rows(self):
        pool, conn = make_pool()
        conn.fetch.return_value = [{"technology": "CNC"}, {"technology": GLOBAL_TECHNOLOGY_SENTINEL}]
        store = PostgresPriorStore(pool=pool)
        self.assertEqual(len(asyncio.run(store.fetch_all_prior_rows())), 2)

    def test_latest_updated_at_missing_column(self):
        pool, conn = make_pool()
        conn.fetchval.side_effect = SqlStateError("42703", 'column "updated_at" does not exist')
        store = PostgresPriorStore(pool=pool)
        self.assertIsNone(asyncio.run(store.fetch_latest_updated_at()))

    def test_latest_updated_at_other_error_raised(self):
        pool, conn = make_pool()
        conn.fetchval.side_effect = SqlStateError("57014", "canceled")
        store = PostgresPriorStore(pool=pool)
        with self.assertRaises(SqlStateError):
            asyncio.run(store.fetch_latest_updated_at())


class TestStoreWithoutDatabase(unittest.TestCase):

    def setUp(self):
        self.patches = [patch.object(db, "DATABASE_URL", None), patch.object(db, "_pool", None)]
        for p in self.patches:
            p.start()

    def tearDown(self):
        for p in self.patches:
            p.stop()

    def test_schema_unsupported(self):
        self.assertFalse(asyncio.run(PostgresPriorStore().has_pricing_priors_schema()))

    def test_fetch_raises_unavailable(self):
        with self.assertRaises(PriorStoreUnavailableError) as ctx:
            asyncio.run(PostgresPriorStore().fetch_prior_row(GroupKey(CNC)))
        self.assertIn("DATABASE_URL", ctx.exception.message)


if __name__ == '__main__':
    unittest.main()
