#!/usr/bin/env python3
"""
Alert store and tag catalog against a real PostgreSQL.

Skipped unless E2E_POSTGRES_DSN is set. Everything runs in a throwaway
schema (alertsync_e2e) that is dropped afterwards.
"""

import os

import pytest
import psycopg2
import psycopg2.pool

from alertsync.alert_store import AlertStore
from alertsync.reconciler import AlertReconciler
from alertsync.tag_catalog import TagCatalog
from conftest import FakeAlertSource, make_grafana_alert


DSN = os.getenv('E2E_POSTGRES_DSN')
SCHEMA = "alertsync_e2e"

RECORD = {
    "id": "", "status": "firing", "tag": "prod", "starts_at": "", "updated_at": "",
    "alert_url": "", "alert_name": "cpu", "summary": "", "runbook_url": "", "service_id": 0,
}

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not DSN, reason="E2E_POSTGRES_DSN not set"),
]


@pytest.fixture
def db_pool():
    admin = psycopg2.connect(DSN)
    admin.autocommit = True
    with admin.cursor() as cursor:
        cursor.execute(f"DROP SCHEMA IF EXISTS {SCHEMA} CASCADE")
        cursor.execute(f"CREATE SCHEMA {SCHEMA}")
        cursor.execute(f"CREATE TABLE {SCHEMA}.tags (id SERIAL PRIMARY KEY, name TEXT UNIQUE NOT NULL)")
        cursor.execute(
            f"CREATE TABLE {SCHEMA}.service_tags (service_id INTEGER NOT NULL, tag_id INTEGER NOT NULL)"
        )
        cursor.execute(f"INSERT INTO {SCHEMA}.tags (name) VALUES ('prod'), ('staging')")
        cursor.execute(
            f"INSERT INTO {SCHEMA}.service_tags (service_id, tag_id) "
            f"SELECT s, t.id FROM {SCHEMA}.tags t, (VALUES (10), (20)) v(s) WHERE t.name = 'prod'"
        )

    pool = psycopg2.pool.ThreadedConnectionPool(1, 4, dsn=DSN, options=f"-c search_path={SCHEMA}")
    AlertStore(pool).init_schema()

    yield pool

    pool.closeall()
    with admin.cursor() as cursor:
        cursor.execute(f"DROP SCHEMA IF EXISTS {SCHEMA} CASCADE")
    admin.close()


def test_tag_catalog_reads_real_tables(db_pool):
    catalog = TagCatalog(db_pool)

    assert catalog.list_all_tag_names() == ["prod", "staging"]
    assert catalog.resolve_service_ids("prod") == [10, 20]
    assert catalog.resolve_service_ids("staging") == []


def test_upsert_keeps_dismissed_and_created_at(db_pool):
    store = AlertStore(db_pool)
    record = {**RECORD, "id": "fp1:10", "service_id": 10}

    store.upsert(record)
    store.dismiss("fp1:10")
    created_at = store.get("fp1:10")["created_at"]
    store.upsert({**record, "status": "resolved"})

    row = store.get("fp1:10")
    assert row["status"] == "resolved"
    assert row["is_dismissed"] is True
    assert row["created_at"] == created_at


def test_delete_not_in(db_pool):
    store = AlertStore(db_pool)
    for alert_id in ("a:1", "b:1", "c:1"):
        store.upsert({**RECORD, "id": alert_id, "service_id": 1})

    assert store.delete_not_in({"b:1"}) == 2
    assert [row["id"] for row in store.get_all()] == ["b:1"]
    assert store.delete_not_in(set()) == 1
    assert store.get_all() == []


def test_three_cycle_scenario(db_pool):
    store = AlertStore(db_pool)
    source = FakeAlertSource([make_grafana_alert("fp1", tag="prod", status={"state": "firing"})])
    reconciler = AlertReconciler(TagCatalog(db_pool), source, store, interval=600)
    try:
        assert reconciler.run_cycle()["outcome"] == "success"
        assert sorted(row["id"] for row in store.get_all()) == ["fp1:10", "fp1:20"]

        source.alerts = []
        reconciler.run_cycle()
        assert store.get_all() == []

        source.alerts = [make_grafana_alert("fp1", tag="prod", status={"state": "resolved"})]
        reconciler.run_cycle()
        assert {row["status"] for row in store.get_all()} == {"resolved"}
    finally:
        reconciler.stop(timeout=5)
