#!/usr/bin/env python3
"""
Read-only adapter over the service tag catalog.

Tags are user-defined labels attached to services (tables `tags` and
`service_tags`, owned by the dashboard). The reconciler uses them as the
join key between an external alert's `tag` label and internal services.
"""

import logging
from typing import List

import psycopg2

logger = logging.getLogger(__name__)

SELECT_TAG_NAMES = "SELECT name FROM tags ORDER BY name"

SELECT_SERVICE_IDS_BY_TAG = """
SELECT DISTINCT st.service_id
FROM service_tags st
JOIN tags t ON t.id = st.tag_id
WHERE t.name = %s
ORDER BY st.service_id
"""


class TagCatalog:
    """Tag → service lookups backed by PostgreSQL."""

    def __init__(self, db_pool):
        self.db_pool = db_pool

    def _fetch_column(self, query: str, params=None) -> list:
        conn = None
        try:
            conn = self.db_pool.getconn()
            with conn.cursor() as cursor:
                cursor.execute(query, params)
                rows = cursor.fetchall()
            conn.commit()
            return [row[0] for row in rows]
        except psycopg2.Error:
            if conn:
                conn.rollback()
            raise
        finally:
            if conn:
                self.db_pool.putconn(conn)

    def list_all_tag_names(self) -> List[str]:
        """Every known tag name."""
        return self._fetch_column(SELECT_TAG_NAMES)

    def resolve_service_ids(self, tag_name: str) -> List[int]:
        """
        Service ids currently carrying tag_name.

        Raises:
            psycopg2.Error: On database failure; the reconciler skips the alert
        """
        service_ids = [int(sid) for sid in self._fetch_column(SELECT_SERVICE_IDS_BY_TAG, (tag_name,))]
        logger.debug(f"Tag '{tag_name}' resolved to services {service_ids}")
        return service_ids
