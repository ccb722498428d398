#!/usr/bin/env python3
"""
PostgreSQL storage for detections and per-project summaries

Detections are deduplicated by a unique index on
(project_id, label, x1, y1, x2, y2); inserts use ON CONFLICT DO NOTHING so
concurrent requests cannot store the same detection twice.
"""

import json
import logging
import threading
from contextlib import contextmanager

from psycopg2.pool import ThreadedConnectionPool

from .config import database_settings, pool_bounds

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS projects (
        project_id UUID PRIMARY KEY
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS detections (
        detection_id BIGSERIAL PRIMARY KEY,
        project_id UUID NOT NULL REFERENCES projects(project_id),
        label TEXT NOT NULL,
        x1 DOUBLE PRECISION NOT NULL,
        y1 DOUBLE PRECISION NOT NULL,
        x2 DOUBLE PRECISION NOT NULL,
        y2 DOUBLE PRECISION NOT NULL,
        gps_coordinates JSONB,
        confidence DOUBLE PRECISION,
        date TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS detections_dedup_key
        ON detections (project_id, label, x1, y1, x2, y2)
    """,
    """
    CREATE TABLE IF NOT EXISTS summaries (
        project_id UUID PRIMARY KEY REFERENCES projects(project_id),
        land_covers JSONB NOT NULL,
        filters JSONB NOT NULL,
        recorded_at TIMESTAMPTZ NOT NULL
    )
    """,
]


class DetectionStore:
    """Detection and Summary persistence backed by a psycopg2 connection pool"""

    def __init__(self, pool, max_connections=None):
        self.pool = pool
        # getconn raises instead of blocking when the pool is exhausted
        self.slots = threading.BoundedSemaphore(max_connections) if max_connections else None

    @classmethod
    def from_environment(cls):
        """Create a store from DB_* environment variables"""
        settings = database_settings()
        minconn, maxconn = pool_bounds()
        pool = ThreadedConnectionPool(minconn, maxconn, **settings)
        logger.info(f"Connected to PostgreSQL at {settings['host']} (pool {minconn}-{maxconn})")
        return cls(pool, max_connections=maxconn)

    @contextmanager
    def _cursor(self):
        """Borrow a pooled connection and run one transaction on it"""
        if self.slots:
            self.slots.acquire()
        try:
            conn = self.pool.getconn()
            try:
                cursor = conn.cursor()
                try:
                    yield cursor
                finally:
                    cursor.close()
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                self.pool.putconn(conn)
        finally:
            if self.slots:
                self.slots.release()

    def ensure_schema(self):
        """Create tables and the dedup index if they do not exist"""
        with self._cursor() as cursor:
            for statement in SCHEMA_STATEMENTS:
                cursor.execute(statement)
        logger.info("Database schema ready")

    def ping(self):
        with self._cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()

    def project_exists(self, project_id):
        with self._cursor() as cursor:
            cursor.execute("SELECT 1 FROM projects WHERE project_id = %s", (str(project_id),))
            return cursor.fetchone() is not None

    def insert_detection_if_absent(self, project_id, detection, recorded_at):
        """Insert a detection unless its dedup key is already stored.

        Returns True when a new row was written, False for a duplicate.
        """
        bbox = detection['bbox']
        gps = detection.get('gps_coordinates')
        with self._cursor() as cursor:
            cursor.execute("""
                INSERT INTO detections
                    (project_id, label, x1, y1, x2, y2, gps_coordinates, confidence, date)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (project_id, label, x1, y1, x2, y2) DO NOTHING
                RETURNING detection_id
            """, (
                str(project_id),
                detection['label'],
                bbox['x1'], bbox['y1'], bbox['x2'], bbox['y2'],
                json.dumps(gps) if gps is not None else None,
                detection.get('confidence'),
                recorded_at
            ))
            return cursor.fetchone() is not None

    def list_detections(self, project_id):
        """All stored detections for a project"""
        with self._cursor() as cursor:
            cursor.execute("""
                SELECT label, x1, y1, x2, y2, gps_coordinates, confidence, date
                FROM detections
                WHERE project_id = %s
                ORDER BY detection_id
            """, (str(project_id),))
            rows = cursor.fetchall()

        return [
            {
                'label': label,
                'bbox': {'x1': x1, 'y1': y1, 'x2': x2, 'y2': y2},
                'gps_coordinates': gps,
                'confidence': confidence,
                'date': date
            }
            for label, x1, y1, x2, y2, gps, confidence, date in rows
        ]

    def upsert_summary(self, summary):
        """Insert or replace the project's summary and return the written row"""
        with self._cursor() as cursor:
            cursor.execute("""
                INSERT INTO summaries (project_id, land_covers, filters, recorded_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (project_id) DO UPDATE SET
                    land_covers = EXCLUDED.land_covers,
                    filters = EXCLUDED.filters,
                    recorded_at = EXCLUDED.recorded_at
                RETURNING project_id, land_covers, filters, recorded_at
            """, (
                str(summary['project_id']),
                json.dumps(summary['land_covers']),
                json.dumps(summary['filters']),
                summary['recorded_at']
            ))
            return self._summary_from_row(cursor.fetchone())

    def get_summary(self, project_id):
        with self._cursor() as cursor:
            cursor.execute("""
                SELECT project_id, land_covers, filters, recorded_at
                FROM summaries
                WHERE project_id = %s
            """, (str(project_id),))
            row = cursor.fetchone()
        return self._summary_from_row(row) if row else None

    def find_projects_needing_summary(self, limit):
        """Projects with detections but no summary, or detections newer than the summary"""
        with self._cursor() as cursor:
            cursor.execute("""
                SELECT d.project_id
                FROM detections d
                LEFT JOIN summaries s ON s.project_id = d.project_id
                GROUP BY d.project_id, s.recorded_at
                HAVING s.recorded_at IS NULL OR MAX(d.date) > s.recorded_at
                ORDER BY d.project_id
                LIMIT %s
            """, (limit,))
            return [row[0] for row in cursor.fetchall()]

    def close(self):
        if self.pool:
            self.pool.closeall()

    @staticmethod
    def _summary_from_row(row):
        project_id, land_covers, filters, recorded_at = row
        return {
            'project_id': str(project_id),
            'land_covers': land_covers,
            'filters': filters,
            'recorded_at': recorded_at
        }
