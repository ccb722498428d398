import json
import uuid
from datetime import datetime, timezone
from unittest import mock

import pytest

from analysis_service.detection_store import DetectionStore, SCHEMA_STATEMENTS

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)
PROJECT = uuid.UUID('6f1c1f9e-3a43-4b5e-9d64-5b0c1f2d7a10')


@pytest.fixture
def conn():
    return mock.MagicMock()


@pytest.fixture
def cursor(conn):
    return conn.cursor.return_value


@pytest.fixture
def pool(conn):
    pool = mock.Mock()
    pool.getconn.return_value = conn
    return pool


@pytest.fixture
def store(pool):
    return DetectionStore(pool)


def record(label='tree', gps=None):
    return {
        'label': label,
        'bbox': {'x1': 0, 'y1': 0, 'x2': 10.5, 'y2': 10},
        'gps_coordinates': gps,
        'confidence': 0.9
    }


def test_insert_reports_new_row(store, cursor, conn, pool):
    cursor.fetchone.return_value = (17,)

    assert store.insert_detection_if_absent(PROJECT, record(), NOW) is True

    sql, params = cursor.execute.call_args[0]
    assert 'ON CONFLICT (project_id, label, x1, y1, x2, y2) DO NOTHING' in sql
    assert params == (str(PROJECT), 'tree', 0, 0, 10.5, 10, None, 0.9, NOW)
    conn.commit.assert_called_once()
    pool.putconn.assert_called_once_with(conn)


def test_insert_reports_duplicate(store, cursor):
    cursor.fetchone.return_value = None
    assert store.insert_detection_if_absent(PROJECT, record(), NOW) is False


def test_insert_serializes_gps(store, cursor):
    cursor.fetchone.return_value = (1,)
    store.insert_detection_if_absent(PROJECT, record(gps={'lat': 1.0, 'lng': 2.0}), NOW)
    params = cursor.execute.call_args[0][1]
    assert json.loads(params[6]) == {'lat': 1.0, 'lng': 2.0}


def test_failed_statement_rolls_back_and_returns_connection(store, cursor, conn, pool):
    cursor.execute.side_effect = RuntimeError("deadlock detected")

    with pytest.raises(RuntimeError):
        store.project_exists(PROJECT)

    conn.rollback.assert_called_once()
    conn.commit.assert_not_called()
    pool.putconn.assert_called_once_with(conn)


def test_project_exists(store, cursor):
    cursor.fetchone.return_value = (1,)
    assert store.project_exists(PROJECT) is True
    cursor.fetchone.return_value = None
    assert store.project_exists(PROJECT) is False


def test_list_detections_maps_rows(store, cursor):
    cursor.fetchall.return_value = [
        ('tree', 0.0, 0.0, 10.0, 10.0, None, 0.9, NOW),
        ('water', 20.0, 20.0, 30.0, 30.0, {'lat': 1}, 0.7, NOW),
    ]

    detections = store.list_detections(PROJECT)

    assert [d['label'] for d in detections] == ['tree', 'water']
    assert detections[1]['bbox'] == {'x1': 20.0, 'y1': 20.0, 'x2': 30.0, 'y2': 30.0}
    assert detections[1]['gps_coordinates'] == {'lat': 1}


def test_upsert_summary_returns_written_row(store, cursor):
    land_covers = [{'name': 'Not Specified', 'counts': {'tree': 2}}]
    cursor.fetchone.return_value = (str(PROJECT), land_covers, ['yolov8'], NOW)

    written = store.upsert_summary({
        'project_id': PROJECT, 'land_covers': land_covers, 'filters': ['yolov8'], 'recorded_at': NOW
    })

    sql, params = cursor.execute.call_args[0]
    assert 'ON CONFLICT (project_id) DO UPDATE' in sql
    assert json.loads(params[1]) == land_covers
    assert json.loads(params[2]) == ['yolov8']
    assert written == {
        'project_id': str(PROJECT), 'land_covers': land_covers, 'filters': ['yolov8'], 'recorded_at': NOW
    }


def test_get_summary_missing(store, cursor):
    cursor.fetchone.return_value = None
    assert store.get_summary(PROJECT) is None


def test_ensure_schema_runs_every_statement(store, cursor):
    store.ensure_schema()
    assert cursor.execute.call_count == len(SCHEMA_STATEMENTS)
    assert any('UNIQUE INDEX' in call[0][0] for call in cursor.execute.call_args_list)


def test_from_environment_requires_database_settings(monkeypatch):
    monkeypatch.delenv('DB_HOST', raising=False)
    with pytest.raises(ValueError, match='DB_HOST'):
        DetectionStore.from_environment()


def test_connection_slot_released_after_failure(pool, cursor):
    store = DetectionStore(pool, max_connections=1)
    cursor.execute.side_effect = RuntimeError("boom")

    with pytest.raises(RuntimeError):
        store.ping()

    assert store.slots.acquire(blocking=False)
