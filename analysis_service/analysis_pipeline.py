#!/usr/bin/env python3
"""
Analysis ingestion pipeline

validate upload -> inference -> persist novel detections -> recompute summary -> response

The store and the inference client are passed in, so the same pipeline runs
against PostgreSQL and the detection service in production and against
in-memory fakes in tests.
"""

import time
import logging
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Dict, List, Any

from .upload_validator import received_upload, validate_upload

logger = logging.getLogger(__name__)

UNSPECIFIED_LAND_COVER = "Not Specified"


def build_detection_record(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Map an inference detection onto the stored detection fields"""
    coords = raw['coordinates']
    return {
        'label': raw['label'],
        'bbox': {
            'x1': coords['x1'],
            'y1': coords['y1'],
            'x2': coords['x2'],
            'y2': coords['y2']
        },
        'gps_coordinates': raw.get('gps_coordinates') or None,
        'confidence': raw.get('confidence')
    }


def persist_detections(store, project_id, detections: List[Dict[str, Any]],
                       recorded_at: datetime, max_workers: int = 8) -> List[Dict[str, Any]]:
    """Store each detection unless its dedup key already exists for the project.

    Writes run concurrently; the returned list keeps the input order and is
    each raw detection extended with a `duplicate` flag.
    """
    if not detections:
        return []

    def persist_one(raw):
        inserted = store.insert_detection_if_absent(project_id, build_detection_record(raw), recorded_at)
        if inserted:
            logger.debug(f"Stored new detection {raw['label']} {raw['coordinates']}")
        else:
            logger.debug(f"Duplicate detection {raw['label']} {raw['coordinates']}")
        return {**raw, 'duplicate': not inserted}

    with ThreadPoolExecutor(max_workers=min(max_workers, len(detections))) as executor:
        return list(executor.map(persist_one, detections))


def count_labels(detections: List[Dict[str, Any]]) -> Dict[str, int]:
    """Tally stored detections by label"""
    return dict(Counter(d['label'] for d in detections))


def aggregate_summary(store, project_id, filters: List[str], recorded_at: datetime) -> Dict[str, Any]:
    """Recompute the project's summary from every stored detection and upsert it"""
    counts = count_labels(store.list_detections(project_id))
    summary = {
        'project_id': project_id,
        'land_covers': [{'name': UNSPECIFIED_LAND_COVER, 'counts': counts}],
        'filters': list(filters),
        'recorded_at': recorded_at
    }
    written = store.upsert_summary(summary)
    logger.info(f"Summary for project {project_id}: {counts}")
    return written


def serialize_summary(summary: Dict[str, Any]) -> Dict[str, Any]:
    recorded_at = summary.get('recorded_at')
    return {
        'project_id': str(summary['project_id']),
        'land_covers': summary['land_covers'],
        'filters': summary['filters'],
        'recorded_at': recorded_at.isoformat() if isinstance(recorded_at, datetime) else recorded_at
    }


def compose_response(project_id, recorded_at: datetime, detections: List[Dict[str, Any]],
                     inference: Dict[str, Any], summary: Dict[str, Any]) -> Dict[str, Any]:
    """Combined payload returned by the analyze endpoint"""
    return {
        'project_id': str(project_id),
        'date': recorded_at.isoformat(),
        'detections': detections,
        'result_image': inference.get('result_image'),
        'summary': serialize_summary(summary),
        'metadata': inference.get('metadata')
    }


class AnalysisPipeline:
    """Runs one analysis request end to end"""

    def __init__(self, store, inference_client, upload_folder: str, persist_workers: int = 8):
        self.store = store
        self.inference_client = inference_client
        self.upload_folder = upload_folder
        self.persist_workers = persist_workers

    def analyze(self, form, uploaded_file) -> Dict[str, Any]:
        """Analyze one uploaded image for a project.

        The saved upload is removed when this returns or raises, whichever
        stage failed.
        """
        start_time = time.time()

        with received_upload(uploaded_file, self.upload_folder) as filepath:
            params = validate_upload(form, filepath, self.store)
            project_id = params['project_id']

            inference = self.inference_client.predict(
                params['file_path'],
                params['model'],
                params['confidence'],
                params['iou']
            )

            now = datetime.now(timezone.utc)
            detections = persist_detections(
                self.store, project_id, inference['detections'], now, self.persist_workers
            )
            summary = aggregate_summary(self.store, project_id, [params['model']], now)

        new_count = sum(1 for d in detections if not d['duplicate'])
        logger.info(f"Analyzed image for project {project_id} with {params['model']}: "
                    f"{len(detections)} detections, {new_count} new "
                    f"({round(time.time() - start_time, 3)}s)")

        return compose_response(project_id, now, detections, inference, summary)
