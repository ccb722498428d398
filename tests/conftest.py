import io
import os
import tempfile
import threading
import uuid

import pytest

# Configure before analysis_service.config is imported
os.environ.setdefault('UPLOAD_FOLDER', tempfile.mkdtemp(prefix='analysis_uploads_'))
os.environ.setdefault('PORT', '4000')
os.environ.setdefault('PRIVATE', 'true')
os.environ['MODEL_API_URL'] = 'http://inference.test/predict'

from werkzeug.datastructures import FileStorage  # noqa: E402

from analysis_service import config  # noqa: E402
from analysis_service.analysis_pipeline import AnalysisPipeline  # noqa: E402


class InMemoryStore:
    """Store with the DetectionStore interface, keyed the same way as the unique index"""

    def __init__(self, project_ids=()):
        self.projects = {str(p) for p in project_ids}
        self.detections = []
        self.summaries = {}
        self.lock = threading.Lock()
        self.insert_calls = 0
        self.fail_inserts = False

    @staticmethod
    def _key(project_id, detection):
        bbox = detection['bbox']
        return (str(project_id), detection['label'], bbox['x1'], bbox['y1'], bbox['x2'], bbox['y2'])

    def ping(self):
        pass

    def project_exists(self, project_id):
        return str(project_id) in self.projects

    def insert_detection_if_absent(self, project_id, detection, recorded_at):
        if self.fail_inserts:
            raise RuntimeError("database unavailable")
        key = self._key(project_id, detection)
        with self.lock:
            self.insert_calls += 1
            if any(self._key(d['project_id'], d) == key for d in self.detections):
                return False
            self.detections.append({**detection, 'project_id': str(project_id), 'date': recorded_at})
            return True

    def list_detections(self, project_id):
        with self.lock:
            return [dict(d) for d in self.detections if d['project_id'] == str(project_id)]

    def upsert_summary(self, summary):
        written = {**summary, 'project_id': str(summary['project_id'])}
        with self.lock:
            self.summaries[written['project_id']] = written
        return dict(written)

    def get_summary(self, project_id):
        summary = self.summaries.get(str(project_id))
        return dict(summary) if summary else None

    def find_projects_needing_summary(self, limit):
        latest = {}
        for d in self.detections:
            pid = d['project_id']
            latest[pid] = max(latest.get(pid, d['date']), d['date'])
        stale = [
            pid for pid, newest in sorted(latest.items())
            if pid not in self.summaries or newest > self.summaries[pid]['recorded_at']
        ]
        return stale[:limit]

    def close(self):
        pass


class FakeInferenceClient:
    """Returns a canned response and records what it was sent"""

    def __init__(self, response=None, error=None):
        self.response = response if response is not None else {
            'detections': [], 'result_image': None, 'metadata': {}
        }
        self.error = error
        self.calls = []

    def predict(self, file_path, model, confidence, iou):
        self.calls.append({
            'file_path': file_path,
            'file_existed': os.path.exists(file_path),
            'model': model,
            'confidence': confidence,
            'iou': iou
        })
        if self.error:
            raise self.error
        return self.response


def inference_response(*detections, result_image='results/out.jpg', metadata=None):
    return {
        'detections': list(detections),
        'result_image': result_image,
        'metadata': metadata if metadata is not None else {'model': 'yolov8', 'inference_ms': 42}
    }


def detection(label, x1, y1, x2, y2, confidence=0.9, gps=None):
    det = {
        'label': label,
        'coordinates': {'x1': x1, 'y1': y1, 'x2': x2, 'y2': y2},
        'confidence': confidence
    }
    if gps is not None:
        det['gps_coordinates'] = gps
    return det


def make_upload(filename='field.jpg', data=b'\xff\xd8\xff\xe0fake-jpeg'):
    return FileStorage(stream=io.BytesIO(data), filename=filename, content_type='image/jpeg')


@pytest.fixture
def upload_folder():
    folder = config.UPLOAD_FOLDER
    os.makedirs(folder, exist_ok=True)
    for name in os.listdir(folder):
        os.remove(os.path.join(folder, name))
    return folder


@pytest.fixture
def project_id():
    return uuid.uuid4()


@pytest.fixture
def store(project_id):
    return InMemoryStore([project_id])


@pytest.fixture
def inference():
    return FakeInferenceClient()


@pytest.fixture
def pipeline(store, inference, upload_folder):
    return AnalysisPipeline(store, inference, upload_folder, persist_workers=4)
