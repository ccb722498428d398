#!/usr/bin/env python3
"""
Inference service client

Sends an uploaded image with the model selector and thresholds to the
object detection service and returns its parsed response. The pipeline
receives an instance of this class, so tests can hand it a fake.
"""

import os
import logging
import mimetypes
from typing import Dict, Any, Optional

import requests
from requests_toolbelt import MultipartEncoder

from .errors import InferenceTimeout, InvalidInferenceResponse

logger = logging.getLogger(__name__)

BBOX_KEYS = ('x1', 'y1', 'x2', 'y2')


def validate_detection(detection: Any) -> None:
    """Reject a detection item that cannot be keyed for deduplication"""
    if not isinstance(detection, dict):
        raise InvalidInferenceResponse("Invalid response from model API: detection is not an object.")
    if not isinstance(detection.get('label'), str):
        raise InvalidInferenceResponse("Invalid response from model API: detection label is not a string.")
    coords = detection.get('coordinates')
    if not isinstance(coords, dict) or not all(k in coords for k in BBOX_KEYS):
        raise InvalidInferenceResponse("Invalid response from model API: detection without coordinates.")
    for k in BBOX_KEYS:
        value = coords[k]
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise InvalidInferenceResponse(f"Invalid response from model API: coordinate {k} is not numeric.")


def parse_inference_response(data: Any) -> Dict[str, Any]:
    """Validate the service body and split it into detections, result image and metadata"""
    if not isinstance(data, dict) or not isinstance(data.get('detections'), list):
        raise InvalidInferenceResponse()

    for detection in data['detections']:
        validate_detection(detection)

    return {
        'detections': data['detections'],
        'result_image': data.get('result_image'),
        'metadata': data.get('metadata'),
    }


class InferenceClient:
    """HTTP client for the external object detection service"""

    def __init__(self, url: str, timeout: Optional[float] = None):
        self.url = url
        # None means wait as long as the service needs
        self.timeout = timeout

    def predict(self, file_path: str, model: str, confidence: float, iou: float) -> Dict[str, Any]:
        """POST the image as multipart form data and return the parsed detections"""
        filename = os.path.basename(file_path)
        content_type = mimetypes.guess_type(filename)[0] or 'application/octet-stream'

        logger.info(f"Sending {filename} to model API {self.url} (model={model}, confidence={confidence}, iou={iou})")

        try:
            with open(file_path, 'rb') as image_file:
                # Streams the file from disk as the body is sent
                encoder = MultipartEncoder(fields={
                    'file': (filename, image_file, content_type),
                    'model': model,
                    'confidence': str(confidence),
                    'iou': str(iou),
                })
                response = requests.post(
                    self.url,
                    data=encoder,
                    headers={'Content-Type': encoder.content_type},
                    timeout=self.timeout
                )
        except requests.exceptions.Timeout as e:
            logger.error(f"Model API timed out after {self.timeout}s: {e}")
            raise InferenceTimeout()
        except requests.exceptions.RequestException as e:
            logger.error(f"Model API request failed: {e}")
            raise InvalidInferenceResponse()

        if not 200 <= response.status_code < 300:
            logger.error(f"Model API returned {response.status_code}: {response.text[:200]}")
            raise InvalidInferenceResponse()

        try:
            data = response.json()
        except ValueError as e:
            logger.error(f"Model API returned a non-JSON body: {e}")
            raise InvalidInferenceResponse()

        result = parse_inference_response(data)
        logger.info(f"Model API returned {len(result['detections'])} detections")
        return result
