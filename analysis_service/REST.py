#!/usr/bin/env python3
"""
Image Analysis REST API Service
Accepts an image upload for a project, runs it through the object detection
service, stores new detections and returns the refreshed project summary.
"""

import os
import logging
import threading

from flask import Flask, request, jsonify
from flask_cors import CORS

from .config import (
    CORS_ORIGINS,
    INFERENCE_TIMEOUT,
    LOG_LEVEL,
    MODEL_API_URL,
    PERSIST_WORKERS,
    PORT,
    PRIVATE,
    UPLOAD_FOLDER,
)
from .analysis_pipeline import AnalysisPipeline
from .detection_store import DetectionStore
from .errors import AnalysisError
from .inference_client import InferenceClient

# Configure logging
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Ensure upload directory exists
os.makedirs(UPLOAD_FOLDER, exist_ok=True)

# Global pipeline - initialized on first request or at startup
pipeline = None
pipeline_lock = threading.Lock()


def initialize_pipeline() -> AnalysisPipeline:
    """Connect the store and inference client once per process"""
    global pipeline
    with pipeline_lock:
        if pipeline is None:
            store = DetectionStore.from_environment()
            inference_client = InferenceClient(MODEL_API_URL, timeout=INFERENCE_TIMEOUT)
            pipeline = AnalysisPipeline(store, inference_client, UPLOAD_FOLDER, PERSIST_WORKERS)
            logger.info(f"Analysis pipeline ready (model API: {MODEL_API_URL})")
        return pipeline


# Flask app setup
app = Flask(__name__)
CORS(app, origins=CORS_ORIGINS, supports_credentials=True)


def error_response(message: str, status_code: int = 400):
    return jsonify({"error": message}), status_code


@app.errorhandler(404)
def not_found(e):
    return error_response("Not found", 404)


@app.errorhandler(405)
def method_not_allowed(e):
    return error_response("Method not allowed", 405)


@app.errorhandler(500)
def internal_error(e):
    return error_response("Internal server error", 500)


@app.route('/health', methods=['GET'])
def health_check():
    """Health check endpoint"""
    try:
        initialize_pipeline().store.ping()
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return jsonify({
            "status": "unhealthy",
            "reason": f"Database error: {str(e)}",
            "service": "Image Analysis"
        }), 503

    return jsonify({
        "status": "healthy",
        "service": "Image Analysis",
        "model_api": MODEL_API_URL,
        "endpoints": [
            "GET /health - Health check",
            "POST /analyze - Analyze an uploaded image for a project"
        ]
    })


@app.route('/analyze', methods=['POST'])
def analyze():
    """Analyze an uploaded image and update the project's detections and summary"""
    uploaded_file = request.files.get('file') or next(iter(request.files.values()), None)

    try:
        result = initialize_pipeline().analyze(request.form, uploaded_file)
        return jsonify(result)

    except AnalysisError as e:
        if e.status_code >= 500:
            logger.error(f"Analyze failed: {e.message}")
        else:
            logger.warning(f"Rejected analyze request: {e.message}")
        return error_response(e.message, e.status_code)
    except Exception as e:
        logger.error(f"Error in analyze: {e}")
        return error_response("Error processing image.", 500)


def main():
    """Main entry point"""
    try:
        initialize_pipeline().store.ensure_schema()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    except Exception as e:
        logger.error(f"Failed to initialize analysis pipeline: {e}")
        return 1

    # Determine host based on private mode
    host = "127.0.0.1" if PRIVATE else "0.0.0.0"

    logger.info(f"Starting Image Analysis service on {host}:{PORT}")
    logger.info(f"Private mode: {PRIVATE}")
    logger.info(f"Model API: {MODEL_API_URL}")
    logger.info(f"Inference timeout: {INFERENCE_TIMEOUT or 'none'}")
    logger.info(f"Upload folder: {UPLOAD_FOLDER}")

    app.run(
        host=host,
        port=PORT,
        debug=False,
        use_reloader=False,
        threaded=True
    )
    return 0


if __name__ == '__main__':
    import sys
    sys.exit(main())
