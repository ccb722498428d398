#!/usr/bin/env python3
"""
Environment configuration for the analysis service and its workers.
Values are loaded as strings first, validated, then converted.
"""

import os

from dotenv import load_dotenv

# Load environment variables FIRST
load_dotenv()

# Step 1: Load as strings
MODEL_API_URL = os.getenv('MODEL_API_URL') or 'http://localhost:5001/predict'
INFERENCE_TIMEOUT_STR = os.getenv('INFERENCE_TIMEOUT', '')
PORT_STR = os.getenv('PORT', '4000')
PRIVATE_STR = os.getenv('PRIVATE', 'false')
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()
UPLOAD_FOLDER = os.getenv('UPLOAD_FOLDER', './uploads')
CORS_ORIGINS_STR = os.getenv('CORS_ORIGINS', '*')
PERSIST_WORKERS_STR = os.getenv('PERSIST_WORKERS', '8')

# Step 2: Validate
if not PORT_STR.isdigit():
    raise ValueError(f"PORT must be an integer, got {PORT_STR!r}")
if not PERSIST_WORKERS_STR.isdigit() or int(PERSIST_WORKERS_STR) < 1:
    raise ValueError(f"PERSIST_WORKERS must be a positive integer, got {PERSIST_WORKERS_STR!r}")

# Step 3: Convert to appropriate types after validation
PORT = int(PORT_STR)
PRIVATE = PRIVATE_STR.lower() in ['true', '1', 'yes']
PERSIST_WORKERS = int(PERSIST_WORKERS_STR)
CORS_ORIGINS = [origin.strip() for origin in CORS_ORIGINS_STR.split(',') if origin.strip()]

# No timeout unless one is configured; 0 also means unbounded
INFERENCE_TIMEOUT = float(INFERENCE_TIMEOUT_STR) if INFERENCE_TIMEOUT_STR else None
if INFERENCE_TIMEOUT is not None and INFERENCE_TIMEOUT <= 0:
    INFERENCE_TIMEOUT = None

DEFAULT_CONFIDENCE = 0.5
DEFAULT_IOU = 0.5


def get_required(key):
    """Get required environment variable or raise error"""
    value = os.getenv(key)
    if not value:
        raise ValueError(f"Required environment variable {key} not set")
    return value


def database_settings():
    """Database connection settings; DB_HOST, DB_NAME, DB_USER, DB_PASSWORD are required"""
    return {
        'host': get_required('DB_HOST'),
        'database': get_required('DB_NAME'),
        'user': get_required('DB_USER'),
        'password': get_required('DB_PASSWORD'),
        'port': int(os.getenv('DB_PORT', '5432')),
    }


def pool_bounds():
    """Return (minconn, maxconn) for the database connection pool"""
    return int(os.getenv('DB_POOL_MIN', '1')), int(os.getenv('DB_POOL_MAX', '10'))
