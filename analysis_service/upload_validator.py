#!/usr/bin/env python3
"""
Upload handling for the analyze endpoint

Saves the uploaded image into the uploads folder for the lifetime of one
request and checks the request preconditions before anything is sent to
the inference service.
"""

import os
import math
import uuid
import logging
from contextlib import contextmanager
from typing import Dict, Any, Optional

from werkzeug.utils import secure_filename

from .config import DEFAULT_CONFIDENCE, DEFAULT_IOU
from .errors import (
    FilePermission,
    FileUnavailable,
    InvalidParameter,
    InvalidProjectId,
    MissingFile,
    MissingModel,
    MissingProjectId,
    ProjectNotFound,
)

logger = logging.getLogger(__name__)


def remove_upload(filepath: str) -> None:
    """Remove a saved upload if it is still on disk"""
    try:
        if os.path.exists(filepath):
            os.remove(filepath)
            logger.debug(f"Cleaned up temporary file: {filepath}")
    except OSError as e:
        logger.warning(f"Failed to cleanup file {filepath}: {e}")


@contextmanager
def received_upload(uploaded_file, upload_folder: str):
    """Save an uploaded file, yield its path, delete it on exit.

    Yields None when the request carried no file part. The saved file is
    removed on every exit path, including failures raised by the caller.
    """
    if uploaded_file is None or not uploaded_file.filename:
        yield None
        return

    _, ext = os.path.splitext(secure_filename(uploaded_file.filename))
    filepath = os.path.join(upload_folder, uuid.uuid4().hex + (ext.lower() or '.jpg'))

    try:
        try:
            uploaded_file.save(filepath)
        except PermissionError as e:
            logger.error(f"File permission error saving upload: {e}")
            raise FilePermission()
        except OSError as e:
            logger.error(f"Could not save upload to {upload_folder}: {e}")
            raise FileUnavailable()
        yield filepath
    finally:
        remove_upload(filepath)


def check_file_readable(filepath: str) -> None:
    """Raise if a received upload is missing from disk or cannot be read"""
    if not os.path.exists(filepath):
        raise FileUnavailable()
    if not os.access(filepath, os.R_OK):
        logger.error(f"File permission error: {filepath} is not readable")
        raise FilePermission()


def parse_project_id(raw: Optional[str]) -> uuid.UUID:
    """Parse the project reference, raising a client error when absent or malformed"""
    if raw is None or not str(raw).strip():
        raise MissingProjectId()
    try:
        return uuid.UUID(str(raw).strip())
    except ValueError:
        raise InvalidProjectId(f"project_id is not a valid identifier: {raw}")


def parse_threshold(name: str, raw: Optional[str], default: float) -> float:
    """Parse an optional numeric threshold, falling back to the default"""
    if raw is None or str(raw).strip() == '':
        return default
    try:
        value = float(raw)
    except ValueError:
        raise InvalidParameter(f"{name} must be a number")
    if not math.isfinite(value):
        raise InvalidParameter(f"{name} must be a finite number")
    return value


def validate_upload(form, filepath: Optional[str], store) -> Dict[str, Any]:
    """Check the analyze request preconditions in order.

    1. a received file must exist on disk and be readable
    2. project_id must be present, well formed, and resolve to a project
    3. a file must have been uploaded at all
    4. model must be present

    Returns the normalized request parameters.
    """
    if filepath:
        check_file_readable(filepath)

    project_id = parse_project_id(form.get('project_id'))
    if not store.project_exists(project_id):
        raise ProjectNotFound()

    if not filepath:
        raise MissingFile()

    model = (form.get('model') or '').strip()
    if not model:
        raise MissingModel()

    return {
        'project_id': project_id,
        'model': model,
        'confidence': parse_threshold('confidence', form.get('confidence'), DEFAULT_CONFIDENCE),
        'iou': parse_threshold('iou', form.get('iou'), DEFAULT_IOU),
        'file_path': filepath,
    }
