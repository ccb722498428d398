"""
Failure kinds raised by the analysis pipeline.

Each carries the HTTP status the REST layer answers with, so the view only
has to translate `AnalysisError` into a JSON body.
"""


class AnalysisError(Exception):
    """Base class for failures reported to the caller"""

    status_code = 500
    default_message = "Error processing image."

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)


# Client errors

class MissingProjectId(AnalysisError):
    status_code = 400
    default_message = "project_id is required"


class InvalidProjectId(AnalysisError):
    status_code = 400
    default_message = "project_id is not a valid identifier"


class MissingFile(AnalysisError):
    status_code = 400
    default_message = "No file uploaded."


class MissingModel(AnalysisError):
    status_code = 400
    default_message = "model is required"


class InvalidParameter(AnalysisError):
    status_code = 400
    default_message = "Invalid parameter"


# Not found

class ProjectNotFound(AnalysisError):
    status_code = 404
    default_message = "Project does not exist."


# Resource errors

class FileUnavailable(AnalysisError):
    status_code = 500
    default_message = "Uploaded file not found."


class FilePermission(AnalysisError):
    status_code = 500
    default_message = "File permission error. Please check uploads directory permissions."


# Upstream errors

class InvalidInferenceResponse(AnalysisError):
    status_code = 500
    default_message = "Invalid response from model API."


class InferenceTimeout(InvalidInferenceResponse):
    default_message = "Model API did not respond in time."
