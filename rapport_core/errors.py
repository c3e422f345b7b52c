"""
RAPPORT Error Taxonomy
======================
Every failure a component can report to the API layer. Each error carries the
HTTP status the Session API answers with; the message is safe to show clients.
"""


class RapportError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInput(RapportError):
    """Malformed or missing request fields."""
    status_code = 400


class Unauthorized(RapportError):
    """Bad or missing admin credential."""
    status_code = 401


class NotFound(RapportError):
    """Unknown session or scenario."""
    status_code = 404


class UpstreamFailure(RapportError):
    """The language model, voice or speech service failed."""
    status_code = 500


class Internal(RapportError):
    """Unexpected store or logic error."""
    status_code = 500


class ServiceUnavailable(RapportError):
    """An optional dependency is not configured or not installed."""
    status_code = 503
