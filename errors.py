"""
Error taxonomy shared by the domain modules and the JSON API.

Domain code raises these; ``register_error_handlers`` turns them into
``{"error": "<message>"}`` responses with the matching HTTP status.
Datastore exceptions are rolled back, logged with traceback and answered
with a generic 500 so internals never reach the client.
"""

from functools import wraps

from flask import current_app, jsonify, request
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from models import db


class BackofficeError(Exception):
    """Base class for errors that map to an HTTP status."""
    status_code = 500

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class ValidationFailure(BackofficeError):
    """Missing or invalid input (400)."""
    status_code = 400


class NoBillableEntries(ValidationFailure):
    """None of the requested time entries can be invoiced."""

    def __init__(self, message='No billable time entries found'):
        super().__init__(message)


class NotFound(BackofficeError):
    status_code = 404


class ReferenceConflict(BackofficeError):
    """Row is still referenced by other records and cannot be removed (409)."""
    status_code = 409


class StorageFailure(BackofficeError):
    """Datastore error; the message is generic, e.g. 'Failed to create invoice'."""
    status_code = 500


def storage_errors(message):
    """Decorator: report datastore errors raised by a view as StorageFailure(message)."""
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            try:
                return f(*args, **kwargs)
            except SQLAlchemyError as exc:
                db.session.rollback()
                current_app.logger.exception('%s (%s %s)', message, request.method, request.path)
                raise StorageFailure(message) from exc
        return decorated
    return decorator


def register_error_handlers(app):
    """Install JSON error handlers on the app."""

    @app.errorhandler(BackofficeError)
    def handle_backoffice_error(error):
        return jsonify({'error': error.message}), error.status_code

    @app.errorhandler(SQLAlchemyError)
    def handle_storage_error(error):
        db.session.rollback()
        app.logger.exception('Datastore error on %s %s', request.method, request.path)
        return jsonify({'error': 'Internal storage error'}), 500

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        if request.path.startswith('/api/'):
            return jsonify({'error': error.description}), error.code
        return error
