from flask import jsonify, request
from werkzeug.exceptions import HTTPException


class ModNetError(Exception):
    """Base error; carries the HTTP status the API answers with."""

    status = 500

    def __init__(self, message, status=None):
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status


class ValidationError(ModNetError):
    status = 400


class AuthError(ModNetError):
    status = 401


class ForbiddenError(ModNetError):
    status = 403


class NotFoundError(ModNetError):
    status = 404


class ConflictError(ModNetError):
    status = 409


class GoneError(ModNetError):
    """The thing existed but has been erased, e.g. an attachment behind a still valid link."""

    status = 410


def json_body():
    """The request's JSON object, or {} when the body is empty or not JSON."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def int_field(data, name):
    """An integer id field; None when missing or null."""
    value = data.get(name)
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f'{name} must be a number')
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{name} must be a number')


def text_field(data, name):
    """A stripped string field; missing or null reads as ''."""
    value = data.get(name)
    if value is None:
        return ''
    if not isinstance(value, str):
        raise ValidationError(f'{name} must be a string')
    return value.strip()


def register_error_handlers(app):
    """Every failure leaves the API as {"error": message}."""

    @app.errorhandler(ModNetError)
    def handle_modnet_error(error):
        return jsonify({'error': error.message}), error.status

    @app.errorhandler(404)
    def handle_not_found(error):
        return jsonify({'error': 'Route not found'}), 404

    @app.errorhandler(429)
    def handle_rate_limited(error):
        return jsonify({'error': f'Too many requests. Limit: {error.description}. Please try again later.'}), 429

    @app.errorhandler(Exception)
    def handle_unexpected(error):
        if isinstance(error, HTTPException):
            return jsonify({'error': error.description}), error.code
        app.logger.exception('Unhandled error: %s', error)
        return jsonify({'error': 'Internal server error'}), 500
