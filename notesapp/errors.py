import traceback

from flask import current_app, jsonify, request
from werkzeug.exceptions import HTTPException


class ApiError(Exception):
    status_code = 500
    message = 'Internal server error'

    def __init__(self, message=None, errors=None, data=None):
        super().__init__(message or self.message)
        if message is not None:
            self.message = message
        self.errors = errors
        self.data = data

    def to_dict(self):
        body = {'success': False, 'message': self.message}
        if self.errors:
            body['errors'] = self.errors
        if self.data is not None:
            body['data'] = self.data
        return body


class BadRequest(ApiError):
    status_code = 400
    message = 'Bad request'


class ValidationFailed(BadRequest):
    message = 'Validation errors'

    @classmethod
    def from_marshmallow(cls, err):
        return cls(errors=flatten_errors(err.messages))


class Unauthorized(ApiError):
    status_code = 401
    message = 'Access denied'


class NotFound(ApiError):
    status_code = 404
    message = 'Not found'


class RateLimited(ApiError):
    status_code = 429
    message = 'Too many requests, please try again later.'

    def __init__(self, message=None, retry_after=None):
        super().__init__(message)
        self.retry_after = retry_after


class UpstreamUnavailable(ApiError):
    status_code = 500
    message = 'Service temporarily unavailable'


def flatten_errors(messages, prefix=''):
    """Turn marshmallow's nested error dict into a flat list of field errors."""
    flat = []
    if isinstance(messages, dict):
        for key, value in messages.items():
            field = f'{prefix}.{key}' if prefix else str(key)
            flat.extend(flatten_errors(value, field))
    elif isinstance(messages, list):
        for item in messages:
            if isinstance(item, (dict, list)):
                flat.extend(flatten_errors(item, prefix))
            else:
                flat.append({'field': prefix or '_schema', 'message': item})
    else:
        flat.append({'field': prefix or '_schema', 'message': str(messages)})
    return flat


def error_response(message, status, **extra):
    body = {'success': False, 'message': message}
    body.update(extra)
    return jsonify(body), status


def register_error_handlers(app):
    @app.errorhandler(ApiError)
    def handle_api_error(err):
        response = jsonify(err.to_dict())
        response.status_code = err.status_code
        if isinstance(err, RateLimited) and err.retry_after:
            response.headers['Retry-After'] = str(err.retry_after)
        return response

    @app.errorhandler(HTTPException)
    def handle_http_exception(err):
        if err.code == 404:
            return error_response(f'Route {request.path} not found', 404)
        return error_response(err.description or err.name, err.code)

    @app.errorhandler(Exception)
    def handle_unexpected(err):
        current_app.logger.exception('Unhandled error: %s', err)
        extra = {}
        if not current_app.config['IS_PRODUCTION']:
            extra['stack'] = traceback.format_exc()
        return error_response('Internal server error', 500, **extra)
