from flask import jsonify
import logging


class RentMatchError(Exception):
    status_code = 400

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {'error': self.message}


class ValidationError(RentMatchError):
    status_code = 400


class AuthenticationError(RentMatchError):
    status_code = 401


class InsufficientCredits(RentMatchError):
    status_code = 402

    def __init__(self, required, available):
        super().__init__('Insufficient credits')
        self.required = required
        self.available = available

    def to_dict(self):
        return {'error': self.message, 'required': self.required, 'available': self.available}


class PermissionDenied(RentMatchError):
    status_code = 403


class NotFound(RentMatchError):
    status_code = 404


class Conflict(RentMatchError):
    status_code = 409


def register_error_handlers(app, db):
    @app.errorhandler(RentMatchError)
    def handle_service_error(err):
        db.session.rollback()
        logging.info("[ERROR] %s: %s", type(err).__name__, err.message)
        return jsonify(err.to_dict()), err.status_code

    @app.errorhandler(404)
    def handle_not_found(err):
        return jsonify({'error': 'Not found'}), 404

    @app.errorhandler(405)
    def handle_method_not_allowed(err):
        return jsonify({'error': 'Method not allowed'}), 405

    @app.errorhandler(500)
    def handle_internal_error(err):
        db.session.rollback()
        logging.exception("[ERROR] Unhandled exception")
        return jsonify({'error': 'Internal server error'}), 500
