"""Error taxonomy for the expense service.

Every error raised by the workflow engine or the request layer derives from
ExpenseError so handlers can tell the kinds apart by `kind` and HTTP status.
"""
from flask import jsonify
from werkzeug.exceptions import HTTPException

from expenseflow.model import db


class ExpenseError(Exception):
    status_code = 500
    kind = 'error'

    def __init__(self, message=None, errors=None):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__
        self.errors = errors

    def to_dict(self):
        body = {'status': 'error', 'kind': self.kind, 'message': self.message}
        if self.errors:
            body['errors'] = self.errors
        return body


class ValidationError(ExpenseError):
    """Validation failed"""
    status_code = 400
    kind = 'validation_error'


class NotFound(ExpenseError):
    """Resource not found"""
    status_code = 404
    kind = 'not_found'


class Forbidden(ExpenseError):
    """Access denied"""
    status_code = 403
    kind = 'forbidden'


class NotCurrentApprover(Forbidden):
    """You are not the current approver for this expense"""
    kind = 'not_current_approver'


class InvalidState(ExpenseError):
    """Operation not allowed in the current state"""
    status_code = 400
    kind = 'invalid_state'


class ExpenseNotPending(InvalidState):
    """Expense is no longer pending approval"""
    kind = 'expense_not_pending'


class DecisionConflict(InvalidState):
    """Expense was updated by another decision"""
    status_code = 409
    kind = 'decision_conflict'


class ServiceUnavailable(ExpenseError):
    """External service unavailable"""
    status_code = 503
    kind = 'service_unavailable'


class ConversionFailure(ServiceUnavailable):
    """Currency conversion failed"""
    kind = 'conversion_failure'


def register_error_handlers(app):
    @app.errorhandler(ExpenseError)
    def handle_expense_error(error):
        db.session.rollback()
        if error.status_code >= 500:
            app.logger.error('%s: %s', error.kind, error.message)
        else:
            app.logger.info('%s: %s', error.kind, error.message)
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        db.session.rollback()
        body = {'status': 'error', 'kind': error.name.lower().replace(' ', '_'), 'message': error.description}
        return jsonify(body), error.code
