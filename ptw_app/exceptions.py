"""
Error taxonomy for permit operations.

Every error carries a machine-readable ``kind`` and the HTTP status the JSON
endpoints answer with. None of them is fatal: views turn them into responses.
"""


class PermitError(Exception):
    kind = 'error'
    status_code = 500

    def __init__(self, message, details=None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def as_dict(self):
        return {'kind': self.kind, 'message': self.message, 'details': self.details}


class ValidationError(PermitError):
    kind = 'validation_error'
    status_code = 400


class Forbidden(PermitError):
    kind = 'forbidden'
    status_code = 403


class NotFound(PermitError):
    kind = 'not_found'
    status_code = 404


class PolicyViolation(PermitError):
    kind = 'policy_violation'
    status_code = 409

    def __init__(self, guard, message, details=None):
        super().__init__(message, details)
        self.guard = guard

    def as_dict(self):
        data = super().as_dict()
        data['guard'] = self.guard
        return data


class InvalidTransition(PolicyViolation):
    kind = 'invalid_transition'

    def __init__(self, message, details=None):
        super().__init__('invalid_transition', message, details)


class ConflictError(PermitError):
    kind = 'conflict'
    status_code = 409


class ExportError(PermitError):
    kind = 'export_error'
    status_code = 500

    def __init__(self, message, cause=None):
        super().__init__(message, {'cause': str(cause)} if cause else None)
        self.cause = cause
