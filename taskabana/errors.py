"""Error taxonomy for calls that cross the network boundary.

Every class carries the HTTP status the API answers with and a short
machine-readable code so clients can pick a recovery path:

- NetworkFailure: show a retry affordance, keep state unchanged.
- Unauthorized: prompt for re-authentication, do not retry the action.
- NotFound / Conflict: refetch the list and discard the stale plan.
- ValidationError: rejected before any upstream request is issued.
"""
from typing import Any, Optional


class TaskabanaError(Exception):
    status_code = 500
    code = 'internal_error'
    retry = False

    def __init__(self, detail: str = '', upstream_status: Optional[int] = None, payload: Any = None):
        super().__init__(detail or self.code)
        self.detail = detail or self.code
        self.upstream_status = upstream_status
        self.payload = payload

    def to_dict(self) -> dict:
        return {'error': self.code, 'detail': self.detail, 'retry': self.retry}


class NetworkFailure(TaskabanaError):
    status_code = 503
    code = 'network_failure'
    retry = True


class Unauthorized(TaskabanaError):
    status_code = 401
    code = 'unauthorized'


class NotFound(TaskabanaError):
    status_code = 404
    code = 'not_found'


class Conflict(TaskabanaError):
    status_code = 409
    code = 'conflict'


class ValidationError(TaskabanaError):
    status_code = 400
    code = 'validation_error'


class UpstreamError(TaskabanaError):
    status_code = 502
    code = 'upstream_error'
    retry = True


def error_for_status(status: int, detail: str = '', payload: Any = None) -> TaskabanaError:
    """Map an upstream HTTP status onto the taxonomy."""
    if status in (401, 403):
        cls = Unauthorized
    elif status == 404:
        cls = NotFound
    elif status in (409, 412):
        cls = Conflict
    elif status == 400:
        cls = ValidationError
    else:
        cls = UpstreamError
    return cls(detail or f'upstream answered {status}', upstream_status=status, payload=payload)
