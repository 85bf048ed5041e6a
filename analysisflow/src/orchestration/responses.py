"""
Coordinator Responses - Envelopes returned by every handler.

Three shapes:
- success:   {success: true, message, ...payload}
- error:     {error, status, details?, ...payload}
- cancelled: {success: false, message, canceled}

Errors default to HTTP 200 so agent workers and the UI always get the body
back; handlers pass 4xx/5xx explicitly where the caller must see a failure.
"""

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class CoordinatorResponse:
    """A handler result plus the HTTP status it should be rendered with."""
    body: dict = field(default_factory=dict)
    status_code: int = 200

    @property
    def success(self) -> bool:
        return self.body.get('success') is True

    @property
    def is_error(self) -> bool:
        return 'error' in self.body and self.body.get('success') is not True

    @property
    def is_cancelled(self) -> bool:
        return self.body.get('canceled') is True

    @property
    def message(self) -> Optional[str]:
        return self.body.get('message') or self.body.get('error')

    def get(self, key: str, default: Any = None) -> Any:
        return self.body.get(key, default)


def success_response(message: str, http_status: int = 200, **payload: Any) -> CoordinatorResponse:
    body = {'success': True, 'message': message}
    body.update(payload)
    return CoordinatorResponse(body=body, status_code=http_status)


def error_response(
    message: str,
    status: int = 200,
    details: Any = None,
    **payload: Any,
) -> CoordinatorResponse:
    body: dict = {'error': message, 'status': status}
    if details is not None:
        body['details'] = details
    body.update(payload)
    return CoordinatorResponse(body=body, status_code=status)


def cancelled_response(message: str, canceled: bool = True) -> CoordinatorResponse:
    return CoordinatorResponse(
        body={'success': False, 'message': message, 'canceled': canceled},
        status_code=200,
    )
