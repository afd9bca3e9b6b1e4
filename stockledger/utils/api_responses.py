from flask import jsonify, request, Response
from typing import Any, Dict, Optional, List


class APIResponse:
    """Standardized API response handler"""

    @staticmethod
    def success(data: Any = None, message: str = "Success", status_code: int = 200, **extra) -> Response:
        """Standard success response"""
        response_data = {
            'success': True,
            'message': message,
            'data': data
        }
        response_data.update(extra)
        return jsonify(response_data), status_code

    @staticmethod
    def error(message: str, errors: Optional[Dict] = None, status_code: int = 400,
              error_type: Optional[str] = None) -> Response:
        """Standard error response"""
        response_data = {
            'success': False,
            'message': message,
            'errors': errors or {}
        }
        if error_type:
            response_data['error_type'] = error_type
        return jsonify(response_data), status_code

    @staticmethod
    def validation_error(errors: Dict[str, List[str]], message: str = "Validation failed") -> Response:
        """Validation error response"""
        return APIResponse.error(
            message=message,
            errors=errors,
            status_code=422,
            error_type='validation_error'
        )

    @staticmethod
    def not_found(resource: str = "Resource") -> Response:
        """404 error response"""
        return APIResponse.error(
            message=f"{resource} not found",
            status_code=404,
            error_type='not_found'
        )

    @staticmethod
    def forbidden(message: str = "Access denied") -> Response:
        """403 error response"""
        return APIResponse.error(
            message=message,
            status_code=403,
            error_type='permission_denied'
        )

    @staticmethod
    def handle_request_content() -> dict:
        """Smart request content handling"""
        if request.is_json:
            return request.get_json(silent=True) or {}
        elif request.form:
            return request.form.to_dict()
        else:
            return {}


def idempotency_key_from_request(payload: Optional[dict] = None) -> Optional[str]:
    """Read the caller's idempotency key from the header, falling back to the body."""
    header_value = request.headers.get('Idempotency-Key')
    if header_value and header_value.strip():
        return header_value.strip()
    if payload:
        body_value = payload.get('idempotency_key')
        if isinstance(body_value, str) and body_value.strip():
            return body_value.strip()
    return None


def require_idempotency_key(payload: Optional[dict] = None) -> str:
    """Like ``idempotency_key_from_request`` but a missing key is a validation error."""
    from ..services.errors import ValidationError

    key = idempotency_key_from_request(payload)
    if key is None:
        raise ValidationError.for_field(
            'idempotency_key', "Provide an Idempotency-Key header or an idempotency_key field"
        )
    return key


__all__ = ['APIResponse', 'idempotency_key_from_request', 'require_idempotency_key']
