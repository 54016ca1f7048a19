"""
Standardized response envelope utilities.

Every response body has the shape
``{"success": bool, "data"?: any, "error"?: str, "details"?: [...]}``.
"""

from typing import Any, Dict, List, Optional

from fastapi.responses import JSONResponse


def success_envelope(data: Any = None) -> Dict[str, Any]:
    """Wrap a handler result in the success envelope."""
    return {"success": True, "data": data}


def create_error_response(
    message: str,
    status_code: int = 500,
    details: Optional[List[Any]] = None,
    correlation_id: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """
    Create an error response in the standard envelope.

    Args:
        message: Human-readable error message
        status_code: HTTP status code
        details: Optional list of field-level problems
        correlation_id: Request correlation ID, echoed in ``X-Correlation-ID``
        headers: Extra response headers

    Returns:
        JSONResponse carrying the error envelope
    """
    payload: Dict[str, Any] = {"success": False, "error": message}
    if details:
        payload["details"] = details

    response_headers = dict(headers or {})
    if correlation_id:
        response_headers["X-Correlation-ID"] = correlation_id

    return JSONResponse(status_code=status_code, content=payload, headers=response_headers)


def format_validation_errors(errors: List[Any]) -> List[Dict[str, Any]]:
    """
    Flatten Pydantic/FastAPI validation errors into envelope ``details``.

    Args:
        errors: Errors from ``RequestValidationError.errors()``

    Returns:
        List of ``{"field", "message", "location"}`` dictionaries
    """
    details = []
    for error in errors:
        if isinstance(error, dict):
            location = [str(part) for part in error.get("loc", ())]
            field = location[-1] if location else "unknown"
            details.append(
                {
                    "field": field,
                    "message": error.get("msg", "Validation error"),
                    "location": location[0] if location else None,
                }
            )
        else:
            details.append({"field": "unknown", "message": str(error), "location": None})
    return details
