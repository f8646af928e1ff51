from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class EmployeeNotFoundError(ApiError):
    def __init__(self, employee_id: int):
        super().__init__(404, "EMPLOYEE_NOT_FOUND", f"Employee {employee_id} not found.")
        self.employee_id = employee_id


class EmployeeInactiveError(ApiError):
    def __init__(self, employee_id: int):
        super().__init__(403, "EMPLOYEE_INACTIVE", "Inactive employee cannot perform attendance actions.")
        self.employee_id = employee_id


class TenantMismatchError(ApiError):
    def __init__(self, entity_type: str, entity_id: int):
        super().__init__(403, "TENANT_MISMATCH", f"{entity_type} {entity_id} does not belong to this tenant.")
        self.entity_type = entity_type
        self.entity_id = entity_id


class SessionNotFoundError(ApiError):
    def __init__(self, session_id: int):
        super().__init__(404, "SESSION_NOT_FOUND", f"Attendance session {session_id} not found.")
        self.session_id = session_id


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(request: Request, *, status_code: int, code: str, message: str) -> JSONResponse:
    payload = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
        }
    }
    return JSONResponse(status_code=status_code, content=payload)
