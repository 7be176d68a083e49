from datetime import datetime,timezone
from typing import Any, Dict, Optional, Union

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from orderflow.common.constants import request_id_ctx

def now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Some drivers hand back naive datetimes for tz columns; they are stored as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def audit_line(message: str, at: Optional[datetime] = None) -> str:
    stamp = (at or now()).strftime("%Y-%m-%dT%H:%M:%SZ")
    return f"[{stamp}] {message}\n"


def build_success(data: Any, request_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "status": "ok",
        "data": jsonable_encoder(data),
        "error": None,
        "request_id": request_id or request_id_ctx.get(),
    }

def build_error(code: Union[str, int] = "UNKNOWN_ERROR",
                details: Optional[Any] = None,
                request_id: Optional[str] = None) -> Dict[str, Any]:

    return {
        "status": "error",
        "data": None,
        "error": {"code": code, "details": jsonable_encoder(details)},
        "request_id": request_id or request_id_ctx.get(),
    }

def json_ok(content: Dict[str, Any], status_code: int = 200,headers = None) -> JSONResponse:
    return JSONResponse(content, status_code=status_code,headers=headers)

def json_error(content: Dict[str, Any], status_code: int = 500, headers=None) -> JSONResponse:
    return JSONResponse(content, status_code=status_code, headers=headers)

def success_response(data: Any, status_code: int = 200,headers: Optional[Dict[str, Any]] = None) -> JSONResponse:
    return json_ok(build_success(data), status_code=status_code,headers=headers)
