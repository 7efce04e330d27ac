from __future__ import annotations

from dataclasses import asdict, is_dataclass
import re
from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request, Response
from pydantic import BaseModel


API_VERSION = "v1"

# Request ids end up in key=value log lines and audit rows; anything else is replaced.
_REQUEST_ID = re.compile(r"[A-Za-z0-9._:-]{1,128}")

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id is None:
        supplied = request.headers.get("X-Request-Id", "")
        request_id = supplied if _REQUEST_ID.fullmatch(supplied) else uuid4().hex
        request.state.request_id = request_id
    return request_id


def _jsonable(data: Any) -> Any:
    # Routes return pydantic models or service dataclasses such as DeployOutcome.
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json")
    if is_dataclass(data) and not isinstance(data, type):
        return asdict(data)
    return data


def success_response(
    *,
    request: Request,
    data: Any,
    response: Response | None = None,
    sensitive: bool = False,
) -> dict[str, Any]:
    """Wrap ``data`` in the success envelope.

    ``sensitive`` marks bodies that carry plaintext credentials or one-time
    retrieval URLs; those are sent with ``Cache-Control: no-store``.
    """
    if sensitive:
        if response is None:
            raise ValueError("sensitive responses need the Response to set cache headers on")
        response.headers["Cache-Control"] = "no-store"
    meta = ResponseMeta(request_id=get_request_id(request))
    return {"data": _jsonable(data), "meta": meta.model_dump()}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    meta = ResponseMeta(request_id=get_request_id(request))
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": meta.model_dump()}
