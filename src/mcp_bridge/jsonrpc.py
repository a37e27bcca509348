"""JSON-RPC 2.0 envelopes, error codes and request decoding."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

JsonDict = Dict[str, Any]


class JsonNumber(float):
    """A decoded JSON number that remembers how it was written."""

    text: str

    def __new__(cls, text: str) -> "JsonNumber":
        number = super().__new__(cls, text)
        number.text = text
        return number


@dataclass(frozen=True)
class JsonRpcRequest:
    method: str
    params: Any = None
    id: Any = None
    jsonrpc: str = "2.0"


@dataclass(frozen=True)
class JsonRpcError:
    code: int
    message: str
    data: Any = None

    def to_dict(self) -> JsonDict:
        error: JsonDict = {"code": self.code, "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error


@dataclass(frozen=True)
class JsonRpcResponse:
    id: Any = None
    result: Any = None
    error: Optional[JsonRpcError] = None
    jsonrpc: str = "2.0"

    def to_dict(self) -> JsonDict:
        response: JsonDict = {"jsonrpc": self.jsonrpc, "id": self.id}
        if self.error is not None:
            response["error"] = self.error.to_dict()
        else:
            response["result"] = self.result
        return response

    @classmethod
    def failure(cls, req_id: Any, code: int, message: str, data: Any = None) -> "JsonRpcResponse":
        return cls(id=req_id, error=JsonRpcError(code=code, message=message, data=data))


class JsonRpcException(Exception):
    """Base for errors that map directly onto a JSON-RPC error object."""

    code = INTERNAL_ERROR

    def __init__(self, message: str, *, req_id: Any = None, data: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.req_id = req_id
        self.data = data

    def to_response(self) -> JsonRpcResponse:
        return JsonRpcResponse.failure(self.req_id, self.code, self.message, self.data)


class JsonRpcCodecError(JsonRpcException, ValueError):
    def __init__(self, code: int, message: str, *, req_id: Any = None, data: Any = None) -> None:
        super().__init__(message, req_id=req_id, data=data)
        self.code = code


class MethodNotFoundError(JsonRpcException):
    code = METHOD_NOT_FOUND


class InvalidParamsError(JsonRpcException):
    code = INVALID_PARAMS


def decode_request(payload: Union[str, bytes]) -> JsonRpcRequest:
    """Decode one JSON-RPC request body.

    Checks run in a fixed order: parse, envelope version, method.
    """
    try:
        raw = json.loads(payload, parse_float=JsonNumber)
    except ValueError as exc:
        raise JsonRpcCodecError(PARSE_ERROR, "Parse error", data=str(exc)) from exc

    if not isinstance(raw, dict):
        raise JsonRpcCodecError(INVALID_REQUEST, "Invalid request: expected a JSON object")

    req_id = raw.get("id")
    if raw.get("jsonrpc") != "2.0":
        raise JsonRpcCodecError(
            INVALID_REQUEST, "Invalid request: expected jsonrpc 2.0", req_id=req_id
        )

    method = raw.get("method")
    if not isinstance(method, str) or not method:
        raise JsonRpcCodecError(
            INVALID_REQUEST, "Invalid request: missing method", req_id=req_id
        )

    return JsonRpcRequest(method=method, params=raw.get("params"), id=req_id)


def encode_response(response: JsonRpcResponse) -> str:
    return json.dumps(response.to_dict(), ensure_ascii=False, separators=(",", ":"))
