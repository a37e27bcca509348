from __future__ import annotations

import json

import pytest

from mcp_bridge.jsonrpc import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    InvalidParamsError,
    JsonRpcCodecError,
    JsonRpcRequest,
    JsonNumber,
    JsonRpcResponse,
    MethodNotFoundError,
    decode_request,
    encode_response,
)


def test_decode_request() -> None:
    request = decode_request(b'{"jsonrpc": "2.0", "id": "a1", "method": "tools/list", "params": {}}')

    assert request == JsonRpcRequest(method="tools/list", params={}, id="a1")


def test_decode_notification_has_no_id() -> None:
    request = decode_request('{"jsonrpc": "2.0", "method": "notifications/initialized"}')

    assert request.id is None
    assert request.params is None


@pytest.mark.parametrize(
    ("payload", "code", "message", "req_id"),
    [
        (b"{not json", PARSE_ERROR, "Parse error", None),
        (b"\xff\xfe", PARSE_ERROR, "Parse error", None),
        (b"[]", INVALID_REQUEST, "Invalid request: expected a JSON object", None),
        (b'"text"', INVALID_REQUEST, "Invalid request: expected a JSON object", None),
        (b'{"id": 3, "method": "tools/list"}', INVALID_REQUEST, "Invalid request: expected jsonrpc 2.0", 3),
        (b'{"jsonrpc": "1.0", "id": 4, "method": "x"}', INVALID_REQUEST, "Invalid request: expected jsonrpc 2.0", 4),
        (b'{"jsonrpc": "2.0", "id": 5}', INVALID_REQUEST, "Invalid request: missing method", 5),
        (b'{"jsonrpc": "2.0", "id": 6, "method": ""}', INVALID_REQUEST, "Invalid request: missing method", 6),
        (b'{"jsonrpc": "2.0", "id": 7, "method": 12}', INVALID_REQUEST, "Invalid request: missing method", 7),
    ],
)
def test_decode_errors(payload: bytes, code: int, message: str, req_id: object) -> None:
    with pytest.raises(JsonRpcCodecError) as excinfo:
        decode_request(payload)

    response = excinfo.value.to_response().to_dict()
    assert response["id"] == req_id
    assert response["error"]["code"] == code
    assert response["error"]["message"] == message


def test_success_and_error_envelopes_are_exclusive() -> None:
    success = JsonRpcResponse(id=1, result={"tools": []}).to_dict()
    failure = JsonRpcResponse.failure(2, INTERNAL_ERROR, "Internal error").to_dict()

    assert success == {"jsonrpc": "2.0", "id": 1, "result": {"tools": []}}
    assert failure == {"jsonrpc": "2.0", "id": 2, "error": {"code": -32603, "message": "Internal error"}}


def test_exception_codes() -> None:
    assert MethodNotFoundError("nope").to_response().error.code == METHOD_NOT_FOUND
    error = InvalidParamsError("bad", req_id=9, data=[{"loc": ["name"]}]).to_response()
    assert error.to_dict()["error"] == {"code": INVALID_PARAMS, "message": "bad", "data": [{"loc": ["name"]}]}


def test_encode_response_keeps_unicode() -> None:
    encoded = encode_response(JsonRpcResponse(id=1, result={"text": "Grüße"}))

    assert "Grüße" in encoded
    assert json.loads(encoded)["result"]["text"] == "Grüße"


def test_decoded_numbers_keep_their_written_form() -> None:
    request = decode_request(b'{"jsonrpc":"2.0","id":1,"method":"m","params":{"p":1.50,"e":1e2,"n":3}}')

    price, exponent = request.params["p"], request.params["e"]
    assert isinstance(price, JsonNumber)
    assert (price.text, exponent.text) == ("1.50", "1e2")
    assert price == 1.5
    assert exponent == 100.0
    assert request.params["n"] == 3
    assert type(request.params["n"]) is int
