#!/usr/bin/env python3
"""Key Agent Protocol - JSON messages between a vault and an out-of-process agent.

One request per line, one response per line. Binary values (keys,
plaintext, ciphertext) travel base64-encoded.
"""

import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .errors import AgentError, DecryptionError, FormatError, UnknownKeyError
from .key_agent import CryptoAlgorithm, CryptoParams, KeyAgent

PROTOCOL_VERSION = "1"


@dataclass
class Request:
    """A request from a vault to the agent."""

    request_id: str
    action: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Response:
    """A response from the agent."""

    request_id: str
    status: str  # "ok" or "error"
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, str]] = None


ERROR_CODES = {
    "OK": "Success",
    "UNKNOWN_KEY": "Key not found",
    "DECRYPTION_FAILED": "Data could not be decrypted",
    "INVALID_REQUEST": "Malformed request",
    "AGENT_ERROR": "Internal agent error",
    "AGENT_NOT_RUNNING": "Key agent not running",
    "TIMEOUT": "Request timed out",
    "CONNECTION_ERROR": "Connection error",
}


def encode_bytes(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def decode_bytes(value: Any, name: str) -> bytes:
    """Decode a base64 payload field.

    Raises:
        ValueError: If the field is missing or not valid base64

    """
    if not isinstance(value, str):
        raise ValueError(f"Missing {name}")
    try:
        return base64.b64decode(value, validate=True)
    except binascii.Error as e:
        raise ValueError(f"Invalid base64 in {name}") from e


def parse_request(data: str) -> Request:
    """Parse a JSON request line.

    Raises:
        ValueError: If JSON is invalid or missing required fields

    """
    obj = json.loads(data)
    if not isinstance(obj, dict) or "action" not in obj:
        raise ValueError("Missing required field: action")
    if not isinstance(obj["action"], str):
        raise ValueError("action must be a string")

    payload = obj.get("payload") or {}
    if not isinstance(payload, dict):
        raise ValueError("payload must be an object")

    return Request(
        request_id=obj.get("request_id", ""),
        action=obj["action"],
        payload=payload,
    )


def serialize_request(request: Request) -> str:
    return json.dumps({
        "request_id": request.request_id,
        "action": request.action,
        "payload": request.payload,
    })


def serialize_response(response: Response) -> str:
    obj: Dict[str, Any] = {
        "request_id": response.request_id,
        "status": response.status,
    }
    if response.data:
        obj["data"] = response.data
    if response.error:
        obj["error"] = response.error
    return json.dumps(obj)


def parse_response(data: str) -> Response:
    obj = json.loads(data)
    return Response(
        request_id=obj.get("request_id", ""),
        status=obj.get("status", "error"),
        data=obj.get("data") or {},
        error=obj.get("error"),
    )


def error_response(request_id: str, code: str, message: Optional[str] = None) -> Response:
    return Response(
        request_id=request_id,
        status="error",
        error={
            "code": code,
            "message": message or ERROR_CODES.get(code, "Unknown error"),
        },
    )


def ok_response(request_id: str, data: Optional[Dict[str, Any]] = None) -> Response:
    return Response(request_id=request_id, status="ok", data=data or {})


def raise_for_error(response: Response) -> Dict[str, Any]:
    """Return the response data, or raise the exception its error code names."""
    if response.status == "ok":
        return response.data

    error = response.error or {}
    code = error.get("code", "AGENT_ERROR")
    message = error.get("message", ERROR_CODES.get(code, "Unknown error"))

    if code == "UNKNOWN_KEY":
        raise UnknownKeyError(error.get("key_id", ""))
    if code == "DECRYPTION_FAILED":
        raise DecryptionError(message)
    if code == "INVALID_REQUEST":
        raise ValueError(message)
    raise AgentError(f"{code}: {message}")


def _params(payload: Dict[str, Any]) -> CryptoParams:
    algorithm = payload.get("algorithm", CryptoAlgorithm.AES128_OPENSSL_KEY.value)
    return CryptoParams(CryptoAlgorithm(algorithm))


async def handle_request(request: Request, agent: KeyAgent) -> Response:
    """Route a request to the agent and build the response."""
    handlers = {
        "ping": handle_ping,
        "add_key": handle_add_key,
        "list_keys": handle_list_keys,
        "forget_keys": handle_forget_keys,
        "encrypt": handle_encrypt,
        "decrypt": handle_decrypt,
    }

    handler = handlers.get(request.action)
    if not handler:
        return error_response(request.request_id, "INVALID_REQUEST", f"Unknown action: {request.action}")

    try:
        return await handler(request, agent)
    except UnknownKeyError as e:
        response = error_response(request.request_id, "UNKNOWN_KEY", str(e))
        response.error["key_id"] = e.key_id
        return response
    except FormatError as e:
        return error_response(request.request_id, "DECRYPTION_FAILED", str(e))
    except ValueError as e:
        return error_response(request.request_id, "INVALID_REQUEST", str(e))


async def handle_ping(request: Request, agent: KeyAgent) -> Response:
    return ok_response(request.request_id, {"version": PROTOCOL_VERSION, "status": "ok"})


async def handle_add_key(request: Request, agent: KeyAgent) -> Response:
    key_id = request.payload.get("id")
    if not key_id:
        return error_response(request.request_id, "INVALID_REQUEST", "Missing id")

    await agent.add_key(key_id, decode_bytes(request.payload.get("key"), "key"))
    return ok_response(request.request_id, {"added": True})


async def handle_list_keys(request: Request, agent: KeyAgent) -> Response:
    return ok_response(request.request_id, {"keys": await agent.list_keys()})


async def handle_forget_keys(request: Request, agent: KeyAgent) -> Response:
    await agent.forget_keys()
    return ok_response(request.request_id, {"forgotten": True})


async def handle_encrypt(request: Request, agent: KeyAgent) -> Response:
    key_id = request.payload.get("id")
    if not key_id:
        return error_response(request.request_id, "INVALID_REQUEST", "Missing id")

    plaintext = decode_bytes(request.payload.get("data"), "data")
    ciphertext = await agent.encrypt(key_id, plaintext, _params(request.payload))
    return ok_response(request.request_id, {"data": encode_bytes(ciphertext)})


async def handle_decrypt(request: Request, agent: KeyAgent) -> Response:
    key_id = request.payload.get("id")
    if not key_id:
        return error_response(request.request_id, "INVALID_REQUEST", "Missing id")

    ciphertext = decode_bytes(request.payload.get("data"), "data")
    plaintext = await agent.decrypt(key_id, ciphertext, _params(request.payload))
    return ok_response(request.request_id, {"data": encode_bytes(plaintext)})
