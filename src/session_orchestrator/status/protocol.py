"""Content-Length framed JSON messages, as used by LSP and MCP stdio."""

import asyncio
import json
from typing import BinaryIO

MAX_MESSAGE_BYTES = 1024 * 1024


class ProtocolError(Exception):
    """Raised for malformed frames."""


def encode_message(message: dict) -> bytes:
    body = json.dumps(message, separators=(",", ":")).encode("utf-8")
    return f"Content-Length: {len(body)}\r\n\r\n".encode("ascii") + body


def _parse_header(line: bytes, headers: dict[str, str]):
    try:
        text = line.decode("ascii")
    except UnicodeDecodeError as e:
        raise ProtocolError("Non-ASCII header") from e
    name, sep, value = text.partition(":")
    if not sep:
        raise ProtocolError(f"Malformed header: {text!r}")
    headers[name.strip().lower()] = value.strip()


def _content_length(headers: dict[str, str]) -> int:
    if "content-length" not in headers:
        raise ProtocolError("Missing Content-Length header")
    try:
        length = int(headers["content-length"])
    except ValueError as e:
        raise ProtocolError(f"Invalid Content-Length: {headers['content-length']!r}") from e
    if length < 0 or length > MAX_MESSAGE_BYTES:
        raise ProtocolError(f"Content-Length out of range: {length}")
    return length


def _decode_body(body: bytes) -> dict:
    try:
        message = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError("Body is not valid JSON") from e
    if not isinstance(message, dict):
        raise ProtocolError("Body must be a JSON object")
    return message


async def read_message(reader: asyncio.StreamReader) -> dict | None:
    """Read one framed message. Returns None on a clean EOF between messages."""
    headers: dict[str, str] = {}
    while True:
        line = await reader.readline()
        if not line:
            if headers:
                raise ProtocolError("Connection closed inside headers")
            return None
        line = line.rstrip(b"\r\n")
        if not line:
            if headers:
                break
            continue
        _parse_header(line, headers)

    length = _content_length(headers)
    try:
        body = await reader.readexactly(length)
    except asyncio.IncompleteReadError as e:
        raise ProtocolError("Connection closed inside body") from e
    return _decode_body(body)


def read_message_sync(stream: BinaryIO) -> dict | None:
    """Blocking counterpart of read_message for file-like byte streams."""
    headers: dict[str, str] = {}
    while True:
        line = stream.readline()
        if not line:
            if headers:
                raise ProtocolError("Connection closed inside headers")
            return None
        line = line.rstrip(b"\r\n")
        if not line:
            if headers:
                break
            continue
        _parse_header(line, headers)

    length = _content_length(headers)
    body = stream.read(length)
    if len(body) < length:
        raise ProtocolError("Connection closed inside body")
    return _decode_body(body)
