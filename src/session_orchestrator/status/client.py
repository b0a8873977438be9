"""Blocking client for the status service."""

import itertools
import socket
from pathlib import Path

from session_orchestrator.status.protocol import ProtocolError, encode_message, read_message_sync


class StatusServiceError(Exception):
    """Raised when the status service is unreachable or rejects a request."""


class StatusClient:
    """One connection per client, reused for every call; session_id goes in every envelope."""

    def __init__(self, socket_path: Path, session_id: str, timeout: float = 10.0):
        self.socket_path = Path(socket_path)
        self.session_id = session_id
        self.timeout = timeout
        self._sock: socket.socket | None = None
        self._reader = None
        self._ids = itertools.count(1)

    def _connect(self):
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.timeout)
        try:
            sock.connect(str(self.socket_path))
        except OSError as e:
            sock.close()
            raise StatusServiceError(f"Status service unavailable at {self.socket_path}: {e}") from e
        self._sock = sock
        self._reader = sock.makefile("rb")

    def call(self, op: str, **args) -> object:
        if self._sock is None:
            self._connect()
        request = {"id": next(self._ids), "op": op, "session_id": self.session_id, "args": args}
        try:
            self._sock.sendall(encode_message(request))
            response = read_message_sync(self._reader)
        except (OSError, ProtocolError) as e:
            self.close()
            raise StatusServiceError(f"Status service call '{op}' failed: {e}") from e
        if response is None:
            self.close()
            raise StatusServiceError("Status service closed the connection")
        if "error" in response:
            raise StatusServiceError(response["error"])
        return response.get("result")

    def close(self):
        if self._reader is not None:
            self._reader.close()
            self._reader = None
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
