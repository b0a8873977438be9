"""Unix-socket status service that agent bridges report into.

Requests and responses are Content-Length framed JSON objects:

    {"id": 1, "op": "task_done", "session_id": "...", "args": {"summary": "..."}}
    {"id": 1, "result": {...}}  or  {"id": 1, "error": "..."}

Every connection gets its own task. The store handle is shared and guarded
by one asyncio.Lock that is held only while a single operation runs.
"""

import asyncio
import logging
import os
import sqlite3
import threading
from pathlib import Path

from session_orchestrator.core import status as status_mod
from session_orchestrator.db.engine import init_db
from session_orchestrator.status.protocol import ProtocolError, encode_message, read_message

logger = logging.getLogger(__name__)


def _task_summary(task) -> dict | None:
    if task is None:
        return None
    return {
        "id": task.id,
        "title": task.title,
        "status": task.status.value,
        "pr_url": task.pr_url,
        "input_tokens": task.input_tokens,
        "output_tokens": task.output_tokens,
        "cost": task.cost,
    }


def _rate_limit_summary(state) -> dict:
    return {
        "is_rate_limited": state.is_rate_limited,
        "limit_type": state.limit_type,
        "reset_at": state.reset_at.isoformat() if state.reset_at else None,
        "usage_5h_pct": state.usage_5h_pct,
        "usage_7d_pct": state.usage_7d_pct,
    }


class StatusService:
    def __init__(
        self,
        db_path: Path,
        socket_path: Path,
        notifier=None,
        feeder=None,
        rate_limit_minutes: int = 30,
    ):
        self.db_path = db_path
        self.socket_path = Path(socket_path)
        self.notifier = notifier
        self.feeder = feeder
        self.rate_limit_minutes = rate_limit_minutes
        self.db: sqlite3.Connection | None = None
        self._lock: asyncio.Lock | None = None
        self._server: asyncio.AbstractServer | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stopped: asyncio.Event | None = None
        self._thread_error: Exception | None = None
        self._handlers = {
            "status": self._op_status,
            "task_done": self._op_task_done,
            "usage": self._op_usage,
            "rate_limited": self._op_rate_limited,
            "usage_windows": self._op_usage_windows,
            "log": self._op_log,
        }

    # ── Operations ──────────────────────────────────────────────────────────
    # Each runs on a worker thread while the store lock is held.

    def _op_status(self, session_id: str, args: dict) -> dict:
        session = status_mod.report_status(
            self.db, session_id, args["state"], args.get("message"),
            notifier=self.notifier, feeder=self.feeder,
        )
        return {
            "session_id": session.id,
            "claude_status": session.claude_status.value,
            "status_message": session.status_message,
        }

    def _op_task_done(self, session_id: str, args: dict) -> dict:
        result = status_mod.report_task_done(
            self.db, session_id,
            summary=args.get("summary", ""),
            pr_url=args.get("pr_url") or None,
            notifier=self.notifier, feeder=self.feeder,
        )
        return {
            "task": _task_summary(result.task),
            "next_subtask": result.next_subtask.title if result.next_subtask else None,
            "feed": result.feed.outcome.value if result.feed else None,
            "fed_task": _task_summary(result.feed.task) if result.feed else None,
        }

    def _op_usage(self, session_id: str, args: dict) -> dict:
        task = status_mod.report_usage(
            self.db, session_id,
            int(args.get("input_tokens", 0)),
            int(args.get("output_tokens", 0)),
            float(args.get("cost", 0.0)),
        )
        return _task_summary(task)

    def _op_rate_limited(self, session_id: str, args: dict) -> dict:
        state = status_mod.report_rate_limited(
            self.db, session_id,
            limit_type=args.get("limit_type", "5h"),
            reset_at=args.get("reset_at"),
            default_minutes=self.rate_limit_minutes,
        )
        return _rate_limit_summary(state)

    def _op_usage_windows(self, session_id: str, args: dict) -> dict:
        state = status_mod.report_usage_windows(
            self.db, session_id, args.get("pct_5h"), args.get("pct_7d")
        )
        return _rate_limit_summary(state)

    def _op_log(self, session_id: str, args: dict) -> dict:
        status_mod.report_log(self.db, session_id, args["message"], args.get("level", "info"))
        return {"ok": True}

    # ── Dispatch ────────────────────────────────────────────────────────────

    async def dispatch(self, request: dict) -> dict:
        req_id = request.get("id")
        op = request.get("op")
        if op == "ping":
            return {"id": req_id, "result": "pong"}

        handler = self._handlers.get(op)
        if handler is None:
            return {"id": req_id, "error": f"Unknown operation: {op}"}

        session_id = request.get("session_id")
        if not session_id:
            return {"id": req_id, "error": "Missing session_id"}

        args = request.get("args") or {}
        if not isinstance(args, dict):
            return {"id": req_id, "error": "args must be an object"}
        # The session comes from the envelope the bridge built, never from tool arguments.
        args = {k: v for k, v in args.items() if k != "session_id"}

        try:
            async with self._lock:
                result = await asyncio.to_thread(handler, session_id, args)
        except KeyError as e:
            return {"id": req_id, "error": f"Missing argument: {e.args[0]}"}
        except (ValueError, TypeError) as e:
            return {"id": req_id, "error": str(e)}
        except sqlite3.Error:
            logger.exception("Store error handling %s for session %s", op, session_id)
            return {"id": req_id, "error": "Store error"}
        return {"id": req_id, "result": result}

    async def _handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        try:
            while True:
                try:
                    request = await read_message(reader)
                except ProtocolError as e:
                    writer.write(encode_message({"id": None, "error": f"Protocol error: {e}"}))
                    await writer.drain()
                    break
                if request is None:
                    break
                response = await self.dispatch(request)
                writer.write(encode_message(response))
                await writer.drain()
        except (ConnectionResetError, BrokenPipeError):
            logger.debug("Status client disconnected")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionResetError, BrokenPipeError):
                pass

    # ── Lifecycle ───────────────────────────────────────────────────────────

    async def start(self):
        self.db = init_db(self.db_path, check_same_thread=False)
        self._lock = asyncio.Lock()
        self.socket_path.parent.mkdir(parents=True, exist_ok=True)
        if self.socket_path.exists():
            self.socket_path.unlink()
        self._server = await asyncio.start_unix_server(
            self._handle_connection, path=str(self.socket_path)
        )
        os.chmod(self.socket_path, 0o600)
        logger.info("Status service listening on %s", self.socket_path)

    async def close(self):
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        if self.socket_path.exists():
            self.socket_path.unlink()
        if self.db is not None:
            self.db.close()
            self.db = None
        logger.info("Status service stopped")

    async def serve(self, ready: threading.Event | None = None):
        """Run until stop() is called."""
        self._loop = asyncio.get_running_loop()
        self._stopped = asyncio.Event()
        await self.start()
        if ready is not None:
            ready.set()
        try:
            await self._stopped.wait()
        finally:
            await self.close()

    def start_in_thread(self, timeout: float = 10.0) -> threading.Thread:
        """Serve on a daemon thread with its own event loop."""
        ready = threading.Event()

        def runner():
            try:
                asyncio.run(self.serve(ready))
            except Exception as e:
                self._thread_error = e
                logger.exception("Status service crashed")
                ready.set()

        thread = threading.Thread(target=runner, name="status-service", daemon=True)
        thread.start()
        ready.wait(timeout)
        if self._thread_error is not None:
            raise RuntimeError(f"Status service failed to start: {self._thread_error}")
        return thread

    def stop(self):
        """Stop serving. Safe to call from any thread."""
        if self._loop is None or self._stopped is None or self._loop.is_closed():
            return
        try:
            self._loop.call_soon_threadsafe(self._stopped.set)
        except RuntimeError:
            # Loop closed between the check and the call; already stopped.
            logger.debug("Status service loop already closed")
