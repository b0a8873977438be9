"""MCP bridge that lets an agent report back to the orchestrator.

Runs over stdio inside the agent's workspace (see the `.mcp.json` written at
launch). The session id comes from SORC_SESSION_ID in the bridge's own
environment and is attached to every forwarded call; no tool takes it as an
argument.
"""

from __future__ import annotations

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from session_orchestrator.config import get_config
from session_orchestrator.status.client import StatusClient, StatusServiceError

SESSION_ENV = "SORC_SESSION_ID"


@dataclass
class BridgeContext:
    session_id: str
    client: StatusClient


@asynccontextmanager
async def bridge_lifespan(server: FastMCP) -> AsyncIterator[BridgeContext]:
    """Open the status-service client on startup, close it on shutdown."""
    session_id = os.environ.get(SESSION_ENV)
    if not session_id:
        raise RuntimeError(f"{SESSION_ENV} is not set; the bridge only runs inside a session")
    config = get_config()
    client = StatusClient(config.socket_path, session_id, timeout=config.poll_timeout)
    try:
        yield BridgeContext(session_id=session_id, client=client)
    finally:
        client.close()


mcp = FastMCP("session-orchestrator", lifespan=bridge_lifespan)


def _ctx(ctx: Context) -> BridgeContext:
    """Extract BridgeContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _forward(ctx: Context, op: str, **args) -> dict:
    try:
        result = _ctx(ctx).client.call(op, **args)
    except StatusServiceError as e:
        return {"error": str(e)}
    if isinstance(result, dict):
        return result
    return {"result": result}


# ── Tools ─────────────────────────────────────────────────────────────────────


@mcp.tool()
def report_status(ctx: Context, state: str, message: str = "") -> dict:
    """Report what you are doing.

    state is one of: working, waiting_for_input, done, error. Reporting
    `done` while a task is in progress completes that task.
    """
    return _forward(ctx, "status", state=state, message=message or None)


@mcp.tool()
def task_done(ctx: Context, summary: str, pr_url: str | None = None) -> dict:
    """Report that the current task (or current step of it) is finished.

    Include the pull request URL if you opened one.
    """
    args = {"summary": summary}
    if pr_url:
        args["pr_url"] = pr_url
    return _forward(ctx, "task_done", **args)


@mcp.tool()
def report_usage(ctx: Context, input_tokens: int, output_tokens: int, cost: float = 0.0) -> dict:
    """Add token usage and cost (USD) consumed since your last report."""
    return _forward(
        ctx, "usage", input_tokens=input_tokens, output_tokens=output_tokens, cost=cost
    )


@mcp.tool()
def rate_limited(ctx: Context, limit_type: str = "5h", reset_at: str | None = None) -> dict:
    """Report that you hit a usage limit. reset_at is an ISO 8601 timestamp if known."""
    args = {"limit_type": limit_type}
    if reset_at:
        args["reset_at"] = reset_at
    return _forward(ctx, "rate_limited", **args)


@mcp.tool()
def usage_windows(ctx: Context, pct_5h: float | None = None, pct_7d: float | None = None) -> dict:
    """Report utilization percentages of the 5-hour and 7-day usage windows."""
    return _forward(ctx, "usage_windows", pct_5h=pct_5h, pct_7d=pct_7d)


@mcp.tool()
def log(ctx: Context, message: str, level: str = "info") -> dict:
    """Write a message to the orchestrator's log."""
    return _forward(ctx, "log", message=message, level=level)
