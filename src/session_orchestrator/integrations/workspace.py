"""Per-session workspace files: merged instructions, hooks and status wiring."""

import json
import shlex
import shutil
from pathlib import Path

INSTRUCTIONS_FILE = "CLAUDE.md"
LOCAL_INSTRUCTIONS_FILE = "CLAUDE.local.md"
SESSION_ID_FILE = ".sorc_session_id"
MCP_CONFIG_FILE = ".mcp.json"


def merge_instructions(fragments: list[Path]) -> str:
    """Concatenate the instruction fragments that exist, in the given order."""
    parts = []
    for path in fragments:
        if path.is_file():
            text = path.read_text().strip()
            if text:
                parts.append(text)
    return "\n\n".join(parts)


def seed_hooks(hook_dirs: list[Path], dest: Path) -> list[Path]:
    """Copy hook files into dest. Later directories override earlier ones by filename."""
    chosen: dict[str, Path] = {}
    for hook_dir in hook_dirs:
        if not hook_dir.is_dir():
            continue
        for path in sorted(hook_dir.iterdir()):
            if path.is_file():
                chosen[path.name] = path

    copied = []
    if chosen:
        dest.mkdir(parents=True, exist_ok=True)
    for name, src in sorted(chosen.items()):
        target = dest / name
        shutil.copy2(src, target)
        copied.append(target)
    return copied


def write_session_files(
    worktree: Path,
    session_id: str,
    socket_path: Path,
    cli_command: str = "sorc",
):
    """Wire a workspace to report back to the orchestrator.

    The session id reaches the agent only through its environment: the
    MCP bridge gets it via `.mcp.json`, the stop hook via its command line.
    """
    (worktree / SESSION_ID_FILE).write_text(session_id + "\n")

    mcp_config = {
        "mcpServers": {
            "session-orchestrator": {
                "command": cli_command,
                "args": ["mcp", "serve"],
                "env": {
                    "SORC_SESSION_ID": session_id,
                    "SORC_SOCKET_PATH": str(socket_path),
                },
            }
        }
    }
    (worktree / MCP_CONFIG_FILE).write_text(json.dumps(mcp_config, indent=2) + "\n")

    stop_command = " ".join(
        [
            cli_command,
            "session-update",
            "--session-id",
            shlex.quote(session_id),
            "--status",
            "waiting_for_input",
            "--detect-pr",
            "--transcript-usage",
        ]
    )
    settings = {
        "hooks": {
            "Stop": [{"hooks": [{"type": "command", "command": stop_command}]}],
        }
    }
    claude_dir = worktree / ".claude"
    claude_dir.mkdir(parents=True, exist_ok=True)
    (claude_dir / "settings.local.json").write_text(json.dumps(settings, indent=2) + "\n")


def provision(
    worktree: Path,
    session_id: str,
    config_dir: Path,
    project_id: str,
    repo_path: Path,
    socket_path: Path,
):
    """Merge instructions, seed hooks and write the status wiring for a new session."""
    project_dir = config_dir / "projects" / project_id
    merged = merge_instructions(
        [
            config_dir / INSTRUCTIONS_FILE,
            project_dir / INSTRUCTIONS_FILE,
            repo_path / INSTRUCTIONS_FILE,
        ]
    )
    if merged:
        (worktree / LOCAL_INSTRUCTIONS_FILE).write_text(merged + "\n")

    seed_hooks([config_dir / "hooks", project_dir / "hooks"], worktree / ".claude" / "hooks")
    write_session_files(worktree, session_id, socket_path)
