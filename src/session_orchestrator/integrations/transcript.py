"""Token totals read from the agent's JSONL conversation transcripts."""

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_INPUT_KEYS = ("input_tokens", "cache_creation_input_tokens", "cache_read_input_tokens")


@dataclass
class TranscriptUsage:
    input_tokens: int = 0
    output_tokens: int = 0


def project_dir(worktree: str | Path, claude_dir: Path) -> Path:
    """Directory the agent keeps transcripts in for a working directory."""
    return claude_dir / "projects" / re.sub(r"[^a-zA-Z0-9]", "-", str(worktree))


def latest_transcript(directory: Path) -> Path | None:
    if not directory.is_dir():
        return None
    transcripts = [p for p in directory.glob("*.jsonl") if p.is_file()]
    if not transcripts:
        return None
    return max(transcripts, key=lambda p: p.stat().st_mtime)


def read_usage(path: Path) -> TranscriptUsage:
    """Sum the usage of every assistant message. Cached input counts as input."""
    usage = TranscriptUsage()
    with path.open(encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(entry, dict) or entry.get("type") != "assistant":
                continue
            message = entry.get("message")
            counts = message.get("usage") if isinstance(message, dict) else None
            if not isinstance(counts, dict):
                continue
            usage.input_tokens += sum(int(counts.get(k) or 0) for k in _INPUT_KEYS)
            usage.output_tokens += int(counts.get("output_tokens") or 0)
    return usage


def worktree_usage(worktree: str | Path, claude_dir: Path) -> TranscriptUsage | None:
    """Totals from the newest transcript for a worktree, or None when there is none."""
    path = latest_transcript(project_dir(worktree, claude_dir))
    if path is None:
        return None
    try:
        return read_usage(path)
    except OSError as e:
        logger.warning("Could not read transcript %s: %s", path, e)
        return None
