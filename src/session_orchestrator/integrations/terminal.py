"""tmux wrapper for the terminal windows agent sessions run in."""

import logging
import subprocess
import time
from pathlib import Path

logger = logging.getLogger(__name__)


class TerminalError(Exception):
    """Raised when a tmux command fails."""


class TmuxTerminal:
    """Opens one tmux window per session inside a shared tmux session."""

    def __init__(self, session_name: str = "sorc", timeout: float = 5.0):
        self.session_name = session_name
        self.timeout = timeout

    def _tmux(self, *args: str) -> str:
        cmd = ["tmux", *args]
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=True,
                timeout=self.timeout,
            )
        except subprocess.CalledProcessError as e:
            raise TerminalError(f"tmux {args[0]} failed: {e.stderr.strip()}") from e
        except subprocess.TimeoutExpired as e:
            raise TerminalError(f"tmux {args[0]} timed out") from e
        except FileNotFoundError as e:
            raise TerminalError("tmux executable not found") from e
        return result.stdout.strip()

    def _has_session(self) -> bool:
        try:
            self._tmux("has-session", "-t", self.session_name)
            return True
        except TerminalError:
            return False

    def open_window(self, label: str, cwd: str | Path, command: str | None = None) -> str:
        """Open a window in cwd, optionally running command, and return its tmux target."""
        fmt = "#{session_name}:#{window_id}"
        if self._has_session():
            args = ["new-window", "-d", "-P", "-F", fmt, "-t", self.session_name]
        else:
            args = ["new-session", "-d", "-P", "-F", fmt, "-s", self.session_name]
        args += ["-n", label, "-c", str(cwd)]
        if command:
            args.append(command)
        return self._tmux(*args)

    def send_text(self, target: str, text: str):
        """Type text into a window literally, then submit it."""
        self._tmux("send-keys", "-t", target, "-l", text)
        # Agent TUIs drop an Enter that arrives in the same burst as the text.
        time.sleep(0.2)
        self._tmux("send-keys", "-t", target, "Enter")

    def focus(self, target: str):
        self._tmux("select-window", "-t", target)

    def close_window(self, target: str):
        self._tmux("kill-window", "-t", target)
