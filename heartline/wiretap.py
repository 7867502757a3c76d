"""
Wiretap: a structured record of what went over the line.

  1. WireLog: appends one JSONL entry per persisted turn or failed exchange
  2. show_tap(): reads the JSONL and renders a colour-coded view

The wire log is separate from the debug log. It only ever shows what the
transcript store accepted (or why an exchange failed), never raw deltas.
"""

import json
import logging
import threading
import time
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

# ANSI colors
C_RESET = "\033[0m"
C_BOLD = "\033[1m"
C_DIM = "\033[2m"
C_USER = "\033[96m"       # cyan
C_ASSISTANT = "\033[93m"  # yellow
C_TIME = "\033[90m"       # gray
C_MODEL = "\033[95m"      # magenta
C_BORDER = "\033[90m"     # gray
C_ERROR = "\033[91m"      # red

ROLE_COLORS = {
    "user": C_USER,
    "assistant": C_ASSISTANT,
    "error": C_ERROR,
}

ROLE_ICONS = {
    "user": "▶",
    "assistant": "◀",
    "error": "✗",
}

_CONTENT_LIMIT = 2000


class WireLog:
    """
    Structured JSONL logger for the wire.

    Format:
        {"ts": "...", "dir": "inbound|outbound|error", "role": "...",
         "model": "...", "conv": "...", "len": 123, "content": "..."}
    """

    def __init__(self, log_path: str):
        self.log_path = Path(log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._file = None
        self._lock = threading.Lock()

    def _ensure_open(self):
        if self._file is None:
            self._file = open(self.log_path, "a", buffering=1)  # line-buffered

    def log(
        self,
        direction: str,
        role: str,
        content: str,
        model: str = "",
        conversation_id: str = "",
        kind: str = "",
    ):
        """Write a wire log entry."""
        entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "dir": direction,
            "role": role,
            "model": model,
            "conv": conversation_id[:16] if conversation_id else "",
            "len": len(content),
        }
        if kind:
            entry["kind"] = kind

        if len(content) <= _CONTENT_LIMIT:
            entry["content"] = content
        else:
            entry["content"] = (
                content[:1000]
                + f"\n\n[... {len(content) - _CONTENT_LIMIT} chars truncated ...]\n\n"
                + content[-1000:]
            )

        with self._lock:
            self._ensure_open()
            self._file.write(json.dumps(entry, ensure_ascii=False) + "\n")

    def close(self):
        with self._lock:
            if self._file:
                self._file.close()
                self._file = None


def _format_entry(entry: dict, raw: bool = False) -> str:
    """Format a single wire log entry for display."""
    if raw:
        return json.dumps(entry, ensure_ascii=False)

    ts = entry.get("ts", "")
    try:
        time_str = datetime.fromisoformat(ts).strftime("%H:%M:%S")
    except (ValueError, TypeError):
        time_str = ts[:8] if ts else "??:??:??"

    role = entry.get("role", "?")
    direction = entry.get("dir", "?")
    content = entry.get("content", "")

    color = ROLE_COLORS.get(role, C_RESET)
    icon = ROLE_ICONS.get(role, "?")
    arrow = f"{C_DIM}──▶{C_RESET}" if direction == "inbound" else f"{C_DIM}◀──{C_RESET}"

    header = f"  {C_TIME}{time_str}{C_RESET} {arrow} {color}{C_BOLD}{icon} {role.upper()}{C_RESET}"
    if entry.get("model"):
        header += f"  {C_MODEL}[{entry['model']}]{C_RESET}"
    if entry.get("kind"):
        header += f"  {C_ERROR}{entry['kind']}{C_RESET}"
    header += f"  {C_DIM}({entry.get('len', 0)} chars){C_RESET}"
    if entry.get("conv"):
        header += f"  {C_DIM}conv:{entry['conv']}{C_RESET}"

    lines = [header]
    if content:
        shown = content if len(content) <= 500 else content[:500] + f"\n{C_DIM}[... truncated]{C_RESET}"
        lines.extend(f"      {cline}" for cline in shown.split("\n")[:15])
    lines.append(f"  {C_BORDER}{'─' * 60}{C_RESET}")
    return "\n".join(lines)


def _emit(line: str, role_filter: str | None, raw: bool):
    line = line.strip()
    if not line:
        return
    try:
        entry = json.loads(line)
    except json.JSONDecodeError:
        return
    if role_filter and entry.get("role") != role_filter:
        return
    print(_format_entry(entry, raw=raw))


def show_tap(
    log_path: str | None = None,
    follow: bool = True,
    last_n: int = 20,
    role_filter: str | None = None,
    raw: bool = False,
):
    """Print the last N wire entries, then optionally follow the file."""
    if log_path is None:
        from heartline.config import get_config
        log_path = get_config().get("wiretap", {}).get("path", "./data/wire.jsonl")

    wire_path = Path(log_path)
    if not wire_path.exists():
        print(f"  ✗  No wire log found at {wire_path}")
        print("     Start the relay first: heartline serve")
        return

    with open(wire_path) as f:
        all_lines = f.readlines()
    for line in all_lines[max(0, len(all_lines) - last_n):]:
        _emit(line, role_filter, raw)

    if not follow:
        return

    if not raw:
        print(f"\n  {C_DIM}[listening... Ctrl+C to stop]{C_RESET}\n")
    try:
        with open(wire_path) as f:
            f.seek(0, 2)
            while True:
                line = f.readline()
                if not line:
                    time.sleep(0.1)
                    continue
                _emit(line, role_filter, raw)
    except KeyboardInterrupt:
        if not raw:
            print(f"\n  {C_DIM}[tap closed]{C_RESET}")
