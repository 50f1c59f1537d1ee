"""
Read-only access to the gateway's conversation sessions.

SessionStore only talks to a SessionSource: listing sessions, reading the
session index and tailing a transcript. CliSessionSource implements that by
running the gateway's own CLI and reading its files from the sandbox
filesystem, so a direct API can replace it later without touching callers.
"""

import json
import logging
import subprocess
from collections import deque
from pathlib import Path
from typing import Optional

from .config import Config, config
from .exceptions import MalformedCliOutput, SessionNotFound

logger = logging.getLogger(__name__)

DISPLAY_LENGTH = 200
CONTINUATION = "..."
COMPLEX_CONTENT = "[complex content]"
NO_CONTENT = "[no content]"
DEFAULT_HISTORY_LIMIT = 50


class SessionSource:
    """What the session store needs from the gateway."""

    def list_sessions(self, active_minutes: Optional[int] = None) -> str:
        """Raw session listing output (JSON text)."""
        raise NotImplementedError

    def read_index(self, path: str) -> str:
        """Raw text of the session index file."""
        raise NotImplementedError

    def read_transcript(self, path: str, limit: int) -> list[str]:
        """The last `limit` lines of a transcript file."""
        raise NotImplementedError


class CliSessionSource(SessionSource):
    """SessionSource backed by `clawdbot sessions --json` and the local filesystem."""

    def __init__(self, settings: Config = config):
        self.settings = settings

    def build_command(self, active_minutes: Optional[int] = None) -> list[str]:
        cmd = [self.settings.gateway_bin, "sessions", "--json"]
        if active_minutes:
            cmd += ["--active", str(active_minutes)]
        return cmd

    def list_sessions(self, active_minutes: Optional[int] = None) -> str:
        cmd = self.build_command(active_minutes)
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.settings.session_cli_timeout,
                stdin=subprocess.DEVNULL,
            )
        except subprocess.TimeoutExpired as e:
            raise MalformedCliOutput(
                f"'{' '.join(cmd)}' timed out after {self.settings.session_cli_timeout:g}s"
            ) from e
        except OSError as e:
            raise MalformedCliOutput(f"Could not run '{' '.join(cmd)}': {e}") from e

        if result.returncode != 0:
            logger.warning(f"'{' '.join(cmd)}' exited with code {result.returncode}: {result.stderr.strip()}")
        return result.stdout if result.stdout.strip() else result.stderr

    def read_index(self, path: str) -> str:
        return Path(path).read_text(errors="replace")

    def read_transcript(self, path: str, limit: int) -> list[str]:
        # Transcripts are append-only and can be large; only keep the tail
        with open(path, errors="replace") as f:
            return list(deque(f, maxlen=limit))


def parse_cli_json(output: str) -> dict:
    """Parse CLI output as a JSON object, tolerating log lines around it."""
    text = (output or "").strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            raise MalformedCliOutput(output)
        try:
            data = json.loads(text[start : end + 1])
        except json.JSONDecodeError:
            raise MalformedCliOutput(output)
    if not isinstance(data, dict):
        raise MalformedCliOutput(output)
    return data


def truncate(text: str, length: int = DISPLAY_LENGTH) -> str:
    if len(text) > length:
        return text[:length] + CONTINUATION
    return text


def message_text(record: dict) -> str:
    """Reduce a transcript record's content to display text."""
    content = record.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        for part in content:
            if isinstance(part, dict) and part.get("type") == "text":
                text = part.get("text")
                return text if isinstance(text, str) and text else COMPLEX_CONTENT
        return COMPLEX_CONTENT
    if isinstance(record.get("text"), str):
        return record["text"]
    return NO_CONTENT


def parse_message(line: str) -> Optional[dict]:
    """Parse one transcript line, or None if it is not a JSON object."""
    try:
        record = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(record, dict):
        return None
    # Some gateway versions wrap the message in an envelope
    if "role" not in record and isinstance(record.get("message"), dict):
        record = record["message"]
    role = record.get("role")
    return {
        "role": role if isinstance(role, str) and role else "unknown",
        "content": truncate(message_text(record)),
    }


class SessionStore:
    """Lists sessions and reads bounded message history."""

    def __init__(self, source: SessionSource):
        self.source = source

    def list_sessions(self, active_minutes: Optional[int] = None) -> dict:
        try:
            data = parse_cli_json(self.source.list_sessions(active_minutes))
        except MalformedCliOutput as e:
            logger.warning(f"Could not parse session listing: {e.raw[:200]!r}")
            return {"sessions": [], "count": 0, "raw": e.raw}

        sessions = data.get("sessions")
        if not isinstance(sessions, list):
            sessions = []
        return {"sessions": sessions, "count": data.get("count", len(sessions))}

    def get_history(self, key: str, limit: int = DEFAULT_HISTORY_LIMIT) -> dict:
        """Last `limit` messages of a session. Raises SessionNotFound for unknown keys."""
        limit = max(1, int(limit))
        try:
            listing = parse_cli_json(self.source.list_sessions())
        except MalformedCliOutput as e:
            logger.warning(f"Could not parse session listing: {e.raw[:200]!r}")
            return {"messages": [], "raw": e.raw}

        index_path = listing.get("path")
        if not index_path:
            logger.warning("Session listing did not report an index path")
            raise SessionNotFound(key)

        try:
            index = parse_cli_json(self.source.read_index(index_path))
        except OSError as e:
            logger.warning(f"Could not read session index {index_path}: {e}")
            raise SessionNotFound(key) from e
        except MalformedCliOutput as e:
            logger.warning(f"Session index {index_path} is not valid JSON")
            return {"messages": [], "raw": e.raw}

        entry = index.get(key)
        session_file = entry.get("sessionFile") if isinstance(entry, dict) else None
        if not isinstance(session_file, str) or not session_file:
            raise SessionNotFound(key)

        try:
            lines = self.source.read_transcript(session_file, limit)
        except FileNotFoundError:
            logger.info(f"No transcript yet for session {key}")
            return {"messages": []}
        except OSError as e:
            logger.warning(f"Could not read transcript for session {key}: {e}")
            return {"messages": []}

        messages = []
        for line in lines:
            if not line.strip():
                continue
            message = parse_message(line)
            if message is not None:
                messages.append(message)
        return {"messages": messages}


# Global session store instance
session_store = SessionStore(CliSessionSource())
