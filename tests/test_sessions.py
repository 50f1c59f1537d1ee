import json
from collections import deque
from dataclasses import replace

import pytest

from gatewayd.exceptions import SessionNotFound
from gatewayd.sessions import (
    COMPLEX_CONTENT,
    NO_CONTENT,
    CliSessionSource,
    SessionSource,
    SessionStore,
    message_text,
    parse_cli_json,
    parse_message,
    truncate,
)

KEY = "agent:main:telegram:123"


class FakeSource(SessionSource):
    """In-memory gateway with one session index and its transcripts."""

    def __init__(self, listing=None, index=None, transcripts=None):
        self.listing = listing if listing is not None else json.dumps(
            {"path": "/sessions/sessions.json", "count": 1, "sessions": [{"key": KEY}]}
        )
        self.index = index if index is not None else json.dumps(
            {KEY: {"sessionId": "abc", "sessionFile": "/sessions/abc.jsonl"}}
        )
        self.transcripts = transcripts or {}
        self.active_requested = []

    def list_sessions(self, active_minutes=None):
        self.active_requested.append(active_minutes)
        return self.listing

    def read_index(self, path):
        if self.index is OSError:
            raise FileNotFoundError(path)
        return self.index

    def read_transcript(self, path, limit):
        if path not in self.transcripts:
            raise FileNotFoundError(path)
        return list(deque(self.transcripts[path], maxlen=limit))


def _line(role, content):
    return json.dumps({"role": role, "content": content}) + "\n"


def test_history_returns_last_messages_in_order():
    lines = [_line("user", f"message {i}") for i in range(5)]
    store = SessionStore(FakeSource(transcripts={"/sessions/abc.jsonl": lines}))

    result = store.get_history(KEY, limit=2)

    assert result == {
        "messages": [
            {"role": "user", "content": "message 3"},
            {"role": "user", "content": "message 4"},
        ]
    }


def test_history_skips_unparseable_lines():
    lines = [_line("user", "hi"), "not json\n", "\n", _line("assistant", "hello")]
    store = SessionStore(FakeSource(transcripts={"/sessions/abc.jsonl": lines}))
    messages = store.get_history(KEY)["messages"]
    assert [m["role"] for m in messages] == ["user", "assistant"]


def test_unknown_key_raises_not_found():
    store = SessionStore(FakeSource())
    with pytest.raises(SessionNotFound):
        store.get_history("agent:main:discord:999")


def test_missing_index_path_raises_not_found():
    store = SessionStore(FakeSource(listing=json.dumps({"sessions": []})))
    with pytest.raises(SessionNotFound):
        store.get_history(KEY)


def test_unreadable_index_raises_not_found():
    store = SessionStore(FakeSource(index=OSError))
    with pytest.raises(SessionNotFound):
        store.get_history(KEY)


def test_missing_transcript_is_empty_history():
    store = SessionStore(FakeSource())
    assert store.get_history(KEY) == {"messages": []}


def test_malformed_listing_in_history_returns_raw():
    store = SessionStore(FakeSource(listing="Error: gateway not reachable"))
    assert store.get_history(KEY) == {"messages": [], "raw": "Error: gateway not reachable"}


def test_list_sessions_passes_through_data():
    source = FakeSource()
    result = SessionStore(source).list_sessions(30)
    assert result == {"sessions": [{"key": KEY}], "count": 1}
    assert source.active_requested == [30]


def test_list_sessions_non_json_output():
    store = SessionStore(FakeSource(listing="Gateway is starting up"))
    assert store.list_sessions() == {"sessions": [], "count": 0, "raw": "Gateway is starting up"}


def test_parse_cli_json_tolerates_surrounding_log_lines():
    output = '[info] loading\n{"count": 0, "sessions": []}\n[info] done'
    assert parse_cli_json(output) == {"count": 0, "sessions": []}


def test_message_text_normalization():
    assert message_text({"content": "plain"}) == "plain"
    assert message_text({"content": [{"type": "image"}, {"type": "text", "text": "caption"}]}) == "caption"
    assert message_text({"content": [{"type": "tool_use", "name": "x"}]}) == COMPLEX_CONTENT
    assert message_text({"text": "legacy"}) == "legacy"
    assert message_text({}) == NO_CONTENT


def test_long_messages_are_truncated():
    text = "x" * 250
    assert truncate(text) == "x" * 200 + "..."
    assert truncate("short") == "short"
    message = parse_message(_line("assistant", text))
    assert len(message["content"]) == 203


def test_parse_message_envelope_and_missing_role():
    wrapped = json.dumps({"type": "message", "message": {"role": "user", "content": "hi"}})
    assert parse_message(wrapped) == {"role": "user", "content": "hi"}
    assert parse_message(json.dumps({"content": "x"})) == {"role": "unknown", "content": "x"}
    assert parse_message("[1, 2]") is None


def test_cli_command(settings):
    source = CliSessionSource(settings)
    assert source.build_command() == ["clawdbot", "sessions", "--json"]
    assert source.build_command(15) == ["clawdbot", "sessions", "--json", "--active", "15"]


def test_cli_read_transcript_keeps_tail(settings, tmp_path):
    path = tmp_path / "t.jsonl"
    path.write_text("".join(_line("user", str(i)) for i in range(10)))
    lines = CliSessionSource(settings).read_transcript(str(path), 3)
    assert [json.loads(line)["content"] for line in lines] == ["7", "8", "9"]


def test_non_string_session_file_is_not_found():
    source = FakeSource(index=json.dumps({KEY: {"sessionFile": 0}}))
    with pytest.raises(SessionNotFound):
        SessionStore(source).get_history(KEY)


def test_cli_output_with_invalid_utf8_degrades_to_raw(settings, tmp_path):
    script = tmp_path / "clawdbot"
    script.write_text("#!/bin/sh\nprintf '\\377\\376 not json'\n")
    script.chmod(0o755)
    source = CliSessionSource(replace(settings, gateway_bin=str(script)))

    result = SessionStore(source).list_sessions()

    assert result["sessions"] == []
    assert result["count"] == 0
    assert "not json" in result["raw"]


class IndexFileSource(CliSessionSource):
    """Reads a real index file but skips the CLI listing."""

    def __init__(self, settings, index_path):
        super().__init__(settings)
        self.index_path = index_path

    def list_sessions(self, active_minutes=None):
        return json.dumps({"path": str(self.index_path), "sessions": []})


def test_index_with_invalid_utf8_is_readable(settings, tmp_path):
    index = tmp_path / "sessions.json"
    index.write_bytes(b'{"other": {"label": "\xff"}, "' + KEY.encode() + b'": {"sessionFile": "/nowhere.jsonl"}}')
    store = SessionStore(IndexFileSource(settings, index))

    assert store.get_history(KEY) == {"messages": []}
    with pytest.raises(SessionNotFound):
        store.get_history("agent:main:missing")
