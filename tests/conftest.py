import sys
import textwrap
import pytest

from open_agent_proxy.common import agent_client
from open_agent_proxy.common.agent_client import AgentError, STOP_REASON_TO_FINISH_REASON


def _update(kind, text):
    return {"sessionUpdate": kind, "content": {"type": "text", "text": text}}


class FakeTurn:
    """Stands in for PromptTurn: replays canned session updates."""

    def __init__(self, updates, stop_reason="end_turn", error=None):
        self._updates = list(updates)
        self.error = error
        self.stop_reason = None
        self.closed = False
        self._final_stop_reason = stop_reason

    @property
    def finish_reason(self):
        return STOP_REASON_TO_FINISH_REASON.get(self.stop_reason, "stop")

    async def updates(self):
        try:
            for update in self._updates:
                yield update
            if self.error is not None:
                raise self.error
            self.stop_reason = self._final_stop_reason
        finally:
            self.closed = True


class FakeAgentClient:
    """Stands in for AgentClient without spawning an agent."""

    def __init__(self, updates=(), stop_reason="end_turn", error=None):
        self.updates = updates
        self.stop_reason = stop_reason
        self.error = error
        self.prompts = []
        self.session_cwds = []
        self.turn = None

    async def new_session(self, cwd):
        self.session_cwds.append(cwd)
        return "sess-1"

    def prompt(self, session_id, text):
        self.prompts.append(text)
        self.turn = FakeTurn(self.updates, self.stop_reason, self.error)
        return self.turn


@pytest.fixture
def thought():
    return lambda text: _update("agent_thought_chunk", text)


@pytest.fixture
def message():
    return lambda text: _update("agent_message_chunk", text)


@pytest.fixture
def fake_agent():
    """Factory for fake agent clients."""
    return FakeAgentClient


@pytest.fixture
def agent_error():
    return AgentError


@pytest.fixture(autouse=True)
def reset_agent_cache(monkeypatch):
    """Each test gets an empty per-model client cache."""
    monkeypatch.setattr(agent_client, "_agent_clients", {})
    monkeypatch.setattr(agent_client, "_agent_client_locks", {})


# A minimal ACP agent speaking newline-delimited JSON-RPC on stdio.
# Prompt "fail" errors out, prompt "wait" streams one thought and then only
# finishes when cancelled. Cancelled session ids are appended to argv[1].
FAKE_AGENT_SCRIPT = textwrap.dedent('''
    import json
    import sys

    cancel_log = sys.argv[1]
    waiting = {}

    def send(message):
        sys.stdout.write(json.dumps(message) + "\\n")
        sys.stdout.flush()

    def update(session_id, kind, text):
        send({"jsonrpc": "2.0", "method": "session/update", "params": {
            "sessionId": session_id,
            "update": {"sessionUpdate": kind, "content": {"type": "text", "text": text}},
        }})

    sys.stderr.write("fake agent ready\\n")
    sys.stderr.flush()

    while True:
        line = sys.stdin.readline()
        if not line:
            break
        message = json.loads(line)
        method = message.get("method")
        if method == "initialize":
            send({"jsonrpc": "2.0", "id": message["id"], "result": {"protocolVersion": 1, "authMethods": []}})
        elif method == "authenticate":
            send({"jsonrpc": "2.0", "id": message["id"], "result": {}})
        elif method == "session/new":
            if message["params"]["cwd"] == "/oversized":
                # one line past the reader's limit, and never an answer
                update("sess-1", "agent_message_chunk", "x" * 5000)
                continue
            send({"jsonrpc": "2.0", "id": message["id"], "result": {"sessionId": "sess-1"}})
        elif method == "session/prompt":
            session_id = message["params"]["sessionId"]
            text = message["params"]["prompt"][0]["text"]
            if text == "fail":
                send({"jsonrpc": "2.0", "id": message["id"], "error": {"code": -32603, "message": "boom"}})
                continue
            if text == "wait":
                update(session_id, "agent_thought_chunk", "waiting")
                waiting[session_id] = message["id"]
                continue
            update(session_id, "agent_thought_chunk", "Let me ")
            update(session_id, "agent_thought_chunk", "think.")
            send({"jsonrpc": "2.0", "id": "perm-1", "method": "session/request_permission", "params": {
                "sessionId": session_id, "toolCall": {"toolCallId": "t1"}, "options": [],
            }})
            reply = json.loads(sys.stdin.readline())
            update(session_id, "agent_message_chunk", "permission:" + reply["result"]["outcome"]["outcome"])
            send({"jsonrpc": "2.0", "id": "fs-1", "method": "fs/read_text_file", "params": {
                "sessionId": session_id, "path": "/etc/hosts",
            }})
            reply = json.loads(sys.stdin.readline())
            update(session_id, "agent_message_chunk", " fs:" + str(reply["error"]["code"]))
            send({"jsonrpc": "2.0", "id": message["id"], "result": {"stopReason": "end_turn"}})
        elif method == "session/cancel":
            session_id = message["params"]["sessionId"]
            with open(cancel_log, "a") as f:
                f.write(session_id + "\\n")
            if session_id in waiting:
                send({"jsonrpc": "2.0", "id": waiting.pop(session_id), "result": {"stopReason": "cancelled"}})
''')


@pytest.fixture
def cancel_log(tmp_path):
    """File the fake agent appends cancelled session ids to."""
    return tmp_path / "cancelled.log"


@pytest.fixture
def fake_agent_script(tmp_path, cancel_log):
    """Path and command line of a runnable fake ACP agent."""
    script = tmp_path / "fake_agent.py"
    script.write_text(FAKE_AGENT_SCRIPT)
    return sys.executable, [str(script), str(cancel_log)]
