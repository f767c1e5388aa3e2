import shutil
import asyncio
from typing import Any, AsyncIterator, Awaitable, Dict, List, Optional

from acp import Client, ClientSideConnection, RequestError, PROTOCOL_VERSION
from acp.schema import (
    AuthenticateRequest,
    CancelNotification,
    InitializeRequest,
    NewSessionRequest,
    PromptRequest,
    RequestPermissionRequest,
    RequestPermissionResponse,
    SessionNotification,
)

from .config import (
    AGENT_COMMAND, AGENT_ARGS, AGENT_MODEL_FLAG, AGENT_REQUEST_TIMEOUT, logger
)
from .credentials import AgentCredentials

# Agent output lines carry whole JSON-RPC messages; the default 64 KiB is too small.
STREAM_LIMIT = 16 * 1024 * 1024

STOP_REASON_TO_FINISH_REASON = {
    "end_turn": "stop",
    "max_tokens": "length",
    "max_turn_requests": "length",
    "refusal": "content_filter",
    "cancelled": "stop",
}

_STREAM_END = object()


class AgentError(RuntimeError):
    """Error reported by, or while talking to, the agent process."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class ProxyClient(Client):
    """
    Client half of the ACP connection.

    Session updates are routed to the queue of the session they belong to, as
    wire-shaped dicts. The proxy exposes no tools and no filesystem, so
    permission requests are declined and file access is refused.
    """

    def __init__(self, model: str):
        self.model = model
        self.sessions: Dict[str, asyncio.Queue] = {}

    async def sessionUpdate(self, params: SessionNotification) -> None:
        notification = params.model_dump(by_alias=True, exclude_none=True)
        queue = self.sessions.get(notification["sessionId"])
        if queue is None:
            logger.debug(f"[AGENT-UPDATE] Update for inactive session '{notification['sessionId']}'")
            return
        queue.put_nowait(notification["update"])

    async def requestPermission(self, params: RequestPermissionRequest) -> RequestPermissionResponse:
        logger.info(f"[AGENT-PERMISSION] Declining permission request from model '{self.model}'")
        return RequestPermissionResponse.model_validate({"outcome": {"outcome": "cancelled"}})

    async def readTextFile(self, params):
        logger.warning(f"[AGENT-REQUEST] Model '{self.model}' asked to read a file, refusing")
        raise RequestError.method_not_found("fs/read_text_file")

    async def writeTextFile(self, params):
        logger.warning(f"[AGENT-REQUEST] Model '{self.model}' asked to write a file, refusing")
        raise RequestError.method_not_found("fs/write_text_file")


class PromptTurn:
    """
    One ``session/prompt`` call; ``updates()`` yields the session updates it produces.

    Iteration ends when the agent answers the prompt request; ``stop_reason``
    is set at that point. A turn that ends any other way (consumer closed the
    generator, request timed out) is cancelled on the agent.
    """

    def __init__(self, client: "AgentClient", session_id: str, prompt: str):
        self._client = client
        self.session_id = session_id
        self.prompt = prompt
        self.stop_reason: Optional[str] = None

    @property
    def finish_reason(self) -> str:
        return STOP_REASON_TO_FINISH_REASON.get(self.stop_reason, "stop")

    async def updates(self) -> AsyncIterator[Dict[str, Any]]:
        queue = self._client.open_session_queue(self.session_id)
        request = asyncio.ensure_future(self._client.send_prompt(self.session_id, self.prompt))
        request.add_done_callback(lambda _: queue.put_nowait(_STREAM_END))
        try:
            while True:
                update = await queue.get()
                if update is _STREAM_END:
                    break
                yield update
            result = request.result()
            self.stop_reason = result.get("stopReason")
            logger.info(f"[AGENT-PROMPT] Session '{self.session_id}' finished: stopReason={self.stop_reason}")
        finally:
            self._client.close_session_queue(self.session_id)
            if not request.done():
                request.cancel()
            if self.stop_reason is None:
                logger.info(f"[AGENT-PROMPT] Session '{self.session_id}' did not finish, cancelling turn")
                await self._client.cancel(self.session_id)


class AgentClient:
    """Agent Client Protocol connection to one agent process, pinned to one model."""

    def __init__(self, model: str, credentials: AgentCredentials,
                 command: str = AGENT_COMMAND, args: Optional[List[str]] = None,
                 model_flag: str = AGENT_MODEL_FLAG, timeout: float = AGENT_REQUEST_TIMEOUT):
        self.model = model
        self.credentials = credentials
        self.command = command
        self.args = list(AGENT_ARGS if args is None else args)
        self.model_flag = model_flag
        self.timeout = timeout
        self.agent_info: Dict[str, Any] = {}
        self._handler = ProxyClient(model)
        self._process: Optional[asyncio.subprocess.Process] = None
        self._conn: Optional[ClientSideConnection] = None
        self._exited: Optional[asyncio.Future] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._cleanup_lock = asyncio.Lock()

    @property
    def is_alive(self) -> bool:
        return (
            self._conn is not None
            and self._process is not None
            and self._process.returncode is None
        )

    async def start(self) -> None:
        command = shutil.which(self.command)
        if not command:
            raise AgentError(f"Agent command not found: {self.command}")
        args = list(self.args)
        if self.model_flag and self.model:
            args.extend([self.model_flag, self.model])
        logger.info(f"[AGENT-INIT] Model '{self.model}': command='{command}', args={args}")

        self._process = await asyncio.create_subprocess_exec(
            command,
            *args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=self.credentials.agent_env(),
            limit=STREAM_LIMIT,
        )
        self._exited = asyncio.get_running_loop().create_future()
        self._watch_task = asyncio.create_task(self._watch_process())
        self._stderr_task = asyncio.create_task(self._stderr_loop())
        self._conn = ClientSideConnection(lambda _agent: self._handler, self._process.stdin, self._process.stdout)

        try:
            self.agent_info = await self._call("initialize", self._connection().initialize(
                InitializeRequest.model_validate({
                    "protocolVersion": PROTOCOL_VERSION,
                    "clientCapabilities": {"fs": {"readTextFile": False, "writeTextFile": False}},
                })
            ))
            logger.info(
                f"[AGENT-INIT] Model '{self.model}': agent speaks protocol "
                f"v{self.agent_info.get('protocolVersion')}"
            )
            if self.credentials.auth_method:
                await self._call("authenticate", self._connection().authenticate(
                    AuthenticateRequest.model_validate({"methodId": self.credentials.auth_method})
                ))
                logger.info(f"[AGENT-INIT] Model '{self.model}': authenticated via '{self.credentials.auth_method}'")
        except Exception:
            await self.close()
            raise

    async def new_session(self, cwd: str) -> str:
        result = await self._call("session/new", self._connection().newSession(
            NewSessionRequest.model_validate({"cwd": cwd, "mcpServers": []})
        ))
        session_id = result.get("sessionId")
        if not session_id:
            raise AgentError("Agent did not return a sessionId")
        logger.info(f"[AGENT-SESSION] Model '{self.model}': created session '{session_id}'")
        return session_id

    def prompt(self, session_id: str, text: str) -> PromptTurn:
        return PromptTurn(self, session_id, text)

    async def send_prompt(self, session_id: str, text: str) -> Dict[str, Any]:
        # Prompt timeouts leave the agent running for the other sessions.
        return await self._call("session/prompt", self._connection().prompt(
            PromptRequest.model_validate({
                "sessionId": session_id,
                "prompt": [{"type": "text", "text": text}],
            })
        ), stop_on_timeout=False)

    async def cancel(self, session_id: str) -> None:
        if not self.is_alive:
            logger.debug(f"[AGENT-PROMPT] Agent gone, nothing to cancel for session '{session_id}'")
            return
        try:
            await self._conn.cancel(CancelNotification.model_validate({"sessionId": session_id}))
        except OSError as e:
            logger.warning(f"[AGENT-PROMPT] Could not cancel session '{session_id}': {e}")

    def open_session_queue(self, session_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._handler.sessions[session_id] = queue
        return queue

    def close_session_queue(self, session_id: str) -> None:
        self._handler.sessions.pop(session_id, None)

    def _connection(self) -> ClientSideConnection:
        if not self.is_alive:
            raise AgentError(f"Agent for model '{self.model}' is not running")
        return self._conn

    async def _call(self, method: str, call: Awaitable[Any], stop_on_timeout: bool = True) -> Dict[str, Any]:
        """
        Awaits one ACP request, racing it against the agent's exit and the request timeout.

        The response model comes back as its wire-shaped dict. Agent-side errors
        and transport failures are raised as AgentError. A control request that
        times out means the agent stopped answering: the client is closed so the
        cache starts a fresh agent on the next request.
        """
        task = asyncio.ensure_future(call)
        try:
            done, _ = await asyncio.wait(
                {task, self._exited}, timeout=self.timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            if not task.done():
                task.cancel()

        if task in done:
            try:
                response = task.result()
            except RequestError as e:
                raise AgentError(str(e), e.code) from e
            except OSError as e:
                raise AgentError(f"Agent for model '{self.model}' closed its input: {e}") from e
            if response is None:
                return {}
            return response.model_dump(by_alias=True, exclude_none=True)

        if self._exited in done:
            raise AgentError(f"Agent for model '{self.model}' exited")

        if stop_on_timeout:
            logger.error(f"[AGENT-REQUEST] Model '{self.model}': '{method}' got no answer, stopping the agent")
            await self.close()
        raise AgentError(f"Agent request '{method}' timed out after {self.timeout}s")

    async def _watch_process(self) -> None:
        returncode = await self._process.wait()
        if not self._exited.done():
            self._exited.set_result(returncode)
        logger.info(f"[AGENT-EXIT] Agent for model '{self.model}' exited with code {returncode}")

    async def _stderr_loop(self) -> None:
        while True:
            line = await self._process.stderr.readline()
            if not line:
                break
            logger.info(f"[AGENT-STDERR] {self.model}: {line.decode('utf-8', errors='replace').rstrip()}")

    async def close(self) -> None:
        async with self._cleanup_lock:
            if self._process is not None and self._process.returncode is None:
                self._process.terminate()
                try:
                    await asyncio.wait_for(self._process.wait(), timeout=5)
                except asyncio.TimeoutError:
                    self._process.kill()
                    await self._process.wait()
            conn, self._conn = self._conn, None
            if conn is not None:
                await conn.close()
            if self._exited is not None and not self._exited.done():
                self._exited.set_result(None)
            tasks = [t for t in (self._watch_task, self._stderr_task) if t and not t.done()]
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"[AGENT-CLEANUP] Agent for model '{self.model}' cleaned up")


# Process-wide cache: agent model id -> running client
_agent_clients: Dict[str, AgentClient] = {}
# One lock per model, so a slow start never holds up requests for other models.
_agent_client_locks: Dict[str, asyncio.Lock] = {}
_credentials = AgentCredentials()


def set_agent_credentials(credentials: AgentCredentials) -> None:
    global _credentials
    _credentials = credentials


async def get_agent_client(model: str) -> AgentClient:
    """Returns the running client for ``model``, starting one on first use."""
    client = _agent_clients.get(model)
    if client is not None and client.is_alive:
        return client

    lock = _agent_client_locks.setdefault(model, asyncio.Lock())
    async with lock:
        client = _agent_clients.get(model)
        if client is not None and client.is_alive:
            return client
        if client is not None:
            logger.warning(f"[AGENT-CACHE] Agent for model '{model}' died, restarting")
        client = AgentClient(model, _credentials)
        await client.start()
        _agent_clients[model] = client
        return client


async def shutdown_agent_clients() -> None:
    logger.info(f"[AGENT-SHUTDOWN] Shutting down {len(_agent_clients)} agent clients")
    for model, client in list(_agent_clients.items()):
        try:
            await client.close()
        except Exception as e:
            logger.error(f"[AGENT-SHUTDOWN] Error closing agent for model '{model}': {e}")
    _agent_clients.clear()
