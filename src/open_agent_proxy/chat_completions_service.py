import json
import time
import uuid
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import Request
from fastapi.responses import StreamingResponse, JSONResponse
from pydantic import ValidationError

from open_agent_proxy.common.config import logger, resolve_model, AGENT_CWD, DEFAULT_MODEL
from open_agent_proxy.common.agent_client import AgentClient, AgentError, get_agent_client
from open_agent_proxy.models.chat_models import (
    ChatCompletionRequest, ChatMessage, ChatCompletionChunk, ChunkChoice, ChoiceDelta,
    ChatCompletion, CompletionChoice, AssistantMessage
)
from open_agent_proxy.reasoning_buffer import ReasoningReorderBuffer, reasoning_reorder

THOUGHT_UPDATE = "agent_thought_chunk"
MESSAGE_UPDATE = "agent_message_chunk"

ROLE_LABELS = {"user": "User", "assistant": "Assistant", "tool": "Tool", "function": "Tool"}
SYSTEM_ROLES = ("system", "developer")


def error_body(message: str, error_type: str, code: Optional[str] = None) -> Dict[str, Any]:
    return {"error": {"message": message, "type": error_type, "code": code}}


def content_to_text(content) -> str:
    """Flattens OpenAI message content (string or list of parts) into plain text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    parts = []
    for part in content:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") in ("text", "input_text"):
            parts.append(part.get("text", ""))
    return "\n".join(parts)


def messages_to_prompt(messages: List[ChatMessage]) -> str:
    """
    Concatenates a chat history into the single prompt the agent accepts.

    System messages lead, the remaining turns are labelled by role. A lone user
    message is passed through verbatim.
    """
    system_blocks = []
    turns = []
    for message in messages:
        text = content_to_text(message.content)
        if not text:
            continue
        if message.role in SYSTEM_ROLES:
            system_blocks.append(text)
        else:
            turns.append((message.role, text))

    if not system_blocks and len(turns) == 1 and turns[0][0] == "user":
        return turns[0][1]

    blocks = list(system_blocks)
    for role, text in turns:
        blocks.append(f"{ROLE_LABELS.get(role, role.capitalize())}: {text}")
    return "\n\n".join(blocks)


def update_text(update: Dict[str, Any]) -> Optional[str]:
    content = update.get("content")
    if isinstance(content, dict) and content.get("type") == "text":
        return content.get("text", "")
    return None


def dispatch_update(update: Dict[str, Any], buffer: ReasoningReorderBuffer) -> None:
    """Routes one agent session update into the reorder buffer."""
    kind = update.get("sessionUpdate")
    if kind in (THOUGHT_UPDATE, MESSAGE_UPDATE):
        text = update_text(update)
        if text is None:
            logger.debug(f"[CHAT-COMPLETIONS] Skipping non-text '{kind}' content")
        elif kind == THOUGHT_UPDATE:
            buffer.on_thought_fragment(text)
        else:
            buffer.on_answer_fragment(text)
    else:
        # tool calls, plans, echoed user chunks: nothing to emit for chat clients
        logger.debug(f"[CHAT-COMPLETIONS] Passing through '{kind}' update")


class ChunkSink:
    """Turns deltas into SSE frames, held until the response generator drains them."""

    def __init__(self, completion_id: str, model: str, created: int):
        self.completion_id = completion_id
        self.model = model
        self.created = created
        self.closed = False
        self._frames: List[str] = []

    def _write(self, delta: ChoiceDelta, finish_reason: Optional[str] = None) -> None:
        if self.closed:
            logger.debug("[CHAT-COMPLETIONS-STREAM] Sink closed, dropping chunk")
            return
        chunk = ChatCompletionChunk(
            id=self.completion_id,
            created=self.created,
            model=self.model,
            choices=[ChunkChoice(delta=delta, finish_reason=finish_reason)],
        )
        data = chunk.model_dump()
        for choice in data["choices"]:
            choice["delta"] = {k: v for k, v in choice["delta"].items() if v is not None}
        self._frames.append(f"data: {json.dumps(data)}\n\n")

    def write_role(self) -> None:
        self._write(ChoiceDelta(role="assistant"))

    def write_reasoning(self, text: str) -> None:
        self._write(ChoiceDelta(reasoning_content=text))

    def write_content(self, text: str) -> None:
        self._write(ChoiceDelta(content=text))

    def write_finish(self, finish_reason: str) -> None:
        self._write(ChoiceDelta(), finish_reason=finish_reason)

    def drain(self) -> List[str]:
        frames, self._frames = self._frames, []
        return frames

    def close(self) -> None:
        self.closed = True
        self._frames.clear()


class CollectingSink:
    """Accumulates deltas for a non-streaming response."""

    def __init__(self):
        self.reasoning_parts: List[str] = []
        self.content_parts: List[str] = []

    def write_reasoning(self, text: str) -> None:
        self.reasoning_parts.append(text)

    def write_content(self, text: str) -> None:
        self.content_parts.append(text)


async def stream_chat_completion(client: AgentClient, session_id: str, prompt: str,
                                 model: str, completion_id: str, created: int) -> AsyncIterator[str]:
    """Runs one prompt turn and yields it as OpenAI SSE frames."""
    sink = ChunkSink(completion_id, model, created)
    turn = client.prompt(session_id, prompt)
    try:
        sink.write_role()
        try:
            with reasoning_reorder(sink) as buffer:
                async with aclosing(turn.updates()) as updates:
                    async for update in updates:
                        dispatch_update(update, buffer)
                        for frame in sink.drain():
                            yield frame
        except Exception as e:
            logger.error(f"[CHAT-COMPLETIONS-STREAM] Error during agent stream: {e}")
            for frame in sink.drain():
                yield frame
            yield f"data: {json.dumps(error_body(str(e), 'upstream_error'))}\n\n"
            yield "data: [DONE]\n\n"
            return

        for frame in sink.drain():
            yield frame
        sink.write_finish(turn.finish_reason)
        for frame in sink.drain():
            yield frame
        yield "data: [DONE]\n\n"
    finally:
        sink.close()


async def complete_chat(client: AgentClient, session_id: str, prompt: str,
                        model: str, completion_id: str, created: int) -> ChatCompletion:
    """Runs one prompt turn and collects it into a single chat.completion."""
    sink = CollectingSink()
    turn = client.prompt(session_id, prompt)
    with reasoning_reorder(sink) as buffer:
        async with aclosing(turn.updates()) as updates:
            async for update in updates:
                dispatch_update(update, buffer)

    message = AssistantMessage(
        content="".join(sink.content_parts),
        reasoning_content="".join(sink.reasoning_parts) or None,
    )
    return ChatCompletion(
        id=completion_id,
        created=created,
        model=model,
        choices=[CompletionChoice(message=message, finish_reason=turn.finish_reason)],
    )


async def handle_chat_completions(request: Request):
    """
    Handles requests to the /v1/chat/completions endpoint.
    Flattens the conversation into one prompt and runs it on the model's agent.
    """
    try:
        request_data = await request.json()
        chat_request = ChatCompletionRequest.model_validate(request_data)
    except ValueError as e:
        # json.JSONDecodeError and pydantic's ValidationError are both ValueErrors
        logger.warning(f"[CHAT-COMPLETIONS] Rejecting malformed request: {e}")
        message = "Invalid request body" if not isinstance(e, ValidationError) else str(e)
        return JSONResponse(error_body(message, "invalid_request_error"), status_code=400)

    model = chat_request.model or DEFAULT_MODEL
    agent_model = resolve_model(model)
    logger.info(f"[CHAT-COMPLETIONS] Request: model={model} (agent: {agent_model}), stream={chat_request.stream}, messages={len(chat_request.messages)}")
    if agent_model is None:
        return JSONResponse(
            error_body(f"The model '{model}' does not exist", "invalid_request_error", "model_not_found"),
            status_code=404,
        )

    prompt = messages_to_prompt(chat_request.messages)
    if not prompt:
        return JSONResponse(error_body("No message content to send", "invalid_request_error"), status_code=400)

    try:
        client = await get_agent_client(agent_model)
        session_id = await client.new_session(AGENT_CWD)
    except AgentError as e:
        logger.error(f"[CHAT-COMPLETIONS] Could not start agent session: {e}")
        return JSONResponse(error_body(str(e), "upstream_error"), status_code=502)

    completion_id = f"chatcmpl-{uuid.uuid4().hex}"
    created = int(time.time())

    if chat_request.stream:
        logger.info(f"[CHAT-COMPLETIONS-STREAM] Streaming session '{session_id}'")
        return StreamingResponse(
            stream_chat_completion(client, session_id, prompt, model, completion_id, created),
            media_type="text/event-stream",
        )

    try:
        completion = await complete_chat(client, session_id, prompt, model, completion_id, created)
    except AgentError as e:
        logger.error(f"[CHAT-COMPLETIONS-NON-STREAM] Agent error: {e}")
        return JSONResponse(error_body(str(e), "upstream_error"), status_code=502)
    logger.info(f"[CHAT-COMPLETIONS-NON-STREAM] Completed session '{session_id}'")
    return JSONResponse(completion.model_dump(exclude_none=True))
