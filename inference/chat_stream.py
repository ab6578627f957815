"""Streaming chat-completion client for the local llama-server."""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Sequence, Union

import httpx

from app.constants import (
    CHAT_COMPLETIONS_ENDPOINT,
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    FRAME_DATA_PREFIX,
    FRAME_DELIMITER,
    FRAME_DONE_PAYLOAD,
    STREAM_CHUNK_SIZE,
)
from app.errors import ProtocolError, describe_error
from state_engine.mailbox import Mailbox

logger = logging.getLogger("mercury.chat_stream")


@dataclass
class ChatMessage:
    role: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class Token:
    text: str


@dataclass(frozen=True)
class StreamDone:
    pass


@dataclass(frozen=True)
class StreamError:
    message: str


StreamEvent = Union[Token, StreamDone, StreamError]


def build_chat_request(
    model: str,
    messages: Iterable[ChatMessage],
    *,
    temperature: float = DEFAULT_TEMPERATURE,
    max_tokens: int = DEFAULT_MAX_TOKENS,
) -> dict[str, Any]:
    """Compose the JSON body for a streamed completion."""
    return {
        "model": model,
        "messages": [message.to_dict() for message in messages],
        "stream": True,
        "temperature": temperature,
        "max_tokens": max_tokens,
    }


def parse_frame(frame: str) -> StreamEvent | None:
    """Interpret one delimited frame.

    Returns StreamDone for the terminal payload, a Token for a content delta,
    or None for a well-formed frame carrying no text. Raises ProtocolError
    when the payload is not JSON.
    """
    payload = frame.strip()
    if payload.startswith(FRAME_DATA_PREFIX):
        payload = payload[len(FRAME_DATA_PREFIX):].strip()
    if payload == FRAME_DONE_PAYLOAD:
        return StreamDone()
    try:
        data = json.loads(payload)
    except ValueError as exc:
        raise ProtocolError(f"unparseable frame: {payload[:80]!r}") from exc
    try:
        content = data["choices"][0]["delta"]["content"]
    except (KeyError, IndexError, TypeError):
        return None
    if isinstance(content, str) and content:
        return Token(content)
    return None


class FrameParser:
    """Accumulates decoded text and yields events for every complete frame."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.done = False

    def feed(self, chunk: bytes) -> list[StreamEvent]:
        if self.done:
            return []
        self._buffer += self._decoder.decode(chunk)
        self._buffer = self._buffer.replace("\r\n", "\n")
        events: list[StreamEvent] = []
        while not self.done:
            index = self._buffer.find(FRAME_DELIMITER)
            if index < 0:
                break
            frame = self._buffer[:index]
            self._buffer = self._buffer[index + len(FRAME_DELIMITER):]
            if not frame.strip():
                continue
            try:
                event = parse_frame(frame)
            except ProtocolError as exc:
                logger.debug("Skipping frame: %s", exc)
                continue
            if event is None:
                continue
            events.append(event)
            if isinstance(event, StreamDone):
                self.done = True
        return events

    @property
    def pending(self) -> str:
        return self._buffer


class StreamSession:
    """Receiving end of one chat request."""

    def __init__(self, mailbox: Mailbox[StreamEvent], task: asyncio.Task[None]) -> None:
        self.mailbox = mailbox
        self.task = task

    @property
    def active(self) -> bool:
        return not self.mailbox.closed

    def cancel(self) -> None:
        """Abandon the stream: nothing further is delivered, the reader is cancelled."""
        self.mailbox.close()
        self.task.cancel()


def _slices(data: bytes, size: int) -> Iterator[bytes]:
    for start in range(0, len(data), size):
        yield data[start:start + size]


async def _run_stream(
    url: str,
    body: dict[str, Any],
    client: httpx.AsyncClient | None,
    mailbox: Mailbox[StreamEvent],
) -> None:
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=httpx.Timeout(30.0, read=None))
    parser = FrameParser()
    try:
        async with client.stream(
            "POST",
            url,
            json=body,
            headers={"Accept": "text/event-stream"},
        ) as response:
            if response.is_error:
                await response.aread()
                mailbox.send(StreamError(f"request failed: HTTP {response.status_code}"))
                mailbox.send(StreamDone())
                return
            # Whatever has arrived is parsed immediately, at most 8 KiB at a time.
            async for data in response.aiter_bytes():
                for chunk in _slices(data, STREAM_CHUNK_SIZE):
                    for event in parser.feed(chunk):
                        if not mailbox.send(event):
                            logger.debug("Chat stream abandoned by receiver")
                            return
                    if parser.done:
                        return
        mailbox.send(StreamDone())
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        message = describe_error(exc)
        logger.warning("Chat stream failed: %s", message)
        mailbox.send(StreamError(f"read failed: {message}"))
        mailbox.send(StreamDone())
    finally:
        if owns_client:
            await client.aclose()


def send_chat(
    server_url: str,
    model_id: str,
    history: Sequence[ChatMessage],
    *,
    temperature: float = DEFAULT_TEMPERATURE,
    max_tokens: int = DEFAULT_MAX_TOKENS,
    client: httpx.AsyncClient | None = None,
) -> StreamSession:
    """Open a streamed completion on a background task and return its session."""
    body = build_chat_request(model_id, history, temperature=temperature, max_tokens=max_tokens)
    url = f"{server_url.rstrip('/')}{CHAT_COMPLETIONS_ENDPOINT}"
    mailbox: Mailbox[StreamEvent] = Mailbox("chat-stream")
    logger.debug("Dispatching %s messages to %s (model=%s)", len(body["messages"]), url, model_id)
    task = asyncio.create_task(_run_stream(url, body, client, mailbox), name="chat-stream")
    return StreamSession(mailbox, task)


__all__ = [
    "ChatMessage",
    "FrameParser",
    "StreamDone",
    "StreamError",
    "StreamEvent",
    "StreamSession",
    "Token",
    "build_chat_request",
    "parse_frame",
    "send_chat",
]
