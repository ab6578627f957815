"""Inference package exports."""

from .backends import Backend, find_server_bin, guess_backend, offload_layers
from .chat_stream import ChatMessage, StreamDone, StreamError, StreamEvent, StreamSession, Token, send_chat
from .supervisor import ProcessHandle, RingLog, start_server

__all__ = [
    "Backend",
    "ChatMessage",
    "ProcessHandle",
    "RingLog",
    "StreamDone",
    "StreamError",
    "StreamEvent",
    "StreamSession",
    "Token",
    "find_server_bin",
    "guess_backend",
    "offload_layers",
    "send_chat",
    "start_server",
]
