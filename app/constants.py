"""Centralized constant definitions used across the runtime."""

from __future__ import annotations

DOWNLOAD_CHUNK_SIZE = 64 * 1024
STREAM_CHUNK_SIZE = 8 * 1024
SERVER_LOG_CAPACITY = 2000

READINESS_PROBE_INTERVAL = 0.5
READINESS_PROBE_ATTEMPTS = 60
HEALTH_ENDPOINT = "/v1/models"
CHAT_COMPLETIONS_ENDPOINT = "/v1/chat/completions"

DEFAULT_SERVER_HOST = "127.0.0.1"
DEFAULT_SERVER_PORT = 8080
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 1024
DEFAULT_TICK_INTERVAL = 0.1
FALLBACK_MODEL_ID = "local"

# Sentinel and origin prefixes carried inside the server log stream.
READY_SENTINEL = "[READY]"
READY_LINE = "[READY] llama-server is ready"
MODEL_SENTINEL = "[MODEL] "
STDOUT_TAG = "[OUT] "
STDERR_TAG = "[ERR] "

FRAME_DELIMITER = "\n\n"
FRAME_DATA_PREFIX = "data:"
FRAME_DONE_PAYLOAD = "[DONE]"

GPU_OFFLOAD_LAYERS = "99"
CPU_OFFLOAD_LAYERS = "0"

SERVER_BINARY_NAMES: tuple[str, ...] = (
    "llama-server",
    "server",
    "llama-server.exe",
    "server.exe",
)

RUNTIME_ARCHIVE_NAME = "llama-runtime.zip"
RUNTIME_BIN_DIRNAME = "llama-bin"
MODELS_DIRNAME = "models"
LOGS_DIRNAME = "logs"
SETTINGS_FILENAME = "settings.json"

GITHUB_LATEST_RELEASE_URL = "https://api.github.com/repos/ggml-org/llama.cpp/releases/latest"
HF_API_ROOT = "https://huggingface.co/api"
HF_FILE_URL = "https://huggingface.co/{repo}/resolve/main/{file}?download=true"
HF_SEARCH_LIMIT = 20
USER_AGENT = "mercury-lm"

DEFAULT_MODEL_REPO = "TheBloke/Mistral-7B-Instruct-v0.2-GGUF"
DEFAULT_MODEL_FILE = "mistral-7b-instruct-v0.2.Q4_K_M.gguf"

DEFAULT_SERVER_TIMEOUT_MINUTES = 30
DEFAULT_MAX_CHAT_HISTORY = 1000
