"""Tests for the control loop: chat history, downloads and status text."""

from __future__ import annotations

import asyncio
import json
import os
import sys
import tempfile
import textwrap
import unittest
from pathlib import Path
from unittest import mock

import httpx

from app.errors import MercuryError
from app.settings import RuntimeSettings, clear_settings_cache
from downloads.engine import DownloadKind
from state_engine.engine import StateEngine
from state_engine.status import StatusKind


def _sse(*tokens: str) -> bytes:
    frames = [
        f"data: {json.dumps({'choices': [{'delta': {'content': token}}]})}\n\n"
        for token in tokens
    ]
    return ("".join(frames) + "data: [DONE]\n\n").encode("utf-8")


class StateEngineTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(temp_dir.cleanup)
        self.root = Path(temp_dir.name)
        patcher = mock.patch.dict(
            os.environ,
            {"MERCURY_DATA_DIR": str(self.root), "MERCURY_SETTINGS_PATH": str(self.root / "settings.json")},
        )
        patcher.start()
        self.addCleanup(patcher.stop)
        clear_settings_cache()
        self.addCleanup(clear_settings_cache)

        self.chat_bodies: list[dict] = []
        self.reply = _sse("Hi")
        self.model_bytes = b"GGUF" * 1024
        self.model_body = lambda: self.model_bytes

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/chat/completions"):
                self.chat_bodies.append(json.loads(request.content))
                return httpx.Response(200, content=self.reply)
            if request.url.host == "huggingface.co":
                return httpx.Response(200, content=self.model_body())
            if request.url.path.endswith("/v1/models"):
                return httpx.Response(503, json={"error": "loading"})
            return httpx.Response(404)

        self.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        self.engine = StateEngine(
            RuntimeSettings.load(),
            runtime_dir=self.root,
            models_dir=self.root / "models",
            http_client=self.client,
        )
        self.engine.user_settings.auto_start_server = False

    async def asyncTearDown(self) -> None:
        await self.engine.shutdown()
        await self.client.aclose()

    async def tick_until(self, predicate, attempts: int = 200) -> None:
        for _ in range(attempts):
            await self.engine.tick()
            if predicate():
                return
            await asyncio.sleep(0.01)
        self.fail("engine did not reach the expected state")


class ChatFlowTests(StateEngineTestCase):
    async def test_reply_streams_into_assistant_message(self) -> None:
        self.reply = _sse("Hel", "lo")
        session = self.engine.send_message("  hello  ")
        self.assertIsNotNone(session)
        self.assertTrue(self.engine.state.streaming)
        self.assertEqual(self.engine.state.status_text, "Server not ready yet")

        await self.tick_until(lambda: not self.engine.state.streaming)
        messages = [message.to_dict() for message in self.engine.state.messages]
        self.assertEqual(
            messages,
            [{"role": "user", "content": "hello"}, {"role": "assistant", "content": "Hello"}],
        )
        self.assertEqual(self.engine.state.status_text, "Idle")
        self.assertEqual(self.chat_bodies[0]["model"], "local")
        self.assertEqual(self.chat_bodies[0]["messages"], [{"role": "user", "content": "hello"}])

    async def test_blank_message_is_ignored(self) -> None:
        self.assertIsNone(self.engine.send_message("   "))
        self.assertEqual(self.engine.state.messages, [])

    async def test_history_includes_previous_turns(self) -> None:
        self.engine.send_message("first")
        await self.tick_until(lambda: not self.engine.state.streaming)
        self.engine.send_message("second")
        await self.tick_until(lambda: not self.engine.state.streaming)

        self.assertEqual(
            self.chat_bodies[1]["messages"],
            [
                {"role": "user", "content": "first"},
                {"role": "assistant", "content": "Hi"},
                {"role": "user", "content": "second"},
            ],
        )

    async def test_restart_keeps_prefix_and_merges_next_message(self) -> None:
        self.engine.send_message("first")
        await self.tick_until(lambda: not self.engine.state.streaming)

        self.engine.restart_from(0)
        self.assertEqual(len(self.engine.state.messages), 1)
        self.engine.send_message("more detail")
        self.assertEqual(self.engine.state.messages[0].content, "first\n\nmore detail")
        self.assertEqual(self.engine.state.messages[-1].role, "assistant")

        with self.assertRaises(MercuryError):
            self.engine.restart_from(10)

    async def test_cancel_chat(self) -> None:
        self.engine.send_message("hello")
        self.assertTrue(self.engine.cancel_chat())
        self.assertFalse(self.engine.state.streaming)
        self.assertEqual(self.engine.state.status_text, "Canceled")
        self.assertFalse(self.engine.cancel_chat())

    async def test_history_is_trimmed(self) -> None:
        self.engine.user_settings.max_chat_history = 2
        self.engine.send_message("one")
        await self.tick_until(lambda: not self.engine.state.streaming)
        self.engine.send_message("two")
        self.assertEqual([message.content for message in self.engine.state.messages], ["two", ""])

    async def test_edit_and_new_chat(self) -> None:
        self.engine.send_message("typo")
        await self.tick_until(lambda: not self.engine.state.streaming)
        self.engine.edit_message(0, "fixed")
        self.assertEqual(self.engine.state.messages[0].content, "fixed")
        self.engine.new_chat()
        self.assertEqual(self.engine.state.messages, [])
        self.assertEqual(self.engine.state.status_text, "New chat started")


class DownloadFlowTests(StateEngineTestCase):
    async def test_model_download_completes(self) -> None:
        record = self.engine.start_model_download("org/repo", "tiny.gguf")
        self.assertIsNotNone(record)
        self.assertIn(DownloadKind.MODEL, self.engine.state.downloads)

        await self.tick_until(lambda: not self.engine.state.downloads)
        target = self.root / "models" / "tiny.gguf"
        self.assertEqual(self.engine.state.status_text, "Model ready")
        self.assertEqual(self.engine.state.model_path, target)
        self.assertEqual(target.read_bytes(), self.model_bytes)
        self.assertEqual([model.file_name for model in self.engine.state.downloaded_models], ["tiny.gguf"])

    async def test_failed_model_download_can_be_retried(self) -> None:
        async def broken():
            yield self.model_bytes[:1024]
            raise httpx.ReadError("connection reset")

        self.model_body = broken
        self.engine.start_model_download("org/repo", "tiny.gguf")
        await self.tick_until(lambda: not self.engine.state.downloads)
        self.assertTrue(self.engine.state.status_text.startswith("Model err: network error"))
        self.assertEqual(self.engine.state.downloaded_models, [])

        self.model_body = lambda: self.model_bytes
        record = self.engine.start_model_download("org/repo", "tiny.gguf")
        self.assertIsNotNone(record)
        self.assertEqual(self.engine.state.status_text, "Downloading model…")
        await self.tick_until(lambda: not self.engine.state.downloads)
        self.assertEqual(self.engine.state.status_text, "Model ready")
        self.assertEqual((self.root / "models" / "tiny.gguf").read_bytes(), self.model_bytes)

    async def test_existing_model_is_not_downloaded_again(self) -> None:
        target = self.root / "models" / "tiny.gguf"
        target.parent.mkdir(parents=True)
        target.write_bytes(b"GGUF")
        self.assertIsNone(self.engine.start_model_download("org/repo", "tiny.gguf"))
        self.assertEqual(self.engine.state.status_text, "Model already downloaded")
        self.assertEqual(self.engine.state.model_path, target)

    async def test_second_download_of_same_kind_is_refused(self) -> None:
        self.engine.start_model_download("org/repo", "a.gguf")
        with self.assertRaises(MercuryError):
            self.engine.start_model_download("org/repo", "b.gguf")
        self.assertTrue(self.engine.cancel_download(DownloadKind.MODEL))
        self.assertNotIn(DownloadKind.MODEL, self.engine.state.downloads)
        self.assertFalse(self.engine.cancel_download(DownloadKind.MODEL))

    async def test_missing_repo_or_file_is_rejected(self) -> None:
        with self.assertRaises(MercuryError):
            self.engine.start_model_download("", "")

    async def test_runtime_error_is_reported_in_status(self) -> None:
        self.engine.start_runtime_download("https://example.test/llama.zip")
        await self.tick_until(lambda: not self.engine.state.downloads)
        self.assertTrue(self.engine.state.status_text.startswith("Runtime err: HTTP 404"))


class ServerControlTests(StateEngineTestCase):
    async def test_start_without_runtime_reports_error(self) -> None:
        self.assertFalse(await self.engine.start_server())
        status = self.engine.lifecycle.status
        self.assertEqual(status.message, "Start failed: no server")
        self.assertEqual(self.engine.state.status_text, "Start failed: no server")

    async def test_auto_start_without_model_reports_error(self) -> None:
        bin_dir = self.root / "llama-bin"
        bin_dir.mkdir()
        (bin_dir / "llama-server").write_bytes(b"")
        self.engine.detect_runtimes()
        self.engine.select_runtime("Local Runtime")
        self.engine.user_settings.auto_start_server = True

        self.engine.mark_activity()
        await self.engine.tick()
        self.assertEqual(self.engine.lifecycle.status.message, "Auto-start failed: no model")

    async def test_snapshot_is_serialisable(self) -> None:
        self.engine.send_message("hello")
        snapshot = self.engine.snapshot()
        json.dumps(snapshot)
        self.assertEqual(snapshot["server"]["status"]["kind"], "stopped")
        self.assertEqual(snapshot["messages"][0], {"role": "user", "content": "hello"})


SLOW_SERVER = textwrap.dedent(
    """\
    import time

    print("loading model", flush=True)
    time.sleep(30)
    """
)


@unittest.skipUnless(os.name == "posix", "fake server relies on a shebang script")
class UnansweredProbeTests(StateEngineTestCase):
    async def asyncSetUp(self) -> None:
        patcher = mock.patch.dict(os.environ, {"MERCURY_PROBE_ATTEMPTS": "2", "MERCURY_PROBE_INTERVAL": "0"})
        patcher.start()
        self.addCleanup(patcher.stop)
        await super().asyncSetUp()
        binary = self.root / "llama-bin" / "llama-server"
        binary.parent.mkdir(exist_ok=True)
        binary.write_text(f"#!{sys.executable}\n{SLOW_SERVER}", encoding="utf-8")
        binary.chmod(0o755)
        model = self.root / "models" / "m.gguf"
        model.parent.mkdir(exist_ok=True)
        model.write_bytes(b"GGUF")
        self.engine.detect_runtimes()
        self.engine.select_runtime("Local Runtime")
        self.engine.select_model(model)

    async def test_server_stays_starting_when_never_ready(self) -> None:
        self.assertEqual(self.engine.settings.probe_attempts, 2)
        self.assertTrue(await self.engine.start_server())
        handle = self.engine.lifecycle.handle
        await asyncio.wait_for(asyncio.shield(handle.tasks[-1]), timeout=5.0)
        for _ in range(5):
            await self.engine.tick()
            await asyncio.sleep(0.01)

        lifecycle = self.engine.lifecycle
        self.assertIs(lifecycle.status.kind, StatusKind.STARTING)
        self.assertFalse(lifecycle.ready)
        self.assertIs(lifecycle.handle, handle)
        self.assertIsNone(handle.returncode)
        self.assertFalse(self.engine.state.status_text.startswith("Server err"))


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
