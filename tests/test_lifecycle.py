"""Tests for server status transitions, auto-start and idle shutdown."""

from __future__ import annotations

import asyncio
import unittest

from app.constants import READY_LINE
from app.errors import ProcessError
from app.settings import UserSettings
from inference.supervisor import RingLog
from state_engine import Mailbox, ServerStatus, StatusKind
from state_engine.lifecycle import LifecycleController


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeHandle:
    """Stands in for a ProcessHandle without spawning anything."""

    def __init__(self) -> None:
        self.ready = False
        self.served_model_id: str | None = None
        self.returncode: int | None = None
        self.log = RingLog()
        self.killed = False
        self.stopped = False

    def kill(self) -> None:
        self.killed = True

    async def stop(self) -> None:
        self.kill()
        self.stopped = True

    def to_dict(self) -> dict[str, object]:
        return {"ready": self.ready}


class LauncherStub:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls = 0
        self.handles: list[FakeHandle] = []
        self.mailboxes: list[Mailbox[str]] = []

    async def __call__(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        handle = FakeHandle()
        mailbox: Mailbox[str] = Mailbox("server-log")
        self.handles.append(handle)
        self.mailboxes.append(mailbox)
        return handle, mailbox


class LifecycleControllerTests(unittest.IsolatedAsyncioTestCase):
    def _controller(self, launcher: LauncherStub, **settings) -> tuple[LifecycleController, FakeClock, list[str]]:
        clock = FakeClock()
        texts: list[str] = []
        controller = LifecycleController(
            UserSettings(**settings),
            launcher,
            clock=clock,
            on_status=texts.append,
        )
        return controller, clock, texts

    async def test_manual_start_then_ready_sentinel(self) -> None:
        launcher = LauncherStub()
        controller, _, texts = self._controller(launcher)

        self.assertTrue(await controller.start())
        self.assertEqual(controller.status, ServerStatus.starting())
        self.assertFalse(controller.ready)

        controller.observe_lines(["[OUT] loading", READY_LINE, "[MODEL] mistral.gguf"])
        self.assertEqual(controller.status, ServerStatus.running())
        self.assertTrue(controller.ready)
        self.assertEqual(controller.served_model_id, "mistral.gguf")
        self.assertEqual(controller.log.tail(), ["[OUT] loading", READY_LINE, "[MODEL] mistral.gguf"])
        self.assertEqual(texts[-1], "Server ready")

    async def test_start_is_idempotent_while_running(self) -> None:
        launcher = LauncherStub()
        controller, _, _ = self._controller(launcher)
        await controller.start()
        await controller.start()
        self.assertEqual(launcher.calls, 1)

    async def test_idle_timeout_stops_ready_server(self) -> None:
        launcher = LauncherStub()
        controller, clock, texts = self._controller(launcher, server_timeout_minutes=5)
        await controller.start()
        controller.observe_lines([READY_LINE])
        handle = launcher.handles[0]

        clock.advance(299)
        self.assertFalse(controller.check_idle_timeout())
        clock.advance(2)
        self.assertTrue(controller.check_idle_timeout())

        self.assertEqual(controller.status.kind, StatusKind.STOPPED)
        self.assertIsNone(controller.handle)
        self.assertTrue(handle.killed)
        self.assertEqual(texts[-1], "Server auto-stopped (inactive)")
        self.assertTrue(launcher.mailboxes[0].closed)
        await asyncio.sleep(0)
        self.assertTrue(handle.stopped)

    async def test_idle_stop_does_not_trigger_auto_restart(self) -> None:
        launcher = LauncherStub()
        controller, clock, _ = self._controller(launcher, server_timeout_minutes=5)
        controller.mark_activity()
        await controller.ensure_server_running()
        controller.observe_lines([READY_LINE])
        clock.advance(301)
        controller.check_idle_timeout()

        await controller.ensure_server_running()
        self.assertEqual(launcher.calls, 1)
        self.assertIsNone(controller.handle)

        controller.mark_activity()
        await controller.ensure_server_running()
        self.assertEqual(launcher.calls, 2)

    async def test_activity_postpones_idle_stop(self) -> None:
        launcher = LauncherStub()
        controller, clock, _ = self._controller(launcher, server_timeout_minutes=5)
        await controller.start()
        controller.observe_lines([READY_LINE])
        clock.advance(200)
        controller.mark_activity()
        clock.advance(200)
        self.assertFalse(controller.check_idle_timeout())
        self.assertTrue(controller.ready)

    async def test_auto_stop_disabled_keeps_server(self) -> None:
        launcher = LauncherStub()
        controller, clock, _ = self._controller(launcher, auto_stop_server=False, server_timeout_minutes=5)
        await controller.start()
        controller.observe_lines([READY_LINE])
        clock.advance(10_000)
        self.assertFalse(controller.check_idle_timeout())

    async def test_auto_start_failure_moves_to_error(self) -> None:
        launcher = LauncherStub(error=ProcessError("no model"))
        controller, _, texts = self._controller(launcher)
        controller.mark_activity()

        await controller.ensure_server_running()
        self.assertEqual(controller.status, ServerStatus.error("Auto-start failed: no model"))
        self.assertEqual(texts[-1], "Auto-start failed: no model")
        self.assertIsNone(controller.handle)

        await controller.ensure_server_running()
        self.assertEqual(launcher.calls, 1)

    async def test_auto_start_requires_setting_and_demand(self) -> None:
        launcher = LauncherStub()
        controller, _, _ = self._controller(launcher, auto_start_server=False)
        controller.mark_activity()
        await controller.ensure_server_running()
        self.assertEqual(launcher.calls, 0)

        controller, _, _ = self._controller(launcher)
        await controller.ensure_server_running()
        self.assertEqual(launcher.calls, 0)

    async def test_manual_start_failure_reports_reason(self) -> None:
        launcher = LauncherStub(error=ProcessError("no server"))
        controller, _, _ = self._controller(launcher)
        self.assertFalse(await controller.start())
        self.assertEqual(controller.status.message, "Start failed: no server")

    async def test_probe_exhaustion_leaves_status_starting(self) -> None:
        launcher = LauncherStub()
        controller, _, _ = self._controller(launcher)
        await controller.start()
        controller.observe_lines(["[OUT] still loading", "[ERR] slow disk"])
        self.assertEqual(controller.status.kind, StatusKind.STARTING)
        self.assertFalse(controller.ready)

    async def test_unexpected_exit_is_an_error(self) -> None:
        launcher = LauncherStub()
        controller, _, texts = self._controller(launcher)
        await controller.start()
        controller.observe_lines([READY_LINE])
        self.assertFalse(controller.check_process_exit())

        launcher.handles[0].returncode = 1
        self.assertTrue(controller.check_process_exit())
        self.assertEqual(controller.status, ServerStatus.error("llama-server exited with code 1"))
        self.assertIsNone(controller.handle)
        self.assertIn("exited with code 1", texts[-1])

    async def test_manual_stop_and_shutdown(self) -> None:
        launcher = LauncherStub()
        controller, _, _ = self._controller(launcher)
        await controller.start()
        controller.stop()
        self.assertEqual(controller.status, ServerStatus.stopped())
        await controller.shutdown()
        self.assertTrue(launcher.handles[0].stopped)
        self.assertEqual(controller.to_dict()["process"], None)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
