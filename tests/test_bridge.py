import asyncio
import unittest


def _settings(**kw):
    from termrelay.kernel.settings import BridgeSettings

    base = dict(poll_interval_seconds=30.0, submit_delay_ms=0, listener_port=19100)
    base.update(kw)
    return BridgeSettings(**base)


def _bridge(runtime, **kw):
    from termrelay.daemon.bridge import Bridge
    from termrelay.daemon.hub import EventHub
    from termrelay.kernel.agents import create_agent_registry

    return Bridge(_settings(**kw), runtime, create_agent_registry(), EventHub())


class TestSanitizeInput(unittest.TestCase):
    def test_rules(self) -> None:
        from termrelay.daemon.bridge import sanitize_input

        self.assertEqual(sanitize_input("hi\0 there \n"), "hi there")
        for bad in ("", "   \n", "x" * 10_001):
            with self.assertRaises(ValueError):
                sanitize_input(bad)


class TestBridge(unittest.IsolatedAsyncioTestCase):
    async def test_launch_sets_env_before_start_and_polls(self) -> None:
        from fakes import FakeRuntime

        rt = FakeRuntime(default="ready")
        bridge = _bridge(rt)
        tracked = bridge.launch("demo", "claude", project_path="/work/demo", yolo=True)

        self.assertEqual(tracked.key, ("demo", "claude"))
        self.assertEqual(tracked.window, "claude")
        kinds = [c[0] for c in rt.calls]
        self.assertLess(kinds.index("env"), kinds.index("start"))
        self.assertEqual(
            rt.env["demo"],
            {
                "TERMRELAY_PROJECT": "demo",
                "TERMRELAY_AGENT": "claude",
                "TERMRELAY_INSTANCE": "claude",
                "TERMRELAY_PORT": "19100",
                "TERMRELAY_HOSTNAME": "127.0.0.1",
            },
        )
        start = [c for c in rt.calls if c[0] == "start"][0]
        self.assertEqual(start[1:], ("demo", "claude", "cd /work/demo && claude --dangerously-skip-permissions"))
        self.assertEqual(bridge.poller.tracked(), [("demo", "claude")])

        # Window already running: no second start.
        bridge.launch("demo", "claude", project_path="/work/demo")
        self.assertEqual(len([c for c in rt.calls if c[0] == "start"]), 1)
        await bridge.shutdown()

    async def test_launch_rejects_unknown_agent(self) -> None:
        from fakes import FakeRuntime

        with self.assertRaises(ValueError):
            _bridge(FakeRuntime()).launch("demo", "gemini")

    async def test_submit_types_then_enters(self) -> None:
        from fakes import FakeRuntime

        rt = FakeRuntime(default="ready")
        bridge = _bridge(rt)
        bridge.launch("demo", "opencode", "opencode-2")
        await bridge.submit(("demo", "opencode-2"), "fix the tests\n")

        typed = [c for c in rt.calls if c[0] in ("type", "enter")]
        self.assertEqual(typed, [("type", "demo", "opencode-2", "fix the tests"), ("enter", "demo", "opencode-2")])

        with self.assertRaises(ValueError):
            await bridge.submit(("demo", "missing"), "hi")
        with self.assertRaises(ValueError):
            await bridge.submit(("demo", "opencode-2"), "   ")
        await bridge.shutdown()

    async def test_submit_delay_defaults_per_agent(self) -> None:
        from fakes import FakeRuntime

        bridge = _bridge(FakeRuntime(), submit_delay_ms=None)
        self.assertEqual(bridge._submit_delay_s("opencode"), 0.075)
        self.assertEqual(bridge._submit_delay_s("claude"), 0.3)
        self.assertEqual(bridge._submit_delay_s("unknown"), 0.3)
        self.assertEqual(_bridge(FakeRuntime(), submit_delay_ms=10)._submit_delay_s("opencode"), 0.01)

    async def test_dispatch_chunks_and_survives_sink_errors(self) -> None:
        from termrelay.contracts.v1 import OutboundEvent
        from fakes import FakeRuntime

        bridge = _bridge(FakeRuntime(), chunk_size=100)
        text = "\n".join("row %02d" % i for i in range(40))
        bridge.hub.publish(
            OutboundEvent(project_name="p", agent_type="claude", instance_id="claude", kind="lifecycle", state="working", text=text)
        )
        bridge.hub.publish(
            OutboundEvent(project_name="p", agent_type="claude", instance_id="claude", kind="lifecycle", state="offline")
        )
        bridge.hub.close()

        delivered = []
        calls = {"n": 0}

        async def _sink(event, piece):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("chat API down")
            delivered.append((event.state, piece))

        await asyncio.wait_for(bridge.dispatch_forever(_sink), timeout=2.0)

        working = [p for s, p in delivered if s == "working"]
        self.assertTrue(all(0 < len(p) <= 100 for p in working))
        self.assertEqual(delivered[-1], ("offline", ""))
        self.assertGreater(calls["n"], 2)

    async def test_stop_instance_and_shutdown(self) -> None:
        from fakes import DisposableRuntime

        rt = DisposableRuntime(default="ready")
        bridge = _bridge(rt)
        bridge.launch("demo", "codex")
        self.assertTrue(await bridge.stop_instance(("demo", "codex")))
        self.assertEqual(rt.stopped, [("demo", "codex")])
        self.assertEqual(bridge.poller.tracked(), [])

        await bridge.shutdown()
        await bridge.shutdown()
        self.assertEqual(rt.disposed, 1)

        states = [e.state for e in bridge.hub.drain()]
        self.assertEqual(states[-1], "offline")
        self.assertIsNone(await bridge.hub.get())

    async def test_relaunch_restarts_exited_agent(self) -> None:
        from fakes import DisposableRuntime

        # Second read reports the window gone, so polling ends on its own.
        rt = DisposableRuntime(["working", None], default="ready")
        bridge = _bridge(rt, poll_interval_seconds=0.0)
        key = bridge.launch("demo", "codex", project_path="/work/demo").key
        await asyncio.wait_for(bridge.poller.wait_stopped(key), timeout=2.0)
        self.assertEqual(bridge.poller.tracked(), [])
        self.assertIsNone(bridge.hub.last_state(key))

        rt.dead.add(("demo", "codex"))
        bridge.launch("demo", "codex", project_path="/work/demo")
        self.assertEqual(len([c for c in rt.calls if c[0] == "start"]), 2)
        self.assertEqual(bridge.poller.tracked(), [key])

        self.assertTrue(await bridge.stop_instance(key))
        rt.dead.add(("demo", "codex"))
        bridge.launch("demo", "codex", project_path="/work/demo")
        self.assertEqual(len([c for c in rt.calls if c[0] == "start"]), 3)
        await bridge.shutdown()

    async def test_stop_instance_after_polling_ended_still_stops_window(self) -> None:
        from fakes import DisposableRuntime

        rt = DisposableRuntime([None])
        bridge = _bridge(rt, poll_interval_seconds=0.0)
        key = bridge.launch("demo", "claude").key
        await asyncio.wait_for(bridge.poller.wait_stopped(key), timeout=2.0)

        self.assertTrue(await bridge.stop_instance(key))
        self.assertEqual(rt.stopped, [("demo", "claude")])
        self.assertEqual([e.state for e in bridge.hub.drain()], ["offline"])
        await bridge.shutdown()

    async def test_project_path_and_pane_hint(self) -> None:
        import os
        import tempfile

        from fakes import FakeRuntime

        rt = FakeRuntime(default="ready")
        bridge = _bridge(rt)
        with tempfile.TemporaryDirectory() as td:
            tracked = bridge.launch("demo", "claude", project_path=td, pane_hint=" 1 ")
            self.assertEqual(bridge.project_path("demo"), os.path.realpath(td))
            self.assertIsNone(bridge.project_path("other"))
            self.assertEqual(tracked.pane_hint, "1")
            for _ in range(200):
                if rt.read_panes:
                    break
                await asyncio.sleep(0.01)
            await bridge.shutdown()
        self.assertEqual(rt.read_panes[0], "1")


if __name__ == "__main__":
    unittest.main()
