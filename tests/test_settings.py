import os
import tempfile
import unittest
from pathlib import Path


class TestBridgeSettings(unittest.TestCase):
    def _with_home(self):
        td = tempfile.TemporaryDirectory()
        old_home = os.environ.get("TERMRELAY_HOME")
        os.environ["TERMRELAY_HOME"] = td.name

        def _restore() -> None:
            if old_home is None:
                os.environ.pop("TERMRELAY_HOME", None)
            else:
                os.environ["TERMRELAY_HOME"] = old_home
            td.cleanup()

        self.addCleanup(_restore)
        return Path(td.name)

    def test_defaults_without_file(self) -> None:
        from termrelay.kernel.settings import load_bridge_settings

        self._with_home()
        s = load_bridge_settings(env={})
        self.assertEqual(s.runtime_mode, "tmux")
        self.assertEqual(s.poll_interval_seconds, 30.0)
        self.assertEqual(s.capture_timeout_seconds, 3.0)
        self.assertEqual(s.chunk_size, 1900)
        self.assertEqual(s.listener_host, "127.0.0.1")
        self.assertEqual(s.listener_port, 18470)
        self.assertIsNone(s.submit_delay_ms)
        self.assertEqual(s.log_level, "INFO")

    def test_file_then_env_precedence(self) -> None:
        from termrelay.kernel.settings import load_bridge_settings, settings_path

        home = self._with_home()
        self.assertEqual(settings_path(), home.resolve() / "settings.yaml")
        settings_path().write_text(
            "runtime_mode: pty\nsession_prefix: bridge-\nlistener_port: 19001\nchunk_size: 1500\nsubmit_delay_ms: 120\n",
            encoding="utf-8",
        )

        s = load_bridge_settings(env={})
        self.assertEqual(s.runtime_mode, "pty")
        self.assertEqual(s.session_prefix, "bridge-")
        self.assertEqual(s.listener_port, 19001)
        self.assertEqual(s.chunk_size, 1500)
        self.assertEqual(s.submit_delay_ms, 120)

        s = load_bridge_settings(env={"TERMRELAY_PORT": "19002", "TERMRELAY_RUNTIME_MODE": "tmux", "TERMRELAY_LOG_LEVEL": "debug"})
        self.assertEqual(s.listener_port, 19002)
        self.assertEqual(s.runtime_mode, "tmux")
        self.assertEqual(s.chunk_size, 1500)
        self.assertEqual(s.log_level, "DEBUG")

    def test_invalid_values_fall_back_and_clamp(self) -> None:
        from termrelay.kernel.settings import BridgeSettings

        s = BridgeSettings.from_dict(
            {
                "runtime_mode": "screen",
                "poll_interval_seconds": "0",
                "chunk_size": 50000,
                "listener_port": "abc",
                "capture_timeout_seconds": "nan",
                "submit_delay_ms": "soon",
            }
        )
        self.assertEqual(s.runtime_mode, "tmux")
        self.assertEqual(s.poll_interval_seconds, 0.05)
        self.assertEqual(s.chunk_size, 4000)
        self.assertEqual(s.listener_port, 18470)
        self.assertEqual(s.capture_timeout_seconds, 3.0)
        self.assertIsNone(s.submit_delay_ms)

        self.assertEqual(BridgeSettings.from_dict({"chunk_size": 1, "listener_port": 70000}).chunk_size, 100)
        self.assertEqual(BridgeSettings.from_dict({"listener_port": 70000}).listener_port, 65535)

    def test_broken_yaml_reads_as_empty(self) -> None:
        from termrelay.kernel.settings import load_bridge_settings, settings_path

        self._with_home()
        settings_path().write_text("runtime_mode: [unclosed\n", encoding="utf-8")
        self.assertEqual(load_bridge_settings(env={}).runtime_mode, "tmux")

        settings_path().write_text("- just\n- a list\n", encoding="utf-8")
        self.assertEqual(load_bridge_settings(env={}).listener_port, 18470)

    def test_roundtrip_dict(self) -> None:
        from termrelay.kernel.settings import BridgeSettings

        s = BridgeSettings(runtime_mode="pty", submit_delay_ms=0, listener_port=20000)
        self.assertEqual(BridgeSettings.from_dict(s.to_dict()), s)


class TestCreateRuntime(unittest.TestCase):
    def test_tmux_is_default(self) -> None:
        from termrelay.kernel.settings import BridgeSettings
        from termrelay.runners import TmuxRuntime, create_runtime

        rt = create_runtime(BridgeSettings(session_prefix="x-", capture_timeout_seconds=1.5))
        self.assertIsInstance(rt, TmuxRuntime)
        self.assertEqual(rt.session_name("demo"), "x-demo")
        self.assertEqual(rt.timeout_s, 1.5)

    @unittest.skipUnless(os.name == "posix", "pty runtime needs POSIX")
    def test_pty_mode(self) -> None:
        from termrelay.kernel.settings import BridgeSettings
        from termrelay.runners import create_runtime
        from termrelay.runners.pty import PtyRuntime

        self.assertIsInstance(create_runtime(BridgeSettings(runtime_mode="pty")), PtyRuntime)


if __name__ == "__main__":
    unittest.main()
