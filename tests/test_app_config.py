import unittest
from unittest.mock import patch

from agent_fleet_loop.app_config import parse_app_config, resolve_runtime_env


class AppConfigTests(unittest.TestCase):
    def test_defaults(self) -> None:
        app = parse_app_config({})
        self.assertEqual("anthropic", app.provider_name)
        self.assertEqual(".agent_fleet/fleet.db", app.db_path)
        self.assertIsNone(app.session_id)
        self.assertIsNone(app.tools)
        self.assertTrue(app.heartbeat_show_alerts)
        self.assertEqual(900.0, app.delegate_timeout_seconds)

    def test_parses_values(self) -> None:
        app = parse_app_config(
            {
                "Provider": " OpenAI ",
                "Tools": "shell, files,,web_fetch",
                "SessionId": "  ",
                "HeartbeatShowAlerts": "off",
                "HeartbeatModel": "gpt-4o-mini",
                "Settings": {"capabilityPolicyMode": "strict"},
            }
        )
        self.assertEqual("openai", app.provider_name)
        self.assertEqual(["shell", "files", "web_fetch"], app.tools)
        self.assertIsNone(app.session_id)
        self.assertFalse(app.heartbeat_show_alerts)
        self.assertEqual("gpt-4o-mini", app.heartbeat_model)
        self.assertEqual({"capabilityPolicyMode": "strict"}, app.settings)

    def test_runtime_env(self) -> None:
        env_vars = {"ANTHROPIC_API_KEY": "sk-a", "OPENAI_API_KEY": "", "BRAVE_API_KEY": "br"}
        with patch.dict("os.environ", env_vars, clear=True):
            env = resolve_runtime_env()
        self.assertEqual({"anthropic": "sk-a", "openai": None}, env.provider_keys())
        self.assertEqual("br", env.brave_api_key)


if __name__ == "__main__":
    unittest.main()
