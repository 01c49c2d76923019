import unittest

from agent_fleet_loop.models import AgentProfile
from agent_fleet_loop.settings import FleetSettings
from agent_fleet_loop.system_prompt import build_agent_system_prompt, build_system_prompt


class SystemPromptTests(unittest.TestCase):
    def test_agent_prompt_order(self) -> None:
        agent = AgentProfile(
            id="a1",
            soul="You are terse.",
            system_prompt="You maintain the fleet.",
            skills=[{"name": "triage", "content": "Sort by severity."}, {"name": "empty", "content": ""}],
        )
        prompt = build_agent_system_prompt(agent, FleetSettings(user_prompt="Call me Sam."))
        self.assertEqual(
            "Call me Sam.\n\nYou are terse.\n\nYou maintain the fleet.\n\n## Skill: triage\nSort by severity.",
            prompt,
        )

    def test_agent_without_prompts_uses_default(self) -> None:
        self.assertIsNone(build_agent_system_prompt(AgentProfile(id="a1"), FleetSettings()))
        prompt = build_system_prompt(None, FleetSettings())
        self.assertIn("Never claim to have run a tool you did not actually call.", prompt)
        self.assertNotIn("Tools available", prompt)

    def test_tools_and_working_directory(self) -> None:
        prompt = build_system_prompt(None, FleetSettings(), working_directory="/srv/app", tool_names=["read_file"])
        self.assertIn("Tools available in this session: read_file.", prompt)
        self.assertIn("The session working directory is: /srv/app", prompt)

    def test_working_directory_omitted_without_tools(self) -> None:
        prompt = build_system_prompt(None, FleetSettings(), working_directory="/srv/app", tool_names=[])
        self.assertNotIn("/srv/app", prompt)


if __name__ == "__main__":
    unittest.main()
