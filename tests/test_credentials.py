import unittest

from agent_fleet_loop.backend import BackendError
from agent_fleet_loop.credentials import get_provider, resolve_api_key
from agent_fleet_loop.models import Session
from agent_fleet_loop.storage import CredentialRepository, FleetStore


class ResolveApiKeyTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = FleetStore(":memory:")
        self.credentials = CredentialRepository(self.store)

    def tearDown(self) -> None:
        self.store.close()

    def test_stored_credential_is_decrypted(self) -> None:
        credential_id = self.credentials.add("anthropic", "enc:sk-1")
        session = Session(id="s1", provider="anthropic", credential_id=credential_id)
        key = resolve_api_key(session, get_provider("anthropic"), self.credentials, lambda v: v.removeprefix("enc:"))
        self.assertEqual("sk-1", key)

    def test_missing_credential_record(self) -> None:
        session = Session(id="s1", provider="anthropic", credential_id="gone")
        with self.assertRaisesRegex(BackendError, "API key not found"):
            resolve_api_key(session, get_provider("anthropic"), self.credentials)

    def test_environment_fallback(self) -> None:
        session = Session(id="s1", provider="openai")
        provider = get_provider("openai")
        self.assertEqual("sk-env", resolve_api_key(session, provider, self.credentials, env_keys={"openai": "sk-env"}))
        with self.assertRaisesRegex(BackendError, "No API key configured"):
            resolve_api_key(session, provider, self.credentials, env_keys={"openai": None})

    def test_optional_key_that_fails_to_decrypt(self) -> None:
        credential_id = self.credentials.add("ollama", "garbage")
        session = Session(id="s1", provider="ollama", credential_id=credential_id)

        def decrypt(value: str) -> str:
            raise ValueError("bad ciphertext")

        self.assertIsNone(resolve_api_key(session, get_provider("ollama"), self.credentials, decrypt))

    def test_cli_providers_need_no_key(self) -> None:
        self.assertIsNone(resolve_api_key(Session(id="s1"), get_provider("claude-cli"), self.credentials))

    def test_unknown_provider(self) -> None:
        with self.assertRaises(BackendError):
            get_provider("mystery")


if __name__ == "__main__":
    unittest.main()
