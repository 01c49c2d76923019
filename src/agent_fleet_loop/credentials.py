from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass

from loguru import logger

from agent_fleet_loop.backend import BackendError
from agent_fleet_loop.models import Session
from agent_fleet_loop.storage.agents import CredentialRepository

Decrypt = Callable[[str], str]


@dataclass(frozen=True)
class ProviderDescriptor:
    id: str
    requires_api_key: bool = False
    optional_api_key: bool = False
    cli: bool = False


PROVIDERS: dict[str, ProviderDescriptor] = {
    "claude-cli": ProviderDescriptor("claude-cli", cli=True),
    "codex-cli": ProviderDescriptor("codex-cli", cli=True),
    "opencode-cli": ProviderDescriptor("opencode-cli", cli=True),
    "anthropic": ProviderDescriptor("anthropic", requires_api_key=True),
    "openai": ProviderDescriptor("openai", requires_api_key=True),
    "ollama": ProviderDescriptor("ollama", optional_api_key=True),
}


def get_provider(provider_id: str) -> ProviderDescriptor:
    descriptor = PROVIDERS.get(provider_id)
    if descriptor is None:
        raise BackendError(f"Unknown provider: {provider_id}")
    return descriptor


def plaintext(value: str) -> str:
    return value


def resolve_api_key(
    session: Session,
    provider: ProviderDescriptor,
    credentials: CredentialRepository,
    decrypt: Decrypt = plaintext,
    env_keys: Mapping[str, str | None] | None = None,
) -> str | None:
    """Key for the session's provider.

    A required key comes from the session's credential, or failing that from
    the process environment; missing both raises BackendError. An optional key
    that fails to decrypt resolves to None.
    """
    if provider.requires_api_key:
        if session.credential_id:
            record = credentials.get(session.credential_id)
            if record is None:
                raise BackendError("API key not found. Please add one in Settings.")
            return decrypt(record.encrypted_key)
        fallback = (env_keys or {}).get(provider.id)
        if fallback:
            return fallback
        raise BackendError("No API key configured for this session")

    if provider.optional_api_key and session.credential_id:
        record = credentials.get(session.credential_id)
        if record is not None:
            try:
                return decrypt(record.encrypted_key)
            except ValueError as ex:
                logger.debug(f"Optional credential {session.credential_id} could not be decrypted: {ex}")
                return None
    return None
