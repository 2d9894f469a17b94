"""
Credential lookup.

The router asks a CredentialStore for a provider API key the first time an
agent is resolved in a run. Real deployments plug in their secret vault; the
environment-backed store below is the default.
"""

import os

from orchestrator.errors import ConfigurationError
from orchestrator.llm.providers import ProviderName


class CredentialStore:
    """Returns a decrypted API key for a provider."""

    async def get_api_key(self, provider: ProviderName) -> str:  # pragma: no cover - interface only
        raise NotImplementedError


class EnvCredentialStore(CredentialStore):
    """
    Reads API keys from environment variables.

    Example:
        store = EnvCredentialStore()
        key = await store.get_api_key(ProviderName.OPENAI)   # $OPENAI_API_KEY
    """

    ENV_VARS = {
        ProviderName.OPENAI: "OPENAI_API_KEY",
        ProviderName.ANTHROPIC: "ANTHROPIC_API_KEY",
    }

    async def get_api_key(self, provider: ProviderName) -> str:
        name = self.ENV_VARS[provider]
        value = os.getenv(name)
        if not value:
            raise ConfigurationError(
                f"Missing API key for provider '{provider.value}'",
                details={"env_var": name},
            )
        return value


class StaticCredentialStore(CredentialStore):
    """Fixed key mapping, for tests and embedding the pipeline in other services."""

    def __init__(self, keys: dict[str, str]):
        self.keys = {k.lower(): v for k, v in keys.items()}

    async def get_api_key(self, provider: ProviderName) -> str:
        value = self.keys.get(provider.value)
        if not value:
            raise ConfigurationError(f"Missing API key for provider '{provider.value}'")
        return value
