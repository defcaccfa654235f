"""Credential broker backed by Azure Key Vault."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Callable, Dict, Iterable, Optional

from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
)
from azure.keyvault.secrets.aio import SecretClient
from pydantic import SecretStr

from ..config.settings import Settings, build_azure_credential, get_settings
from ..errors import CredentialUnavailableError
from ..models.provisioning import DirectoryCredential

logger = logging.getLogger(__name__)


class CredentialBroker(ABC):
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    @abstractmethod
    async def _read_secrets(self, names: Iterable[str]) -> Dict[str, Optional[str]]:
        """Return secret values by name; absent secrets map to None."""
        pass

    async def fetch_directory_credential(self) -> DirectoryCredential:
        """Read the domain admin username and password and combine them."""
        username_name = self.settings.username_secret_name
        password_name = self.settings.password_secret_name

        values = await self._read_secrets([username_name, password_name])
        missing = [name for name in (username_name, password_name) if not values.get(name)]
        if missing:
            raise CredentialUnavailableError(
                f"Secret(s) not found in secret store: {', '.join(missing)}"
            )

        logger.debug("Directory credential assembled from secrets %s and %s", username_name, password_name)
        return DirectoryCredential(
            username=values[username_name],
            password=SecretStr(values[password_name]),
        )

    async def fetch_webhook_token(self) -> Optional[str]:
        name = self.settings.webhook_token_secret_name
        values = await self._read_secrets([name])
        return values.get(name) or None


class MockCredentialBroker(CredentialBroker):
    def __init__(
        self,
        secrets: Optional[Dict[str, str]] = None,
        settings: Optional[Settings] = None,
        error: Optional[Exception] = None,
    ) -> None:
        super().__init__(settings)
        if secrets is None:
            secrets = {
                self.settings.username_secret_name: "CONTOSO\\svc-gmsa-provisioner",
                self.settings.password_secret_name: "mock-password",
            }
        self.secrets = dict(secrets)
        self.error = error
        self.reads: list[str] = []

    async def _read_secrets(self, names: Iterable[str]) -> Dict[str, Optional[str]]:
        names = list(names)
        self.reads.extend(names)
        if self.error is not None:
            raise self.error
        return {name: self.secrets.get(name) for name in names}


class KeyVaultCredentialBroker(CredentialBroker):
    """Reads secrets with the host's managed identity; nothing is cached between calls."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        credential_factory: Callable[[Settings], object] = build_azure_credential,
    ) -> None:
        super().__init__(settings)
        self._credential_factory = credential_factory

    async def _read_secrets(self, names: Iterable[str]) -> Dict[str, Optional[str]]:
        vault_url = self.settings.key_vault_url
        if not vault_url:
            raise CredentialUnavailableError("Key Vault URL is not configured")

        credential = self._credential_factory(self.settings)
        values: Dict[str, Optional[str]] = {}
        try:
            async with SecretClient(vault_url=vault_url, credential=credential) as client:
                for name in names:
                    try:
                        secret = await client.get_secret(name)
                    except ResourceNotFoundError:
                        logger.warning("Secret %s not found in %s", name, vault_url)
                        values[name] = None
                        continue
                    values[name] = secret.value
        except ClientAuthenticationError as exc:
            logger.error("Authentication to Key Vault %s failed: %s", vault_url, exc.message)
            raise CredentialUnavailableError(f"Authentication to Key Vault failed: {exc.message}") from exc
        except ServiceRequestError as exc:
            logger.error("Key Vault %s unreachable: %s", vault_url, exc)
            raise CredentialUnavailableError(f"Key Vault unreachable: {exc}") from exc
        except HttpResponseError as exc:
            if exc.status_code == 403:
                detail = "Access to Key Vault secrets denied"
            else:
                detail = f"Key Vault request failed ({exc.status_code}): {exc.message}"
            logger.error("%s for %s", detail, vault_url)
            raise CredentialUnavailableError(detail) from exc
        finally:
            await credential.close()

        return values


def get_credential_broker(settings: Optional[Settings] = None) -> CredentialBroker:
    """Return the configured credential broker."""
    settings = settings or get_settings()

    provider_type = settings.secret_store_provider.lower()
    if provider_type == "keyvault":
        return KeyVaultCredentialBroker(settings)
    if provider_type == "mock":
        logger.warning("Using in-memory mock secret store")
        return MockCredentialBroker(settings=settings)

    raise ValueError(
        f"Unknown GMSA_SECRET_STORE_PROVIDER '{settings.secret_store_provider}'; expected keyvault or mock"
    )
