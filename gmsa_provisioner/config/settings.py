import logging
from typing import Literal, Optional, Union

from azure.identity.aio import AzureCliCredential, ManagedIdentityCredential
from pydantic import Field
from pydantic_settings import BaseSettings

from ..models.provisioning import RootKeyPolicy


class Settings(BaseSettings):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    environment: Literal["development", "staging", "production"] = Field(default="development")

    secret_store_provider: str = Field(default="keyvault", description="Secret store (keyvault, mock)")
    key_vault_url: str = Field(default="", description="Azure Key Vault URL holding the domain admin secrets")
    azure_auth_mode: Literal["managed_identity", "azure_cli"] = Field(default="managed_identity")
    azure_client_id: str = Field(default="", description="User-assigned managed identity client ID")
    azure_tenant_id: str = Field(default="", description="Azure tenant ID for Azure CLI authentication")

    username_secret_name: str = Field(default="DomainAdminUsername")
    password_secret_name: str = Field(default="DomainAdminPassword")
    webhook_token_secret_name: str = Field(default="WebhookToken")

    webhook_token_required: bool = Field(default=False, description="Reject requests without the shared token")
    webhook_token_header: str = Field(default="X-Webhook-Token")
    webhook_rate_limit: str = Field(default="30/minute")
    webhook_rate_limit_enabled: bool = Field(default=True)

    directory_provider: str = Field(default="powershell", description="Directory backend (powershell, mock)")
    domain_controller: str = Field(default="", description="Domain controller or hybrid worker reachable over WinRM")
    winrm_port: Optional[int] = Field(default=None)
    winrm_ssl: bool = Field(default=True)
    winrm_auth: Literal["negotiate", "kerberos", "ntlm", "basic", "credssp"] = Field(default="negotiate")
    winrm_cert_validation: bool = Field(default=True)

    remote_call_timeout_seconds: float = Field(default=30.0, gt=0)
    verify_settle_seconds: float = Field(default=5.0, ge=0)

    root_key_policy: RootKeyPolicy = Field(
        default=RootKeyPolicy.DEFERRED,
        description="'immediate' backdates new KDS root keys (lab only); 'deferred' waits for replication",
    )
    root_key_backdate_hours: float = Field(default=10.0, ge=0)
    root_key_propagation_hours: float = Field(default=10.0, ge=0)

    default_organizational_unit: str = Field(default="", description="Container used when a request names no OU")
    kerberos_encryption_types: str = Field(default="AES128,AES256")

    audit_db_path: str = Field(default="", description="SQLite audit database; empty disables auditing")

    class Config:
        env_prefix = "GMSA_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


_settings_instance = None

logger = logging.getLogger(__name__)


def get_settings() -> Settings:
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings()
    return _settings_instance


def build_azure_credential(
    settings: Optional[Settings] = None,
) -> Union[AzureCliCredential, ManagedIdentityCredential]:
    """Create the ambient Azure credential used to reach Key Vault.

    Each call returns a new credential; callers close it when their request
    completes so no token outlives a single invocation.
    """
    settings = settings or get_settings()

    if settings.azure_auth_mode == "managed_identity":
        client_id = settings.azure_client_id or None
        logger.debug("Using ManagedIdentityCredential for Key Vault access")
        return ManagedIdentityCredential(client_id=client_id)

    tenant_id = settings.azure_tenant_id or None
    logger.debug("Using AzureCliCredential for Key Vault access")
    return AzureCliCredential(tenant_id=tenant_id)
