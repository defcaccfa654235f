"""
gMSA Provisioner
Webhook-driven, idempotent creation of Group Managed Service Accounts

Pipeline stages:
- Webhook token check and payload validation
- Directory credential retrieval from Azure Key Vault
- Existence check and KDS root key bootstrap
- Account creation and read-back verification
- Structured result reporting
"""

__version__ = "0.1.0"
__author__ = "Identity Platform Team"
