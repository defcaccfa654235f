"""Render provisioning results for callers, logs, and the audit trail."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from audit import log_action

from ..config.settings import Settings, get_settings
from ..errors import ErrorKind
from ..models.provisioning import (
    AlreadyExistsResult,
    FailedResult,
    ProvisioningResult,
    SuccessResult,
)
from ..utils.telemetry import ProvisioningMetrics, provisioning_metrics

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES: Dict[ErrorKind, int] = {
    ErrorKind.VALIDATION_ERROR: 400,
    ErrorKind.MALFORMED_PAYLOAD: 400,
    ErrorKind.INVALID_PARAMETER: 400,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.PERMISSION_DENIED: 403,
    ErrorKind.CANCELLED: 408,
    ErrorKind.ALREADY_EXISTS: 409,
    ErrorKind.ROOT_KEY_NOT_READY: 409,
    ErrorKind.VERIFICATION_FAILED: 500,
    ErrorKind.CREDENTIAL_UNAVAILABLE: 502,
    ErrorKind.DIRECTORY_UNREACHABLE: 502,
}


def to_response(result: ProvisioningResult) -> Dict[str, Any]:
    """Serialize a result into the JSON document returned to the workflow engine."""
    if isinstance(result, SuccessResult):
        return {
            "Status": result.status,
            "AccountName": result.account_name,
            "DNSHostName": result.dns_host_name,
            "DistinguishedName": result.distinguished_name,
            "SamAccountName": result.sam_account_name,
            "ObjectGUID": result.object_guid,
            "Created": result.created.isoformat(),
            "Message": result.message,
            "Timestamp": result.timestamp.isoformat(),
        }
    if isinstance(result, AlreadyExistsResult):
        return {
            "Status": result.status,
            "AccountName": result.account_name,
            "DistinguishedName": result.distinguished_name,
            "Message": result.message,
            "Timestamp": result.timestamp.isoformat(),
        }
    return {
        "Status": result.status,
        "AccountName": result.account_name,
        "Error": result.error_kind.value,
        "ErrorDetails": result.error_message,
        "Timestamp": result.timestamp.isoformat(),
    }


def http_status(result: ProvisioningResult) -> int:
    if isinstance(result, SuccessResult):
        return 201
    if isinstance(result, AlreadyExistsResult):
        return 200
    return ERROR_STATUS_CODES.get(result.error_kind, 500)


def summarize(result: ProvisioningResult) -> str:
    """One-line human readable status."""
    stamp = result.timestamp.strftime("%Y-%m-%d %H:%M:%S UTC")
    if isinstance(result, SuccessResult):
        return f"[{stamp}] SUCCESS {result.account_name} created at {result.distinguished_name}"
    if isinstance(result, AlreadyExistsResult):
        return f"[{stamp}] ALREADY EXISTS {result.account_name} at {result.distinguished_name or 'unknown DN'}"
    name = result.account_name or "<unnamed>"
    return f"[{stamp}] FAILED {name} ({result.error_kind.value}): {result.error_message}"


class ResultReporter:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        metrics: ProvisioningMetrics = provisioning_metrics,
        actor: str = "gmsa-provisioner",
    ) -> None:
        self.settings = settings or get_settings()
        self.metrics = metrics
        self.actor = actor

    def report(self, result: ProvisioningResult) -> Dict[str, Any]:
        response = to_response(result)
        error_kind = result.error_kind.value if isinstance(result, FailedResult) else None

        if isinstance(result, FailedResult):
            logger.error(summarize(result))
        else:
            logger.info(summarize(result))

        self.metrics.record_outcome(result.status, error_kind, {"account_name": result.account_name})

        if self.settings.audit_db_path:
            try:
                log_action(
                    actor=self.actor,
                    action="provision_gmsa",
                    target=result.account_name,
                    status=result.status,
                    details=json.dumps(response),
                    db_path=self.settings.audit_db_path,
                )
            except Exception as exc:
                logger.warning("Failed to write audit record for %s: %s", result.account_name, exc)

        return response
