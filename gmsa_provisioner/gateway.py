"""Inbound webhook handling: token check, payload parsing, workflow dispatch."""

from __future__ import annotations

import hmac
import json
import logging
from typing import Any, Mapping, Optional

from .config.settings import Settings, get_settings
from .errors import (
    CredentialUnavailableError,
    MalformedPayloadError,
    ProvisioningError,
    UnauthorizedError,
)
from .integrations.secret_store import CredentialBroker
from .models.provisioning import FailedResult, ProvisioningResult, account_name_hint
from .services.provisioning import CancelCheck, ProvisioningWorkflow

logger = logging.getLogger(__name__)


class WebhookGateway:
    """Stateless entry point shared by the HTTP app and tests."""

    def __init__(
        self,
        workflow: ProvisioningWorkflow,
        broker: Optional[CredentialBroker] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.workflow = workflow
        self.broker = broker or workflow.broker
        self.settings = settings or workflow.settings or get_settings()

    async def handle(
        self,
        body: bytes,
        headers: Mapping[str, str],
        should_cancel: Optional[CancelCheck] = None,
    ) -> ProvisioningResult:
        try:
            await self._authorize(headers)
            payload = self._parse(body)
        except ProvisioningError as exc:
            logger.warning("Rejected webhook request (%s): %s", exc.kind.value, exc.message)
            result = FailedResult.from_error("", exc)
            self.workflow.reporter.report(result)
            return result

        return await self.workflow.provision(payload, should_cancel=should_cancel)

    async def _authorize(self, headers: Mapping[str, str]) -> None:
        if not self.settings.webhook_token_required:
            return

        header_name = self.settings.webhook_token_header
        supplied = _header(headers, header_name)
        expected = await self.broker.fetch_webhook_token()
        if not expected:
            raise CredentialUnavailableError(
                f"Webhook token secret '{self.settings.webhook_token_secret_name}' is not available"
            )
        if not supplied or not hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8")):
            raise UnauthorizedError(f"Missing or invalid {header_name} header")

    @staticmethod
    def _parse(body: bytes) -> Mapping[str, Any]:
        if not body or not body.strip():
            raise MalformedPayloadError("Request body is empty")
        try:
            payload = json.loads(body)
        except (UnicodeDecodeError, ValueError) as exc:
            raise MalformedPayloadError(f"Request body is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise MalformedPayloadError("Request body must be a JSON object")
        logger.debug("Webhook payload received for %s", account_name_hint(payload) or "<unnamed>")
        return payload


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None
