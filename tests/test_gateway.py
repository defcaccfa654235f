import json

import pytest

from factories import make_secrets, make_settings, make_workflow
from gmsa_provisioner.errors import ErrorKind
from gmsa_provisioner.gateway import WebhookGateway
from gmsa_provisioner.integrations.secret_store import MockCredentialBroker
from gmsa_provisioner.models.provisioning import AlreadyExistsResult, FailedResult, SuccessResult

BODY = json.dumps(
    {
        "AccountName": "gmsa-app-service",
        "DNSHostName": "appserver.contoso.com",
        "PrincipalsAllowedToRetrieve": ["CONTOSO\\AppServers$"],
    }
).encode("utf-8")


def _gateway(token_required=False, token="s3cret-token"):
    settings = make_settings(webhook_token_required=token_required)
    extra = {settings.webhook_token_secret_name: token} if token else {}
    broker = MockCredentialBroker(make_secrets(settings, **extra), settings=settings)
    workflow, _, directory = make_workflow(settings, broker=broker)
    return WebhookGateway(workflow, broker, settings), broker, directory


@pytest.mark.asyncio
async def test_open_gateway_provisions_and_then_reports_existing():
    gateway, _, directory = _gateway()

    first = await gateway.handle(BODY, {})
    second = await gateway.handle(BODY, {})

    assert isinstance(first, SuccessResult)
    assert isinstance(second, AlreadyExistsResult)
    assert directory.calls.count("create_account") == 1


@pytest.mark.asyncio
async def test_missing_token_is_rejected_before_admin_secrets_are_read():
    gateway, broker, directory = _gateway(token_required=True)

    result = await gateway.handle(BODY, {})

    assert isinstance(result, FailedResult)
    assert result.error_kind == ErrorKind.UNAUTHORIZED
    assert result.account_name == ""
    assert broker.reads == ["WebhookToken"]
    assert directory.calls == []


@pytest.mark.asyncio
async def test_wrong_token_is_rejected():
    gateway, _, directory = _gateway(token_required=True)

    result = await gateway.handle(BODY, {"X-Webhook-Token": "guess"})

    assert result.error_kind == ErrorKind.UNAUTHORIZED
    assert directory.calls == []


@pytest.mark.asyncio
async def test_token_header_lookup_ignores_case():
    gateway, _, _ = _gateway(token_required=True)

    result = await gateway.handle(BODY, {"x-webhook-token": "s3cret-token"})

    assert isinstance(result, SuccessResult)


@pytest.mark.asyncio
async def test_missing_token_secret_is_credential_unavailable():
    gateway, _, directory = _gateway(token_required=True, token=None)

    result = await gateway.handle(BODY, {"X-Webhook-Token": "anything"})

    assert result.error_kind == ErrorKind.CREDENTIAL_UNAVAILABLE
    assert directory.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [b"", b"   ", b"{not json", b"[1, 2]", b"\xff\xfe"])
async def test_malformed_body_is_rejected(body):
    gateway, broker, directory = _gateway()

    result = await gateway.handle(body, {})

    assert result.error_kind == ErrorKind.MALFORMED_PAYLOAD
    assert broker.reads == []
    assert directory.calls == []


@pytest.mark.asyncio
async def test_invalid_fields_are_validation_errors():
    gateway, broker, _ = _gateway()

    result = await gateway.handle(json.dumps({"AccountName": "gmsa-app-service"}).encode(), {})

    assert result.error_kind == ErrorKind.VALIDATION_ERROR
    assert result.account_name == "gmsa-app-service"
    assert broker.reads == []


@pytest.mark.asyncio
async def test_rejections_are_reported():
    gateway, _, _ = _gateway(token_required=True)

    await gateway.handle(BODY, {})

    assert gateway.workflow.reporter.metrics.get_metrics("Failed") == {"Failed:Unauthorized": 1}
