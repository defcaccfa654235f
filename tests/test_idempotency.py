import pytest

from factories import make_settings
from gmsa_provisioner.integrations.directory import MockDirectoryClient
from gmsa_provisioner.models.provisioning import DirectoryCredential, ProvisioningRequest
from gmsa_provisioner.services.idempotency import IdempotencyGuard

CREDENTIAL = DirectoryCredential(username="CONTOSO\\svc-gmsa-admin", password="pw")


@pytest.mark.asyncio
async def test_guard_reports_existing_account():
    directory = MockDirectoryClient(settings=make_settings())
    guard = IdempotencyGuard(directory)
    request = ProvisioningRequest.from_payload({"AccountName": "gmsa-web", "DnsHostName": "web.contoso.com"})

    assert await guard.check("gmsa-web", CREDENTIAL) is None
    assert not await guard.exists("gmsa-web", CREDENTIAL)

    created = await directory.create_account(CREDENTIAL, request)

    assert await guard.check("GMSA-WEB", CREDENTIAL) == created
    assert await guard.exists("gmsa-web", CREDENTIAL)
    assert await directory.exists(CREDENTIAL, "gmsa-web")
    assert directory.calls.count("create_account") == 1


def test_already_exists_message():
    assert IdempotencyGuard.already_exists_message("gmsa-web") == "gMSA 'gmsa-web' already exists. No action taken."
