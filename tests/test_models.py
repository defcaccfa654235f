from datetime import datetime, timedelta, timezone

import pytest

from gmsa_provisioner.errors import (
    ErrorKind,
    PermissionDeniedError,
    ProvisioningError,
    RequestValidationError,
)
from gmsa_provisioner.models.provisioning import (
    DirectoryCredential,
    FailedResult,
    ProvisioningRequest,
    RootKeyRecord,
    RootKeyState,
    account_name_hint,
)


def test_request_accepts_documented_field_names():
    request = ProvisioningRequest.from_payload(
        {
            "AccountName": "gmsa-app-service",
            "DnsHostName": "appserver.contoso.com",
            "PrincipalsAllowedToRetrieve": ["CONTOSO\\AppServers$"],
            "Description": "App service account",
            "ServicePrincipalNames": ["HTTP/appserver.contoso.com"],
            "OrganizationalUnit": "OU=ServiceAccounts,DC=contoso,DC=com",
            "KdsRootKeyId": "8c1d3a1e-5f6b-4f2a-9b87-3f1f0b2a7d11",
        }
    )

    assert request.account_name == "gmsa-app-service"
    assert request.dns_host_name == "appserver.contoso.com"
    assert request.principals_allowed_to_retrieve == ["CONTOSO\\AppServers$"]
    assert request.description == "App service account"
    assert request.service_principal_names == ["HTTP/appserver.contoso.com"]
    assert request.organizational_unit == "OU=ServiceAccounts,DC=contoso,DC=com"
    assert request.kds_root_key_id == "8c1d3a1e-5f6b-4f2a-9b87-3f1f0b2a7d11"


def test_request_accepts_directory_cmdlet_spellings():
    request = ProvisioningRequest.from_payload(
        {
            "AccountName": "gmsa-sql",
            "DNSHostName": "sql01.contoso.com",
            "PrincipalsAllowedToRetrieveManagedPassword": "CONTOSO\\SqlHosts$, CONTOSO\\sql02$",
            "Path": "OU=Sql,DC=contoso,DC=com",
        }
    )

    assert request.dns_host_name == "sql01.contoso.com"
    assert request.principals_allowed_to_retrieve == ["CONTOSO\\SqlHosts$", "CONTOSO\\sql02$"]
    assert request.organizational_unit == "OU=Sql,DC=contoso,DC=com"


def test_blank_optional_values_become_absent():
    request = ProvisioningRequest.from_payload(
        {
            "AccountName": "  gmsa-web  ",
            "DnsHostName": "web.contoso.com",
            "Description": "   ",
            "OrganizationalUnit": "",
            "ServicePrincipalNames": ["", "  "],
            "Unexpected": "ignored",
        }
    )

    assert request.account_name == "gmsa-web"
    assert request.description is None
    assert request.organizational_unit is None
    assert request.service_principal_names == []
    assert request.principals_allowed_to_retrieve == []


@pytest.mark.parametrize(
    "payload, field",
    [
        ({"DnsHostName": "web.contoso.com"}, "AccountName"),
        ({"AccountName": "   ", "DnsHostName": "web.contoso.com"}, "AccountName"),
        ({"AccountName": "gmsa-web"}, "DnsHostName"),
        ({"AccountName": "gmsa-web", "DnsHostName": 42}, "DnsHostName"),
    ],
)
def test_missing_or_blank_required_fields_are_rejected(payload, field):
    with pytest.raises(RequestValidationError) as excinfo:
        ProvisioningRequest.from_payload(payload)

    assert excinfo.value.kind is ErrorKind.VALIDATION_ERROR
    assert field in excinfo.value.message


def test_password_interval_must_be_in_range():
    with pytest.raises(RequestValidationError):
        ProvisioningRequest.from_payload(
            {"AccountName": "gmsa-web", "DnsHostName": "web.contoso.com", "ManagedPasswordIntervalInDays": 0}
        )


def test_non_object_payload_is_rejected():
    with pytest.raises(RequestValidationError):
        ProvisioningRequest.from_payload(["AccountName", "gmsa-web"])


def test_account_name_hint_is_best_effort():
    assert account_name_hint({"AccountName": " gmsa-web "}) == "gmsa-web"
    assert account_name_hint({"AccountName": 7}) == ""
    assert account_name_hint(None) == ""


def test_directory_credential_masks_password():
    credential = DirectoryCredential(username="CONTOSO\\admin", password="hunter2")

    assert "hunter2" not in repr(credential)
    assert "hunter2" not in str(credential.model_dump())
    assert credential.password.get_secret_value() == "hunter2"


def test_root_key_state_is_usable_after_propagation():
    effective = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    state = RootKeyState.from_record(RootKeyRecord(key_id="k1", effective_time=effective), propagation_hours=10)

    assert state.usable_from == effective + timedelta(hours=10)
    assert not state.usable(now=effective + timedelta(hours=9))
    assert state.usable(now=effective + timedelta(hours=10))


def test_root_key_state_treats_naive_times_as_utc():
    state = RootKeyState.from_record(
        RootKeyRecord(key_id="k1", effective_time=datetime(2024, 1, 1, 12, 0)),
        propagation_hours=0,
    )

    assert state.effective_time.tzinfo is not None
    assert state.usable(now=datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))


def test_missing_root_key_is_never_usable():
    assert not RootKeyState(exists=False).usable()


def test_failed_result_carries_error_kind():
    result = FailedResult.from_error("gmsa-web", PermissionDeniedError("Access is denied"))

    assert result.status == "Failed"
    assert result.error_kind is ErrorKind.PERMISSION_DENIED
    assert result.error_message == "Access is denied"


def test_error_kind_can_be_overridden():
    error = ProvisioningError("boom", kind=ErrorKind.VERIFICATION_FAILED)

    assert error.kind is ErrorKind.VERIFICATION_FAILED
    assert str(error) == "boom"
