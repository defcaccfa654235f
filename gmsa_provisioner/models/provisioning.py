from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, List, Literal, Mapping, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
)

from ..errors import ErrorKind, ProvisioningError, RequestValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProvisioningRequest(BaseModel):
    """Validated webhook payload describing the account to create."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    account_name: str = Field(validation_alias=AliasChoices("AccountName", "account_name"))
    dns_host_name: str = Field(
        validation_alias=AliasChoices("DnsHostName", "DNSHostName", "dns_host_name")
    )
    principals_allowed_to_retrieve: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices(
            "PrincipalsAllowedToRetrieve",
            "PrincipalsAllowedToRetrieveManagedPassword",
            "principals_allowed_to_retrieve",
        ),
    )
    description: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("Description", "description")
    )
    service_principal_names: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("ServicePrincipalNames", "service_principal_names"),
    )
    organizational_unit: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("OrganizationalUnit", "Path", "organizational_unit"),
    )
    kds_root_key_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("KdsRootKeyId", "kds_root_key_id")
    )
    managed_password_interval_days: Optional[int] = Field(
        default=None,
        ge=1,
        le=3650,
        validation_alias=AliasChoices(
            "ManagedPasswordIntervalInDays", "managed_password_interval_days"
        ),
    )

    @field_validator("account_name", "dns_host_name", mode="before")
    @classmethod
    def _require_text(cls, value: Any) -> str:
        if value is None:
            raise ValueError("field is required")
        if not isinstance(value, str):
            raise ValueError("must be a string")
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @field_validator("description", "organizational_unit", "kds_root_key_id", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        if not isinstance(value, str):
            raise ValueError("must be a string")
        value = value.strip()
        return value or None

    @field_validator("principals_allowed_to_retrieve", "service_principal_names", mode="before")
    @classmethod
    def _normalize_list(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = value.split(",")
        if not isinstance(value, (list, tuple)):
            raise ValueError("must be a list of strings")

        items: List[str] = []
        for item in value:
            if not isinstance(item, str):
                raise ValueError("must be a list of strings")
            item = item.strip()
            if item:
                items.append(item)
        return items

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ProvisioningRequest":
        """Validate a decoded payload, raising RequestValidationError on any problem."""
        if not isinstance(payload, Mapping):
            raise RequestValidationError("Request body must be a JSON object")
        try:
            return cls.model_validate(dict(payload))
        except ValidationError as exc:
            problems = []
            for error in exc.errors():
                field = ".".join(str(part) for part in error.get("loc", ())) or "body"
                problems.append(f"{field}: {error.get('msg', 'invalid value')}")
            raise RequestValidationError("Invalid provisioning request: " + "; ".join(problems)) from exc


def account_name_hint(payload: Any) -> str:
    """Best-effort account name for reports about payloads that failed validation."""
    if isinstance(payload, ProvisioningRequest):
        return payload.account_name
    if isinstance(payload, Mapping):
        for key in ("AccountName", "account_name"):
            value = payload.get(key)
            if isinstance(value, str):
                return value.strip()
    return ""


class DirectoryCredential(BaseModel):
    """Domain admin identity, kept in memory for a single invocation."""

    model_config = ConfigDict(frozen=True)

    username: str
    password: SecretStr


class RootKeyPolicy(str, Enum):
    DEFERRED = "deferred"
    IMMEDIATE = "immediate"


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class RootKeyRecord(BaseModel):
    """A KDS root key as listed by the directory."""

    key_id: str
    effective_time: datetime
    created: Optional[datetime] = None


class RootKeyState(BaseModel):
    """Outcome of the root key bootstrap.

    Domain controllers only derive gMSA passwords from a key once it has
    replicated, so a key is usable ``propagation`` hours after its effective
    time. Lab setups backdate the effective time to skip that wait.
    """

    model_config = ConfigDict(frozen=True)

    exists: bool
    created: bool = False
    key_id: Optional[str] = None
    effective_time: Optional[datetime] = None
    usable_from: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: RootKeyRecord, propagation_hours: float, created: bool = False) -> "RootKeyState":
        effective = as_utc(record.effective_time)
        return cls(
            exists=True,
            created=created,
            key_id=record.key_id,
            effective_time=effective,
            usable_from=effective + timedelta(hours=propagation_hours),
        )

    def usable(self, now: Optional[datetime] = None) -> bool:
        if not self.exists:
            return False
        if self.usable_from is None:
            return True
        return as_utc(self.usable_from) <= (now or utcnow())


class DirectoryObjectRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    distinguished_name: str
    sam_account_name: str = ""
    object_guid: str = ""
    dns_host_name: Optional[str] = None
    created: Optional[datetime] = None


class SuccessResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["Success"] = "Success"
    account_name: str
    dns_host_name: str
    distinguished_name: str
    sam_account_name: str
    object_guid: str
    created: datetime
    message: str
    timestamp: datetime = Field(default_factory=utcnow)


class AlreadyExistsResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["AlreadyExists"] = "AlreadyExists"
    account_name: str
    distinguished_name: str
    message: str
    timestamp: datetime = Field(default_factory=utcnow)


class FailedResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["Failed"] = "Failed"
    account_name: str
    error_kind: ErrorKind
    error_message: str
    timestamp: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_error(cls, account_name: str, error: ProvisioningError) -> "FailedResult":
        return cls(account_name=account_name, error_kind=error.kind, error_message=error.message)


ProvisioningResult = Union[SuccessResult, AlreadyExistsResult, FailedResult]
