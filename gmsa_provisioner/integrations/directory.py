import asyncio
import json
import logging
import re
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pypsrp.exceptions import AuthenticationError, WinRMError, WinRMTransportError
from pypsrp.powershell import PowerShell, RunspacePool
from pypsrp.wsman import WSMan
from requests.exceptions import RequestException

from ..config.settings import Settings, get_settings
from ..errors import (
    AlreadyExistsError,
    DirectoryUnreachableError,
    InvalidParameterError,
    PermissionDeniedError,
    ProvisioningError,
    VerificationFailedError,
)
from ..models.provisioning import (
    DirectoryCredential,
    DirectoryObjectRef,
    ProvisioningRequest,
    RootKeyPolicy,
    RootKeyRecord,
    RootKeyState,
    as_utc,
    utcnow,
)

logger = logging.getLogger(__name__)

ACCOUNT_PROPERTIES = ["Name", "DistinguishedName", "SamAccountName", "ObjectGUID", "DNSHostName", "Created"]


def build_create_parameters(request: ProvisioningRequest, settings: Settings) -> Dict[str, Any]:
    """Map a request onto New-ADServiceAccount parameters.

    Optional values that are absent are left out entirely; the directory
    treats an explicitly empty attribute differently from a missing one.
    """
    parameters: Dict[str, Any] = {
        "Name": request.account_name,
        "DNSHostName": request.dns_host_name,
        "Enabled": True,
    }

    encryption_types = [item.strip() for item in settings.kerberos_encryption_types.split(",") if item.strip()]
    if encryption_types:
        parameters["KerberosEncryptionType"] = encryption_types

    if request.principals_allowed_to_retrieve:
        parameters["PrincipalsAllowedToRetrieveManagedPassword"] = list(request.principals_allowed_to_retrieve)

    if request.description:
        parameters["Description"] = request.description

    if request.service_principal_names:
        parameters["ServicePrincipalNames"] = list(request.service_principal_names)

    path = request.organizational_unit or settings.default_organizational_unit.strip()
    if path:
        parameters["Path"] = path

    if request.managed_password_interval_days:
        parameters["ManagedPasswordIntervalInDays"] = request.managed_password_interval_days

    return parameters


class DirectoryClient(ABC):
    def __init__(self, server: str, settings: Optional[Settings] = None) -> None:
        self.server = server
        self.settings = settings or get_settings()
        self._root_key_lock = asyncio.Lock()

    @abstractmethod
    async def find_account(self, credential: DirectoryCredential, account_name: str) -> Optional[DirectoryObjectRef]:
        """Return the service account with exactly this name, if any."""
        pass

    @abstractmethod
    async def create_account(self, credential: DirectoryCredential, request: ProvisioningRequest) -> DirectoryObjectRef:
        pass

    @abstractmethod
    async def list_root_keys(self, credential: DirectoryCredential) -> List[RootKeyRecord]:
        pass

    @abstractmethod
    async def add_root_key(self, credential: DirectoryCredential, effective_time: datetime) -> RootKeyRecord:
        pass

    async def exists(self, credential: DirectoryCredential, account_name: str) -> bool:
        return await self.find_account(credential, account_name) is not None

    async def verify_account(self, credential: DirectoryCredential, account_name: str) -> DirectoryObjectRef:
        """Read back a freshly created account."""
        account = await self.find_account(credential, account_name)
        if account is None:
            raise VerificationFailedError(
                f"gMSA '{account_name}' was not found on {self.server} after creation"
            )
        return account

    def _root_key_effective_time(self, policy: RootKeyPolicy) -> datetime:
        now = utcnow().replace(microsecond=0)
        if policy == RootKeyPolicy.IMMEDIATE:
            return now - timedelta(hours=self.settings.root_key_backdate_hours)
        return now

    async def ensure_root_key(
        self,
        credential: DirectoryCredential,
        policy: RootKeyPolicy,
        key_id: Optional[str] = None,
    ) -> RootKeyState:
        """Make sure a KDS root key exists, creating one only if none does."""
        propagation_hours = self.settings.root_key_propagation_hours
        keys = await self.list_root_keys(credential)

        if key_id:
            for record in keys:
                if record.key_id.lower() == key_id.lower():
                    return RootKeyState.from_record(record, propagation_hours)
            raise InvalidParameterError(f"KDS root key '{key_id}' does not exist on {self.server}")

        async with self._root_key_lock:
            return await self._bootstrap_root_key(credential, policy, keys)

    async def _bootstrap_root_key(
        self,
        credential: DirectoryCredential,
        policy: RootKeyPolicy,
        keys: List[RootKeyRecord],
    ) -> RootKeyState:
        propagation_hours = self.settings.root_key_propagation_hours
        if not keys:
            # Another run in this process may have created one while we waited.
            keys = await self.list_root_keys(credential)
        if keys:
            earliest = min(keys, key=lambda record: as_utc(record.effective_time))
            logger.debug("KDS root key %s already present", earliest.key_id)
            return RootKeyState.from_record(earliest, propagation_hours)

        effective_time = self._root_key_effective_time(policy)
        logger.info(
            "No KDS root key found on %s; creating one effective %s (%s policy)",
            self.server,
            effective_time.isoformat(),
            policy.value,
        )
        try:
            record = await self.add_root_key(credential, effective_time)
        except AlreadyExistsError:
            keys = await self.list_root_keys(credential)
            if not keys:
                raise
            logger.info("KDS root key was created concurrently; using existing key")
            earliest = min(keys, key=lambda item: as_utc(item.effective_time))
            return RootKeyState.from_record(earliest, propagation_hours)

        # Another writer may have added a key between our list and add; the earliest one wins.
        keys = await self.list_root_keys(credential)
        earliest = min(keys or [record], key=lambda item: as_utc(item.effective_time))
        if earliest.key_id != record.key_id:
            logger.warning(
                "KDS root key %s was created concurrently with %s; reporting the earlier key",
                earliest.key_id,
                record.key_id,
            )
        return RootKeyState.from_record(earliest, propagation_hours, created=earliest.key_id == record.key_id)


class MockDirectoryClient(DirectoryClient):
    """In-memory directory with call recording and injectable faults."""

    def __init__(
        self,
        server: str = "dc01.contoso.com",
        settings: Optional[Settings] = None,
        domain_dn: str = "DC=contoso,DC=com",
        root_keys: Optional[Iterable[RootKeyRecord]] = None,
        latency: float = 0.0,
    ) -> None:
        super().__init__(server, settings)
        self.domain_dn = domain_dn
        self.latency = latency
        self.accounts: Dict[str, DirectoryObjectRef] = {}
        self.root_keys: List[RootKeyRecord] = list(root_keys or [])
        self.calls: List[str] = []
        self.create_parameters: List[Dict[str, Any]] = []
        self.root_key_creations: List[datetime] = []
        self.failures: Dict[str, ProvisioningError] = {}
        self.hidden_accounts: set[str] = set()
        self.hide_new_accounts = False

    def fail(self, operation: str, error: ProvisioningError) -> None:
        """Make every later call to ``operation`` raise ``error``."""
        self.failures[operation] = error

    async def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        error = self.failures.get(operation)
        if error is not None:
            raise error

    async def find_account(self, credential: DirectoryCredential, account_name: str) -> Optional[DirectoryObjectRef]:
        await self._enter("find_account")
        key = account_name.lower()
        account = None if key in self.hidden_accounts else self.accounts.get(key)
        # Snapshot first, then yield, so concurrent callers can observe stale state.
        if self.latency:
            await asyncio.sleep(self.latency)
        return account

    async def create_account(self, credential: DirectoryCredential, request: ProvisioningRequest) -> DirectoryObjectRef:
        await self._enter("create_account")
        parameters = build_create_parameters(request, self.settings)
        self.create_parameters.append(parameters)

        key = request.account_name.lower()
        if key in self.accounts:
            raise AlreadyExistsError(f"The specified account already exists: {request.account_name}")

        container = parameters.get("Path") or f"CN=Managed Service Accounts,{self.domain_dn}"
        account = DirectoryObjectRef(
            name=request.account_name,
            distinguished_name=f"CN={request.account_name},{container}",
            sam_account_name=f"{request.account_name}$",
            object_guid=str(uuid.uuid4()),
            dns_host_name=request.dns_host_name,
            created=utcnow(),
        )
        self.accounts[key] = account
        if self.hide_new_accounts:
            self.hidden_accounts.add(key)

        if self.latency:
            await asyncio.sleep(self.latency)
        return account

    async def list_root_keys(self, credential: DirectoryCredential) -> List[RootKeyRecord]:
        await self._enter("list_root_keys")
        keys = list(self.root_keys)
        if self.latency:
            await asyncio.sleep(self.latency)
        return keys

    async def add_root_key(self, credential: DirectoryCredential, effective_time: datetime) -> RootKeyRecord:
        await self._enter("add_root_key")
        record = RootKeyRecord(key_id=str(uuid.uuid4()), effective_time=effective_time, created=utcnow())
        self.root_keys.append(record)
        self.root_key_creations.append(effective_time)
        return record


_ALREADY_EXISTS_MARKERS = (
    "ADIdentityAlreadyExistsException",
    "ActiveDirectoryServer:1316",
    "ActiveDirectoryServer:8305",
    "already exists",
    "already in use",
)
_PERMISSION_MARKERS = (
    "UnauthorizedAccessException",
    "ActiveDirectoryServer:8344",
    "access is denied",
    "insufficient access rights",
)
_INVALID_PARAMETER_MARKERS = (
    "ParameterBindingException",
    "ParameterArgumentValidationError",
    "ParameterArgumentTransformationError",
    "ArgumentException",
    "ADIdentityNotFoundException",
    "InvalidArgument",
    "cannot find an object with identity",
)

_MS_DATE = re.compile(r"/Date\((-?\d+)(?:[+-]\d+)?\)/")


def classify_error_records(records: Iterable[Any]) -> ProvisioningError:
    """Turn PowerShell error records into the matching provisioning error."""
    messages: List[str] = []
    haystack: List[str] = []
    for record in records:
        message = getattr(record, "message", None) or str(record)
        messages.append(message)
        haystack.append(message)
        for attribute in ("fq_error", "category", "reason"):
            value = getattr(record, attribute, None)
            if value:
                haystack.append(str(value))

    detail = "; ".join(messages) or "Directory command failed without error details"
    text = " ".join(haystack).lower()

    if any(marker.lower() in text for marker in _ALREADY_EXISTS_MARKERS):
        return AlreadyExistsError(detail)
    if any(marker.lower() in text for marker in _PERMISSION_MARKERS):
        return PermissionDeniedError(detail)
    if any(marker.lower() in text for marker in _INVALID_PARAMETER_MARKERS):
        return InvalidParameterError(detail)
    return DirectoryUnreachableError(detail)


def _parse_directory_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, dict):
        value = value.get("DateTime") or value.get("value")
    if not isinstance(value, str) or not value:
        return None

    match = _MS_DATE.search(value)
    if match:
        return datetime.fromtimestamp(int(match.group(1)) / 1000, tz=timezone.utc)

    candidate = value.strip()
    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(candidate))
    except ValueError:
        return None


def _guid_text(value: Any) -> str:
    if isinstance(value, dict):
        value = value.get("Guid") or value.get("value")
    return str(value) if value else ""


def _escape_filter_value(value: str) -> str:
    return value.replace("'", "''")


class PowerShellDirectoryClient(DirectoryClient):
    """Runs typed ActiveDirectory and Kds cmdlets over PowerShell Remoting.

    Every operation opens its own WinRM session with the credential it is
    handed, so nothing authenticated outlives the call.
    """

    def _open(self, credential: DirectoryCredential) -> WSMan:
        timeout = self.settings.remote_call_timeout_seconds
        return WSMan(
            self.server,
            username=credential.username,
            password=credential.password.get_secret_value(),
            port=self.settings.winrm_port,
            ssl=self.settings.winrm_ssl,
            auth=self.settings.winrm_auth,
            cert_validation=self.settings.winrm_cert_validation,
            connection_timeout=int(timeout),
            read_timeout=int(timeout),
            operation_timeout=max(int(timeout) - 5, 1),
        )

    def _invoke(self, credential: DirectoryCredential, pipeline: List[Tuple[str, Dict[str, Any]]]) -> List[Any]:
        wsman = self._open(credential)
        try:
            with wsman, RunspacePool(wsman) as pool:
                ps = PowerShell(pool)
                for cmdlet, parameters in pipeline:
                    ps.add_cmdlet(cmdlet)
                    for name, value in parameters.items():
                        ps.add_parameter(name, value)
                output = ps.invoke()
                if ps.had_errors:
                    raise classify_error_records(ps.streams.error)
                return output
        except (AuthenticationError, WinRMTransportError) as exc:
            raise DirectoryUnreachableError(f"Could not authenticate to {self.server}: {exc}") from exc
        except (WinRMError, RequestException) as exc:
            raise DirectoryUnreachableError(f"Could not reach {self.server}: {exc}") from exc

    async def _run(self, pipeline: List[Tuple[str, Dict[str, Any]]], credential: DirectoryCredential) -> List[Any]:
        commands = " | ".join(cmdlet for cmdlet, _ in pipeline)
        logger.debug("Invoking %s on %s", commands, self.server)
        return await asyncio.to_thread(self._invoke, credential, pipeline)

    @staticmethod
    def _json_rows(output: List[Any]) -> List[Dict[str, Any]]:
        text = "".join(str(item) for item in output if item is not None).strip()
        if not text:
            return []
        try:
            data = json.loads(text)
        except ValueError as exc:
            raise DirectoryUnreachableError(f"Unexpected output from directory command: {text[:200]}") from exc
        if isinstance(data, dict):
            return [data]
        return [row for row in data if isinstance(row, dict)]

    @staticmethod
    def _to_object_ref(row: Dict[str, Any]) -> DirectoryObjectRef:
        return DirectoryObjectRef(
            name=row.get("Name") or "",
            distinguished_name=row.get("DistinguishedName") or "",
            sam_account_name=row.get("SamAccountName") or "",
            object_guid=_guid_text(row.get("ObjectGUID")),
            dns_host_name=row.get("DNSHostName"),
            created=_parse_directory_datetime(row.get("Created")),
        )

    async def find_account(self, credential: DirectoryCredential, account_name: str) -> Optional[DirectoryObjectRef]:
        pipeline = [
            (
                "Get-ADServiceAccount",
                {
                    "Filter": f"Name -eq '{_escape_filter_value(account_name)}'",
                    "Properties": ["DNSHostName", "Created"],
                    "Server": self.server,
                },
            ),
            ("Select-Object", {"Property": ACCOUNT_PROPERTIES}),
            ("ConvertTo-Json", {"Depth": 3, "Compress": True}),
        ]
        rows = self._json_rows(await self._run(pipeline, credential))
        for row in rows:
            if str(row.get("Name", "")).lower() == account_name.lower():
                return self._to_object_ref(row)
        return None

    async def create_account(self, credential: DirectoryCredential, request: ProvisioningRequest) -> DirectoryObjectRef:
        parameters = build_create_parameters(request, self.settings)
        parameters.update({"Server": self.server, "PassThru": True})
        pipeline = [
            ("New-ADServiceAccount", parameters),
            ("Select-Object", {"Property": ACCOUNT_PROPERTIES}),
            ("ConvertTo-Json", {"Depth": 3, "Compress": True}),
        ]
        rows = self._json_rows(await self._run(pipeline, credential))
        if not rows:
            return DirectoryObjectRef(name=request.account_name, distinguished_name="")
        return self._to_object_ref(rows[0])

    async def list_root_keys(self, credential: DirectoryCredential) -> List[RootKeyRecord]:
        pipeline = [
            ("Get-KdsRootKey", {}),
            ("Select-Object", {"Property": ["KeyId", "EffectiveTime", "CreationTime"]}),
            ("ConvertTo-Json", {"Depth": 3, "Compress": True}),
        ]
        records: List[RootKeyRecord] = []
        for row in self._json_rows(await self._run(pipeline, credential)):
            effective = _parse_directory_datetime(row.get("EffectiveTime"))
            if effective is None:
                logger.warning("Skipping KDS root key %s without an effective time", row.get("KeyId"))
                continue
            records.append(
                RootKeyRecord(
                    key_id=_guid_text(row.get("KeyId")),
                    effective_time=effective,
                    created=_parse_directory_datetime(row.get("CreationTime")),
                )
            )
        return records

    async def add_root_key(self, credential: DirectoryCredential, effective_time: datetime) -> RootKeyRecord:
        stamp = as_utc(effective_time).strftime("%Y-%m-%dT%H:%M:%SZ")
        output = await self._run([("Add-KdsRootKey", {"EffectiveTime": stamp})], credential)
        key_id = _guid_text(output[0]) if output else ""
        return RootKeyRecord(key_id=key_id, effective_time=effective_time, created=utcnow())


_directory_instance: Optional[DirectoryClient] = None


def get_directory_client(settings: Optional[Settings] = None, force_refresh: bool = False) -> DirectoryClient:
    """Return the configured directory client instance."""
    global _directory_instance

    if not force_refresh and _directory_instance is not None:
        return _directory_instance

    settings = settings or get_settings()
    provider_type = settings.directory_provider.lower()
    if provider_type == "powershell":
        if not settings.domain_controller:
            raise ValueError("GMSA_DOMAIN_CONTROLLER must be set for the powershell directory provider")
        _directory_instance = PowerShellDirectoryClient(settings.domain_controller, settings)
        logger.info("Using PowerShell Remoting directory client against %s", settings.domain_controller)
    elif provider_type == "mock":
        _directory_instance = MockDirectoryClient(settings.domain_controller or "dc01.contoso.com", settings)
        logger.warning("Using in-memory mock directory")
    else:
        raise ValueError(
            f"Unknown GMSA_DIRECTORY_PROVIDER '{settings.directory_provider}'; expected powershell or mock"
        )

    return _directory_instance
