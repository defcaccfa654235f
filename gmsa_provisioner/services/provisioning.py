"""Single-pass gMSA provisioning state machine.

Start -> CredentialFetch -> ExistenceCheck -> (AlreadyExists | RootKeyEnsure
-> Create -> Verify -> Success); a failing step ends the run as Failed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Mapping, Optional, Type, Union

from opentelemetry.trace import get_tracer

from ..config.settings import Settings, get_settings
from ..errors import (
    AlreadyExistsError,
    CredentialUnavailableError,
    DirectoryUnreachableError,
    ProvisioningCancelledError,
    ProvisioningError,
    RequestValidationError,
    RootKeyNotReadyError,
)
from ..integrations.directory import DirectoryClient
from ..integrations.secret_store import CredentialBroker
from ..models.provisioning import (
    AlreadyExistsResult,
    DirectoryCredential,
    DirectoryObjectRef,
    FailedResult,
    ProvisioningRequest,
    ProvisioningResult,
    SuccessResult,
    account_name_hint,
    utcnow,
)
from .idempotency import IdempotencyGuard
from .reporter import ResultReporter

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

CancelCheck = Callable[[], Awaitable[bool]]


class ProvisioningWorkflow:
    def __init__(
        self,
        broker: CredentialBroker,
        directory: DirectoryClient,
        settings: Optional[Settings] = None,
        reporter: Optional[ResultReporter] = None,
    ) -> None:
        self.broker = broker
        self.directory = directory
        self.settings = settings or get_settings()
        self.reporter = reporter or ResultReporter(self.settings)
        self.guard = IdempotencyGuard(directory)

    async def provision(
        self,
        payload: Union[ProvisioningRequest, Mapping[str, Any]],
        should_cancel: Optional[CancelCheck] = None,
    ) -> ProvisioningResult:
        """Run one invocation and return exactly one result."""
        with tracer.start_as_current_span("gmsa.provision") as span:
            try:
                if isinstance(payload, ProvisioningRequest):
                    request = payload
                else:
                    request = ProvisioningRequest.from_payload(payload)
            except RequestValidationError as exc:
                logger.warning("Rejected provisioning request: %s", exc.message)
                result: ProvisioningResult = FailedResult.from_error(account_name_hint(payload), exc)
            else:
                span.set_attribute("gmsa.account_name", request.account_name)
                result = await self._run(request, should_cancel)
            span.set_attribute("gmsa.status", result.status)

        self.reporter.report(result)
        return result

    async def _run(self, request: ProvisioningRequest, should_cancel: Optional[CancelCheck]) -> ProvisioningResult:
        account_name = request.account_name
        try:
            await self._checkpoint(should_cancel, "credential retrieval")
            credential = await self._step(
                "fetch_credential",
                self.broker.fetch_directory_credential(),
                CredentialUnavailableError,
            )

            await self._checkpoint(should_cancel, "existence check")
            existing = await self._step(
                "existence_check",
                self.guard.check(account_name, credential),
                DirectoryUnreachableError,
            )
            if existing is not None:
                return self._already_exists(account_name, existing)

            await self._checkpoint(should_cancel, "KDS root key check")
            root_key = await self._step(
                "ensure_root_key",
                self.directory.ensure_root_key(credential, self.settings.root_key_policy, request.kds_root_key_id),
                DirectoryUnreachableError,
            )
            if root_key.created:
                logger.info("Created KDS root key %s effective %s", root_key.key_id, root_key.effective_time)
            if not root_key.usable():
                raise RootKeyNotReadyError(
                    f"KDS root key {root_key.key_id} is not usable until "
                    f"{root_key.usable_from.isoformat() if root_key.usable_from else 'replication completes'}; "
                    "retry provisioning after propagation"
                )

            await self._checkpoint(should_cancel, "account creation")
        except ProvisioningError as exc:
            logger.error("Provisioning of %s failed: %s", account_name, exc.message)
            return FailedResult.from_error(account_name, exc)

        # Once creation is issued the run always reaches a verified answer.
        outcome = asyncio.ensure_future(self._create_and_verify(request, credential))
        try:
            return await asyncio.shield(outcome)
        except asyncio.CancelledError:
            logger.warning("Caller went away while creating %s; reporting when verification completes", account_name)
            outcome.add_done_callback(self._report_detached)
            raise

    def _report_detached(self, outcome: asyncio.Future) -> None:
        """Report a create/verify run whose caller was cancelled."""
        if outcome.cancelled():
            logger.error("Detached create/verify run was cancelled before it finished")
            return
        error = outcome.exception()
        if error is not None:
            logger.error("Detached create/verify run failed: %s", error)
            return
        self.reporter.report(outcome.result())

    async def _create_and_verify(self, request: ProvisioningRequest, credential: DirectoryCredential) -> ProvisioningResult:
        account_name = request.account_name
        timeout = self.settings.remote_call_timeout_seconds
        created: Optional[DirectoryObjectRef] = None
        create_error: Optional[ProvisioningError] = None

        logger.info("Creating gMSA %s on %s", account_name, self.directory.server)
        try:
            with tracer.start_as_current_span("gmsa.create_account"):
                created = await asyncio.wait_for(self.directory.create_account(credential, request), timeout)
        except asyncio.TimeoutError:
            create_error = DirectoryUnreachableError(
                f"Creating gMSA '{account_name}' timed out after {timeout:g}s; outcome unknown"
            )
            logger.warning("%s; verifying directory state", create_error.message)
        except AlreadyExistsError:
            logger.info("gMSA %s was created concurrently by another invocation", account_name)
            return await self._existing_after_race(account_name, credential)
        except ProvisioningError as exc:
            logger.error("Creating gMSA %s failed: %s", account_name, exc.message)
            return FailedResult.from_error(account_name, exc)
        except Exception as exc:
            logger.error("Creating gMSA %s failed: %s", account_name, exc, exc_info=True)
            return FailedResult.from_error(account_name, DirectoryUnreachableError(str(exc)))

        if self.settings.verify_settle_seconds:
            await asyncio.sleep(self.settings.verify_settle_seconds)

        try:
            verified = await self._step(
                "verify_account",
                self.directory.verify_account(credential, account_name),
                DirectoryUnreachableError,
            )
        except ProvisioningError as exc:
            logger.error("Verification of gMSA %s failed: %s", account_name, exc.message)
            return FailedResult.from_error(account_name, create_error or exc)

        return SuccessResult(
            account_name=account_name,
            dns_host_name=verified.dns_host_name or request.dns_host_name,
            distinguished_name=verified.distinguished_name or (created.distinguished_name if created else ""),
            sam_account_name=verified.sam_account_name or (created.sam_account_name if created else ""),
            object_guid=verified.object_guid or (created.object_guid if created else ""),
            created=verified.created or (created.created if created and created.created else utcnow()),
            message=f"gMSA '{account_name}' created successfully.",
        )

    async def _existing_after_race(self, account_name: str, credential: DirectoryCredential) -> ProvisioningResult:
        distinguished_name = ""
        try:
            existing = await self._step(
                "existence_check",
                self.directory.find_account(credential, account_name),
                DirectoryUnreachableError,
            )
        except ProvisioningError as exc:
            logger.warning("Could not read back existing gMSA %s: %s", account_name, exc.message)
        else:
            if existing is not None:
                distinguished_name = existing.distinguished_name
        return AlreadyExistsResult(
            account_name=account_name,
            distinguished_name=distinguished_name,
            message=self.guard.already_exists_message(account_name),
        )

    def _already_exists(self, account_name: str, existing: DirectoryObjectRef) -> AlreadyExistsResult:
        return AlreadyExistsResult(
            account_name=account_name,
            distinguished_name=existing.distinguished_name,
            message=self.guard.already_exists_message(account_name),
        )

    async def _checkpoint(self, should_cancel: Optional[CancelCheck], next_step: str) -> None:
        if should_cancel is not None and await should_cancel():
            raise ProvisioningCancelledError(f"Request cancelled before {next_step}")

    async def _step(self, name: str, operation: Awaitable[Any], failure: Type[ProvisioningError]) -> Any:
        """Await one remote call under the configured timeout."""
        timeout = self.settings.remote_call_timeout_seconds
        with tracer.start_as_current_span(f"gmsa.{name}"):
            try:
                return await asyncio.wait_for(operation, timeout)
            except asyncio.TimeoutError as exc:
                raise failure(f"{name} timed out after {timeout:g}s") from exc
            except ProvisioningError:
                raise
            except Exception as exc:
                logger.error("%s raised an unexpected error: %s", name, exc, exc_info=True)
                raise failure(f"{name} failed: {exc}") from exc
