"""FastAPI webhook endpoint that provisions gMSAs for the calling workflow engine."""

import logging

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from gmsa_provisioner.config.settings import get_settings
from gmsa_provisioner.errors import CredentialUnavailableError, DirectoryUnreachableError, ProvisioningError
from gmsa_provisioner.gateway import WebhookGateway
from gmsa_provisioner.integrations.directory import get_directory_client
from gmsa_provisioner.integrations.secret_store import get_credential_broker
from gmsa_provisioner.models.provisioning import FailedResult
from gmsa_provisioner.services.provisioning import ProvisioningWorkflow
from gmsa_provisioner.services.reporter import ResultReporter, http_status, to_response


logger = logging.getLogger(__name__)

settings = get_settings()
app = FastAPI(title="gMSA Provisioner")
limiter = Limiter(key_func=get_remote_address, enabled=settings.webhook_rate_limit_enabled)
app.state.limiter = limiter


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):  # pragma: no cover - simple handler
    return JSONResponse(status_code=429, content={"detail": "Rate limit exceeded"})


@app.exception_handler(ProvisioningError)
async def provisioning_error_handler(request: Request, exc: ProvisioningError):
    """Answer errors raised before the gateway runs with the usual Failed shape."""
    logger.error("Webhook could not be served: %s", exc.message)
    result = FailedResult.from_error("", exc)
    ResultReporter(settings).report(result)
    return JSONResponse(status_code=http_status(result), content=to_response(result))


def get_gateway() -> WebhookGateway:
    """Build a fresh gateway per request; collaborators carry no per-request state."""
    try:
        broker = get_credential_broker(settings)
    except ValueError as exc:
        raise CredentialUnavailableError(str(exc)) from exc
    try:
        directory = get_directory_client(settings)
    except ValueError as exc:
        raise DirectoryUnreachableError(str(exc)) from exc
    workflow = ProvisioningWorkflow(broker, directory, settings)
    return WebhookGateway(workflow, broker, settings)


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


@app.post("/webhook/gmsa")
@limiter.limit(settings.webhook_rate_limit)
async def gmsa_webhook(request: Request, gateway: WebhookGateway = Depends(get_gateway)):
    body = await request.body()
    logger.debug("Received gMSA webhook (%d bytes)", len(body))

    result = await gateway.handle(body, request.headers, should_cancel=request.is_disconnected)
    return JSONResponse(status_code=http_status(result), content=to_response(result))
