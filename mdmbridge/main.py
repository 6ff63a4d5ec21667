import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from pydantic import ValidationError

from mdmbridge import __version__
from mdmbridge.commands import CommandRequest, build_command_payload, encode_command
from mdmbridge.config import Settings
from mdmbridge.delivery import DeliveryClient
from mdmbridge.errors import DeliveryError, EncodingError, RecordSkip
from mdmbridge.logging_utils import RequestLoggingMiddleware, log_command_data
from mdmbridge.metrics import get_metrics, get_metrics_content_type, record_command_outcome
from mdmbridge.schemas import CommandResponse, HealthResponse, VersionResponse
from mdmbridge.utils import credentials_match

logger = logging.getLogger(__name__)

PROXY_USERNAME = "micromdm"
PROXY_REALM = "micromdm"


def create_app(settings: Settings, delivery_client: Optional[DeliveryClient] = None) -> FastAPI:
    """
    Build the command proxy application.

    Credentials and the remote endpoint are fixed here; handlers share no
    other state.

    Raises:
        ValueError: API keys or the command URL are missing
    """
    if not settings.PROXY_API_KEY or not settings.REMOTE_API_KEY:
        raise ValueError("must provide API keys")
    if delivery_client is None:
        if not settings.COMMAND_URL:
            raise ValueError("must provide command URL")
        delivery_client = DeliveryClient(settings.COMMAND_URL, settings.REMOTE_API_KEY)

    proxy_api_key = settings.PROXY_API_KEY
    command_method = settings.COMMAND_METHOD.upper()
    security = HTTPBasic(auto_error=False, realm=PROXY_REALM)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"command proxy forwarding to {delivery_client.base_url} ({command_method})")
        yield
        delivery_client.close()

    app = FastAPI(
        title="mdmbridge",
        description="Translates JSON MDM command requests and forwards them to a remote MDM service",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(RequestLoggingMiddleware)

    def require_basic_auth(credentials: Optional[HTTPBasicCredentials] = Depends(security)) -> None:
        if credentials is None or not credentials_match(
            credentials.username, credentials.password, PROXY_USERNAME, proxy_api_key
        ):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Unauthorized",
                headers={"WWW-Authenticate": f'Basic realm="{PROXY_REALM}"'},
            )

    # =========================================================================
    # Command Route
    # =========================================================================

    @app.api_route(
        "/v1/commands",
        methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
        response_model=CommandResponse,
        response_model_exclude_none=True,
        dependencies=[Depends(require_basic_auth)],
    )
    async def commands(request: Request) -> CommandResponse:
        """
        Translate a JSON command request and forward it.

        - Body: {"UDID": ..., "RequestType": ..., ...command fields}
        - Builds the command payload and encodes it as a property list
        - Sends it to <command url>/<UDID> with the remote API key
        - Returns {"payload": {...}} on success, {"error": "..."} otherwise
        """
        if request.method != "POST":
            logger.warning("POST method required")
            raise HTTPException(
                status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
                detail="Method Not Allowed",
            )

        raw_body = await request.body()
        try:
            cmd_request = CommandRequest.model_validate(
                json.loads(raw_body, parse_constant=_reject_constant)
            )
        except (ValueError, ValidationError) as e:
            logger.error(f"error parsing body: {e}")
            return _error(request, "invalid_request", e)

        ids = {"udid": cmd_request.udid, "request_type": cmd_request.request_type}
        try:
            payload = build_command_payload(cmd_request)
        except RecordSkip as e:
            logger.error(f"error building command: {e}")
            return _error(request, "build_error", e, **ids)

        ids["command_uuid"] = payload.command_uuid
        logger.info(
            f"new command: udid={payload.udid} request_type={payload.request_type} "
            f"uuid={payload.command_uuid}"
        )

        try:
            body = encode_command(payload)
        except EncodingError as e:
            logger.error(str(e))
            return _error(request, "encode_error", e, **ids)

        try:
            await delivery_client.adeliver(body, path=payload.udid, method=command_method)
        except DeliveryError as e:
            logger.error(f"error forwarding command {payload.command_uuid}: {e}")
            return _error(request, "delivery_error", e, **ids)

        record_command_outcome("forwarded")
        log_command_data(request, "forwarded", **ids)
        return CommandResponse(payload=payload.to_json())

    # =========================================================================
    # Version / Health / Metrics Routes
    # =========================================================================

    @app.get("/version", response_model=VersionResponse)
    async def version() -> VersionResponse:
        return VersionResponse(version=__version__)

    @app.get("/health/live", response_model=HealthResponse)
    async def health_live() -> HealthResponse:
        """Liveness probe - always returns 200 once the app is running."""
        return HealthResponse(status="ok")

    @app.get("/metrics")
    async def metrics() -> Response:
        """Prometheus exposition of request and command counters."""
        return Response(
            content=get_metrics(),
            media_type=get_metrics_content_type()
        )

    return app


def _error(request: Request, result: str, error: Exception, **ids) -> CommandResponse:
    record_command_outcome(result)
    log_command_data(request, result, **ids)
    return CommandResponse(error=str(error))


def _reject_constant(name: str):
    # NaN, Infinity and -Infinity are not JSON
    raise ValueError(f"invalid JSON value: {name}")
