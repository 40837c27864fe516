import logging
import secrets
from typing import Optional

import orjson
from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse

from . import __version__
from .config import Settings
from .errors import AuthorizationError, RelayError, ValidationError
from .models import IntakeBody, IntakeReceipt, WorkerBody
from .runtime import Runtime, open_runtime

logger = logging.getLogger(__name__)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"ok": False, "error": message}, status_code=status_code)


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def require_api_key(
    request: Request, x_api_key: Optional[str] = Header(default=None)
) -> None:
    expected = request.app.state.settings.api_key
    if expected is None:
        return
    if not x_api_key or not secrets.compare_digest(x_api_key, expected):
        raise AuthorizationError("invalid api key")


def require_telegram_secret(
    request: Request,
    x_telegram_bot_api_secret_token: Optional[str] = Header(default=None),
) -> None:
    expected = request.app.state.settings.telegram_webhook_secret
    if expected is None:
        return
    token = x_telegram_bot_api_secret_token or ""
    if not secrets.compare_digest(token, expected):
        raise AuthorizationError("invalid webhook secret")


def create_app(settings: Settings, runtime: Optional[Runtime] = None) -> FastAPI:
    """
    Build the HTTP app.

    With no `runtime`, one is opened on startup (Redis, RabbitMQ, Telegram,
    WebEngage) and closed on shutdown.
    """
    app = FastAPI(title=settings.service_name, version=__version__)
    app.state.settings = settings
    app.state.runtime = runtime
    app.state.owns_runtime = runtime is None

    @app.on_event("startup")
    async def _startup():
        if app.state.runtime is None:
            app.state.runtime = await open_runtime(settings)

    @app.on_event("shutdown")
    async def _shutdown():
        if app.state.owns_runtime and app.state.runtime is not None:
            await app.state.runtime.close()
            app.state.runtime = None

    @app.exception_handler(ValidationError)
    async def _validation_error(request: Request, exc: ValidationError):
        return _error(400, str(exc))

    @app.exception_handler(AuthorizationError)
    async def _authorization_error(request: Request, exc: AuthorizationError):
        return _error(401, str(exc))

    @app.exception_handler(RelayError)
    async def _relay_error(request: Request, exc: RelayError):
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return _error(500, str(exc))

    @app.get("/healthz")
    async def healthz():
        return {"ok": True, "service": settings.service_name}

    # --- intake ---

    @app.post("/v1/invite/request", dependencies=[Depends(require_api_key)])
    async def request_invite(
        body: Optional[IntakeBody] = None, runtime: Runtime = Depends(get_runtime)
    ):
        body = body or IntakeBody()
        request = await runtime.intake.submit(body.user_id, body.transaction_id)
        receipt = IntakeReceipt(request_id=request.request_id)
        return receipt.model_dump(by_alias=True)

    @app.get("/v1/invite/result/{request_id}", dependencies=[Depends(require_api_key)])
    async def invite_result(request_id: str, runtime: Runtime = Depends(get_runtime)):
        view = await runtime.intake.status(request_id)
        if view is None:
            return _error(404, "not found")
        return view.model_dump(mode="json", by_alias=True, exclude_none=True)

    # --- collaborator-invoked ---

    @app.post("/v1/invite/worker", dependencies=[Depends(require_api_key)])
    async def invite_worker(
        body: Optional[WorkerBody] = None, runtime: Runtime = Depends(get_runtime)
    ):
        request_id = ((body.request_id if body else None) or "").strip()
        if not request_id:
            raise ValidationError("requestId required")
        outcome = await runtime.worker.handle(request_id)
        return {"ok": True, "outcome": outcome.value}

    @app.post("/v1/telegram/webhook", dependencies=[Depends(require_telegram_secret)])
    async def telegram_webhook(request: Request, runtime: Runtime = Depends(get_runtime)):
        try:
            update = orjson.loads(await request.body())
        except orjson.JSONDecodeError:
            update = None
        result = await runtime.join_handler.handle_update(update)
        return {"ok": True, "result": result.value}

    return app
