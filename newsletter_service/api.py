# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""
FastAPI application factory and HTTP schemas for the newsletter service.

The module exposes a `create_app` function that builds the REST API used by
visitors (subscription and confirmation) and by administrators (publishing).
Administrative endpoints are protected by a configurable API token carried in
the ``X-API-Token`` header and identify the acting user through
``X-User-Id``; the user id scopes idempotency keys.
"""

from contextlib import asynccontextmanager
from typing import AsyncContextManager, Callable, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel

from .email_client import EmailDeliveryError
from .idempotency import IncompleteIdempotencyRecord, InvalidIdempotencyKey, SavedResponse
from .logger import get_logger
from .service import NewsletterService

app = FastAPI(title="Newsletter Service")
service: NewsletterService | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
USER_ID_HEADER_NAME = "X-User-Id"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)
app.state.api_token = None
logger = get_logger("NewsletterAPI")


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    If a token has been configured through :func:`create_app` and a request
    provides either a missing or different value, a ``401`` error is raised.
    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


class BasicOkResponse(BaseModel):
    ok: bool
    error: Optional[str] = None


class SubscriptionPayload(BaseModel):
    """Visitor sign-up form."""
    email: str
    name: str


class PublishNewsletterPayload(BaseModel):
    """Newsletter issue submitted by an administrator.

    ``idempotency_key`` is generated by the client once per form render and
    resent unchanged on retries.
    """
    title: str
    text_content: str
    html_content: str
    idempotency_key: str


def _get_service() -> NewsletterService:
    if not service:
        raise HTTPException(500, "Service not initialized")
    return service


def saved_response_to_http(saved: SavedResponse) -> Response:
    """Turn a stored response back into an HTTP response, headers untouched."""
    response = Response(content=saved.body, status_code=saved.status_code)
    response.raw_headers = [
        (name.lower().encode("latin-1"), bytes(value)) for name, value in saved.headers
    ]
    return response


def service_lifespan(svc: NewsletterService, run_worker: bool = True) -> Callable[[FastAPI], AsyncContextManager]:
    """Build a lifespan that initialises ``svc`` and runs its loops while serving."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await svc.init()
        if run_worker:
            await svc.start()
        yield
        await svc.close()

    return lifespan


def create_app(
    svc: NewsletterService,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`newsletter_service.service.NewsletterService`
        that implements the business logic for each route.
    api_token:
        Optional secret protecting the administrative endpoints. When
        provided, the ``X-API-Token`` header must match this value.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn or any ASGI
        server.
    """
    global service
    service = svc

    # Use custom lifespan if provided, otherwise use the global app
    if lifespan is not None:
        api = FastAPI(title="Newsletter Service", lifespan=lifespan)
    else:
        api = app

    api.state.api_token = api_token

    @api.get("/health_check")
    async def health_check():
        return Response(status_code=status.HTTP_200_OK)

    @api.post("/subscriptions", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def subscribe(payload: SubscriptionPayload):
        """Register a visitor and send the confirmation email."""
        svc = _get_service()
        try:
            await svc.subscribe(payload.email, payload.name)
        except ValueError as exc:
            raise HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, str(exc)) from exc
        except EmailDeliveryError as exc:
            logger.error("Failed to send confirmation email: %s", exc)
            raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to send confirmation email") from exc
        return BasicOkResponse(ok=True)

    @api.get("/subscriptions/confirm", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def confirm(subscription_token: str = Query(...)):
        """Confirm a pending subscription from the emailed link."""
        svc = _get_service()
        if not await svc.confirm_subscription(subscription_token):
            raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Unknown subscription token")
        return BasicOkResponse(ok=True)

    @api.post("/admin/newsletters", dependencies=[auth_dependency])
    async def publish_newsletter(
        payload: PublishNewsletterPayload,
        user_id: str | None = Header(default=None, alias=USER_ID_HEADER_NAME),
    ):
        """Publish an issue; retries with the same key replay the first response."""
        svc = _get_service()
        if not user_id:
            raise HTTPException(status.HTTP_401_UNAUTHORIZED, f"Missing {USER_ID_HEADER_NAME} header")
        try:
            saved = await svc.publish_newsletter(
                user_id=user_id,
                idempotency_key=payload.idempotency_key,
                title=payload.title,
                text_content=payload.text_content,
                html_content=payload.html_content,
            )
        except InvalidIdempotencyKey as exc:
            raise HTTPException(status.HTTP_400_BAD_REQUEST, str(exc)) from exc
        except IncompleteIdempotencyRecord as exc:
            logger.error("Idempotency record without saved response: %s", exc)
            raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, "Request could not be completed") from exc
        return saved_response_to_http(saved)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the service."""
        svc = _get_service()
        return Response(content=svc.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    return api
