# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
import uvicorn

from newsletter_service.api import create_app, service_lifespan
from newsletter_service.logger import configure_logging
from newsletter_service.service import NewsletterService
from newsletter_service.settings import load_settings


def build_app(settings: dict[str, object]):
    """Create the service and the FastAPI app serving it."""
    # Create service instance but don't start it yet - let uvicorn handle the event loop
    service = NewsletterService.from_settings(settings)
    lifespan = service_lifespan(service, run_worker=bool(settings.get("run_worker")))
    return create_app(service, api_token=settings.get("api_token"), lifespan=lifespan)


if __name__ == "__main__":
    settings = load_settings()
    configure_logging(str(settings["log_level"]))
    app = build_app(settings)
    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))
