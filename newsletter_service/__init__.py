# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Newsletter backend with idempotent publishing and queued delivery.

This package provides:

- Visitor subscription with double opt-in confirmation
- Idempotent newsletter publishing keyed by client-supplied keys
- An outbox-style delivery queue drained by a background worker with
  bounded retries
- Periodic pruning of expired idempotency records
- SQLite and PostgreSQL storage, Prometheus metrics and a FastAPI REST API

Example:
    Serving the API with the background loops::

        from newsletter_service.api import create_app, service_lifespan
        from newsletter_service.service import NewsletterService
        from newsletter_service.settings import load_settings

        svc = NewsletterService.from_settings(load_settings())
        app = create_app(svc, api_token="secret", lifespan=service_lifespan(svc))
"""

__version__ = "0.1.0"
