# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging utilities for the newsletter service.

The actual logging setup (level, handlers, format) is done once via
:func:`configure_logging` from the entry point (``main.py`` or the CLI) to
avoid duplicate handlers. Modules only ask for named loggers::

    from newsletter_service.logger import get_logger

    logger = get_logger("DeliveryWorker")
    logger.info("Task delivered")
"""

import logging

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "NewsletterService") -> logging.Logger:
    """Return the standard library logger bound to ``name``."""
    return logging.getLogger(name)


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger for the running process."""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        force=True,  # Force reconfiguration to avoid duplicate handlers
    )
