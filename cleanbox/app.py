"""
CleanBox application factory.

The Flask app is the container for configuration, the SQLite connection
lifecycle, the background job queue and the operator CLI. It serves no routes.

    FLASK_APP=cleanbox.app flask scan 1
"""
from __future__ import annotations

import atexit
import logging
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from flask import Flask

from cleanbox.config import ProductionConfig, get_config, is_production
from cleanbox.extensions import EXTENSION_KEY, build_services, close_services
from cleanbox.models import ensure_tables, init_app as init_models

logger = logging.getLogger(__name__)

# Loggers that are noisy at INFO
QUIET_LOGGERS = ("googleapiclient.discovery_cache", "httpx", "openai")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def create_app(config_object: Any = None, overrides: Optional[Dict[str, Any]] = None, **service_overrides: Any) -> Flask:
    """
    Create and configure the Flask application.

    Args:
        config_object: config class to load; defaults to the environment's (TestConfig in tests)
        overrides: individual config values applied on top of it
        service_overrides: fake clients for build_services (extraction_client, fetcher)
    """
    load_dotenv()

    app = Flask(__name__)
    app.config.from_object(config_object or get_config())
    if overrides:
        app.config.update(overrides)

    configure_logging(app.config["LOG_LEVEL"])

    if is_production() and not app.config.get("TESTING"):
        ProductionConfig.validate()

    # Initialize database connection and create tables if they don't exist
    init_models(app)
    with app.app_context():
        ensure_tables()

    services = build_services(app, **service_overrides)
    app.extensions[EXTENSION_KEY] = services
    atexit.register(close_services, services)

    from cleanbox.cli import register_commands

    register_commands(app)

    logger.info(f"CleanBox app created (database: {app.config['DATABASE_PATH']})")
    return app
