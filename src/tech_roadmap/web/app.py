"""Flask application factory for the Tech Roadmap datasource API."""

import logging
import sys

from flask import Flask

from tech_roadmap.config import Config, default_database_url, get_config_dir, load_config
from tech_roadmap.datasource import DatasourceService
from tech_roadmap.store import SqlRecordStore


def create_app(config: Config | None = None, service: DatasourceService | None = None) -> Flask:
    """Create and configure the Flask application.

    Args:
        config: Settings to use. Loaded from the config file when omitted.
        service: Pre-built datasource service, e.g. one backed by an
                 in-memory store in tests.
    """
    app = Flask(__name__)

    _configure_logging(app)

    if service is None:
        config = config or load_config()
        database_url = config.database_url or default_database_url()
        if database_url == default_database_url():
            get_config_dir().mkdir(parents=True, exist_ok=True)
        service = DatasourceService(SqlRecordStore(database_url), config=config)
    app.extensions["datasource_service"] = service

    from tech_roadmap.web.routes import bp
    app.register_blueprint(bp)

    return app


def _configure_logging(app: Flask) -> None:
    """Configure application logging."""
    log_level = logging.DEBUG if app.debug else logging.INFO

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )
    logging.getLogger("tech_roadmap").setLevel(log_level)

    # Reduce noise from third-party libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
