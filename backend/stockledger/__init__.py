# backend/stockledger/__init__.py
from __future__ import annotations

from typing import Mapping

from flask import Flask

from .config import Config
from .extensions import db, migrate


def create_app(test_config: Mapping | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if test_config:
        # Applied before extensions bind so the engine sees the override
        app.config.update(test_config)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.stock import stock_bp
    from .routes.sales import sales_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(stock_bp)
    app.register_blueprint(sales_bp)

    # Low-stock events go to the app log unless other listeners are added
    from .services.low_stock_service import log_low_stock, register_low_stock_listener
    register_low_stock_listener(app, log_low_stock)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
