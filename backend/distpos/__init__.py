# backend/distpos/__init__.py
from flask import Flask, request

from .config import Config
from .extensions import db, migrate


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # One session id per process; every lease this terminal takes carries it
    from .services.identity_service import new_session_id
    app.config.setdefault("TERMINAL_SESSION_ID", new_session_id())

    # Register blueprints
    from .routes.locks import locks_bp
    from .routes.orders import orders_bp
    from .routes.tabs import tabs_bp
    from .routes.allocation import allocation_bp

    app.register_blueprint(locks_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(tabs_bp)
    app.register_blueprint(allocation_bp)

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allowed_origins = {
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        }
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Content-Type, X-User-Id, X-Session-Id"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,DELETE,PATCH,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    # Expired-lease sweeper (off under TESTING unless asked for)
    if app.config.get("LOCK_SWEEPER_ENABLED") and not app.config.get("TESTING"):
        from .services.lock_service import LockSweeper
        sweeper = LockSweeper(app)
        sweeper.start()
        app.extensions["lock_sweeper"] = sweeper

    return app
