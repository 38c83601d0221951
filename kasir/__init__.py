# kasir/__init__.py
from flask import Flask, jsonify

from .config import Config
from .errors import LedgerError
from .extensions import db, migrate


def create_app(test_config: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.sales import sales_bp
    from .routes.stock import stock_bp
    from .routes.cash import cash_bp
    from .routes.returns import returns_bp
    from .routes.drawers import drawers_bp
    from .routes.audit import audit_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(sales_bp)
    app.register_blueprint(stock_bp)
    app.register_blueprint(cash_bp)
    app.register_blueprint(returns_bp)
    app.register_blueprint(drawers_bp)
    app.register_blueprint(audit_bp)

    @app.errorhandler(LedgerError)
    def handle_ledger_error(err: LedgerError):
        return jsonify(err.to_dict()), err.http_status

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
