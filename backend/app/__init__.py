# backend/app/__init__.py
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

    # Register blueprints
    from .routes.system import system_bp
    from .routes.products import products_bp
    from .routes.sales import sales_bp
    from .routes.payments import payments_bp
    from .routes.mpesa import mpesa_bp
    from .routes.stock import stock_bp
    from .routes.purchasing import purchasing_bp
    from .routes.returns import returns_bp
    from .routes.loyalty import loyalty_bp
    from .routes.settings import settings_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(products_bp)
    app.register_blueprint(sales_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(mpesa_bp)
    app.register_blueprint(stock_bp)
    app.register_blueprint(purchasing_bp)
    app.register_blueprint(returns_bp)
    app.register_blueprint(loyalty_bp)
    app.register_blueprint(settings_bp)

    # Wire signal receivers
    from .signals import mpesa_transaction_settled, purchase_order_sent, stock_below_reorder_level
    from .services import notification_service, settlement_service

    mpesa_transaction_settled.connect(settlement_service.apply_mobile_settlement, weak=False)
    stock_below_reorder_level.connect(notification_service.on_stock_below_reorder_level, weak=False)
    purchase_order_sent.connect(notification_service.on_purchase_order_sent, weak=False)

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allowed_origins = {
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:4173",
            "http://127.0.0.1:4173",
        }
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Content-Type, X-Actor-Id, X-Actor-Role"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
