"""
Points Ledger
Flask application factory
"""
import os
import logging
from flask import Flask

from .extensions import db, migrate
from .config import get_config, validate_config
from .utils.logging_config import setup_logging

logger = logging.getLogger(__name__)


def create_app(config_name: str = None, config_overrides: dict = None) -> Flask:
    """
    Application factory for creating Flask app instances.

    Args:
        config_name: Configuration environment (development, production, testing)
        config_overrides: Extra config values applied after the config class

    Returns:
        Configured Flask application
    """
    if config_name is None:
        config_name = os.getenv('FLASK_ENV', 'development')

    # Setup logging before anything else
    setup_logging()

    app = Flask(__name__)
    app.config.from_object(get_config(config_name))
    if config_overrides:
        app.config.update(config_overrides)

    validate_config(app.config)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Ledger engine shared by requests, CLI and scheduler
    from .services import init_ledger
    init_ledger(app)

    # Register blueprints
    from .api import points_bp
    app.register_blueprint(points_bp, url_prefix='/api/points')

    # Register CLI commands
    from .commands import init_app as init_commands
    init_commands(app)

    # Background expiration job (production or ENABLE_SCHEDULER=true)
    from .utils.scheduler import init_scheduler
    init_scheduler(app)

    register_error_handlers(app)

    @app.route('/health')
    def health_check():
        return {'status': 'healthy', 'service': 'pointsledger'}

    logger.info(f'Points ledger app created ({config_name})')
    return app


def register_error_handlers(app: Flask) -> None:
    """Register global error handlers."""
    from .utils.errors import error_response, internal_error, ErrorCode, ledger_error_response
    from .utils.exceptions import LedgerError

    @app.errorhandler(LedgerError)
    def handle_ledger_error(error):
        return ledger_error_response(error)

    @app.errorhandler(404)
    def not_found(error):
        return error_response('Resource not found', ErrorCode.NOT_FOUND, 404, log_error=False)

    @app.errorhandler(500)
    def server_error(error):
        db.session.rollback()
        return internal_error()
