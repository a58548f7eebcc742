"""
Flask application factory.

Creates and configures the Flask application with all necessary
extensions and error handlers.
"""

import logging
from flask import Flask, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from automation_engine.config import configure_logging, get_config
from automation_engine.persistence import JobRepository, get_database

logger = logging.getLogger(__name__)


def create_app(config=None) -> Flask:
    """
    Application factory for creating Flask app.

    Args:
        config: Optional configuration object

    Returns:
        Configured Flask application
    """
    app = Flask(__name__)

    # Enable CORS for all routes
    CORS(app)

    # Load configuration
    app_config = config or get_config()
    app.config["SECRET_KEY"] = app_config.SECRET_KEY
    app.config["DEBUG"] = app_config.FLASK_DEBUG
    configure_logging(app_config)

    # Store config for access in routes
    app.config["APP_CONFIG"] = app_config

    # Initialize database
    db = get_database()
    app.config["DATABASE"] = db

    # Register error handlers
    register_error_handlers(app)

    # Register routes
    from .routes import register_routes
    register_routes(app)

    # Health check endpoint
    @app.route("/health")
    def health_check():
        """
        Health check endpoint.

        The database must answer for the API to be healthy. Jobs left pending
        past STALE_CLAIM_TIMEOUT mean no worker is polling; that degrades the
        report without failing it.
        """
        db = app.config["DATABASE"]
        db_healthy = db.health_check()

        overdue = None
        if db_healthy:
            overdue = JobRepository(db, app_config).count_overdue(app_config.STALE_CLAIM_TIMEOUT)

        if not db_healthy:
            status, workers = "unhealthy", "unknown"
        elif overdue:
            status, workers = "degraded", "stalled"
        else:
            status, workers = "healthy", "healthy"

        return jsonify({
            "status": status,
            "database": "healthy" if db_healthy else "unhealthy",
            "workers": workers,
            "overdue_jobs": overdue,
        }), 200 if db_healthy else 503

    logger.info("Flask application created")
    return app


def register_error_handlers(app: Flask) -> None:
    """Register error handlers for the application."""

    @app.errorhandler(HTTPException)
    def handle_http_exception(e: HTTPException):
        """Handle HTTP exceptions."""
        response = {
            "error": {
                "code": e.code,
                "name": e.name,
                "message": e.description,
            }
        }
        return jsonify(response), e.code

    @app.errorhandler(ValueError)
    def handle_value_error(e: ValueError):
        """Handle validation errors."""
        return jsonify({
            "error": {
                "code": 400,
                "name": "Bad Request",
                "message": str(e),
            }
        }), 400

    @app.errorhandler(Exception)
    def handle_generic_exception(e: Exception):
        """Handle unexpected errors."""
        logger.exception(f"Unhandled exception: {e}")
        return jsonify({
            "error": {
                "code": 500,
                "name": "Internal Server Error",
                "message": "An unexpected error occurred",
            }
        }), 500
