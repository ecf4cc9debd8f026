import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask
from flask_sqlalchemy import SQLAlchemy


# Initialize extensions
db = SQLAlchemy()


def configure_logging(app):
    """Configure application logging"""

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    ))
    handlers = [console_handler]

    # File handler, only when a log directory is configured
    log_dir = app.config.get('LOG_DIR')
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'dumpvault.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        ))
        handlers.append(file_handler)

    # Configure package logger
    package_logger = logging.getLogger('dumpvault')
    package_logger.setLevel(log_level)
    # Replace handlers of a previous create_app() call
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    for handler in handlers:
        package_logger.addHandler(handler)

    app.logger.setLevel(log_level)
    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_app(config_name=None, overrides=None):
    """
    Flask application factory.

    The application is a container for configuration, logging and the
    catalog database; the backup worker runs inside its app context.

    Args:
        config_name: Key of dumpvault.config.config ('development', 'production', 'testing')
        overrides: Optional dict applied on top of the config class
    """
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from dumpvault.config import config
    app.config.from_object(config[config_name])
    if overrides:
        app.config.update(overrides)

    # Configure logging
    configure_logging(app)

    # Ensure required directories exist
    os.makedirs(app.config['TEMP_DIR'], exist_ok=True)
    os.makedirs(app.config['BACKUP_STORAGE_PATH'], exist_ok=True)
    database_uri = app.config['SQLALCHEMY_DATABASE_URI']
    if database_uri.startswith('sqlite:///') and ':memory:' not in database_uri:
        database_dir = os.path.dirname(database_uri.replace('sqlite:///', ''))
        if database_dir:
            os.makedirs(database_dir, exist_ok=True)

    # Initialize extensions
    db.init_app(app)

    # Initialize database schema and seed the default retention policy
    from dumpvault import models  # noqa: F401
    from dumpvault.migrations import init_database_schema
    init_database_schema(app)

    # Secret resolver is keyed from the environment, never from the catalog
    from dumpvault.utils.crypto import secret_resolver
    encryption_key = app.config.get('ENCRYPTION_KEY')
    if encryption_key:
        secret_resolver.initialize(encryption_key)
        app.logger.info("Secret resolver initialized")
    else:
        app.logger.warning("ENCRYPTION_KEY is not set - credentials cannot be decrypted")

    return app
