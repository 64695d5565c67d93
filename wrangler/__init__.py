"""
RSS Wrangler Flask Application Factory
"""
import logging
import os
from flask import Flask
from dotenv import load_dotenv

# Silence verbose SQLAlchemy logging
logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)


def create_app(config=None):
    """
    Flask application factory

    Args:
        config: Optional configuration dictionary

    Returns:
        Flask application instance
    """
    load_dotenv()

    app = Flask(__name__)

    app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'dev-secret-key')
    app.json.sort_keys = False

    if config:
        app.config.from_mapping(config)

    from wrangler.routes import admin
    app.register_blueprint(admin)

    return app
