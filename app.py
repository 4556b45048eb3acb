import os
import sys
import time
import secrets
import logging

import click
from flask import Flask, g, jsonify, request
from flask_login import LoginManager
from flask_migrate import Migrate
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from models import db, User, utcnow
from config import Config
from extensions import limiter
from routes.errors import AppError
from routes.utils import cache, iso_format

logger = logging.getLogger(__name__)


def _bearer_token():
    header = request.headers.get('Authorization', '')
    scheme, _, token = header.partition(' ')
    if scheme.lower() != 'bearer' or not token.strip():
        return None
    return token.strip()


def create_app(config_class=Config):
    # Optional: keep working dir consistent when frozen
    if getattr(sys, 'frozen', False):
        try:
            os.chdir(str(Config.BASE_DIR))
        except Exception:
            logger.exception("Failed to chdir to BASE_DIR in frozen mode")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_class)

    # Cache and rate limiter
    app.config.setdefault('CACHE_TYPE', 'SimpleCache')
    cache.init_app(app)
    limiter.init_app(app)

    # DB and migrations (one engine and pool per process)
    db.init_app(app)
    Migrate(app, db)

    # Register blueprints
    from routes.sync import sync_bp
    from routes.contacts import contacts_bp
    from routes.sales import sales_bp
    from routes.purchases import purchases_bp
    from routes.returns import returns_bp
    from routes.inventory import inventory_bp
    from routes.audit import audit_bp
    from routes.reports import reports_bp
    from routes.manufacturing import manufacturing_bp
    for bp in (sync_bp, contacts_bp, sales_bp, purchases_bp, returns_bp, inventory_bp, audit_bp, reports_bp,
               manufacturing_bp):
        app.register_blueprint(bp)

    # --- Login Manager ---
    login_manager = LoginManager()
    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(user_id):
        try:
            return db.session.get(User, str(user_id))
        except SQLAlchemyError:
            logger.exception("Failed to load user id=%r", user_id)
            return None

    @login_manager.request_loader
    def load_user_from_request(req):
        token = _bearer_token()
        if not token:
            return None
        return User.query.filter_by(api_token=token).first()

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({'error': 'Authentication required'}), 401

    # --- Errors ---
    @app.errorhandler(AppError)
    def handle_app_error(e):
        if e.status_code >= 500:
            logger.error("%s on %s %s: %s", type(e).__name__, request.method, request.path, e.message)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(ValueError)
    def handle_value_error(e):
        # model validators (@validates) raise ValueError for bad field values
        return jsonify({'error': str(e)}), 400

    @app.errorhandler(Exception)
    def handle_unexpected_error(e):
        if isinstance(e, HTTPException):
            return jsonify({'error': e.description}), e.code
        db.session.rollback()
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({'error': 'Internal server error'}), 500

    # --- Request timing ---
    @app.before_request
    def start_request_timer():
        g.request_started = time.monotonic()

    @app.after_request
    def enforce_request_timeout(response):
        started = g.get('request_started')
        if started is None:
            return response
        elapsed = time.monotonic() - started
        if elapsed > app.config.get('SLOW_REQUEST_SECONDS', 10):
            logger.warning("Slow request %s %s took %.1fs", request.method, request.path, elapsed)
        if elapsed > app.config.get('REQUEST_TIMEOUT_SECONDS', 30):
            # work already committed stays committed; the client is told to re-sync
            response = jsonify({'error': 'Request timeout'})
            response.status_code = 408
        return response

    # --- Health ---
    @app.route('/api/health', methods=['GET'])
    @cache.cached(timeout=app.config.get('HEALTH_CACHE_SECONDS', 5),
                  response_filter=lambda rv: getattr(rv, 'status_code', None) == 200)
    def health():
        try:
            db.session.execute(text('SELECT 1'))
            database = 'ok'
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Health check: database ping failed")
            database = 'unavailable'
        response = jsonify({
            'status': 'ok' if database == 'ok' else 'degraded',
            'database': database,
            'timestamp': iso_format(utcnow()),
        })
        response.status_code = 200 if database == 'ok' else 503
        return response

    # --- CLI ---
    @app.cli.command('create-owner')
    @click.argument('username')
    @click.option('--rotate', is_flag=True, help='Issue a new API token for an existing account.')
    def create_owner(username, rotate):
        """Create an account (or show its API token)."""
        user = User.query.filter_by(username=username).first()
        try:
            if user is None:
                user = User(username=username, api_token=secrets.token_urlsafe(32))
                db.session.add(user)
                db.session.commit()
                click.echo(f"Created account {username} ({user.id})")
            elif rotate:
                user.api_token = secrets.token_urlsafe(32)
                db.session.commit()
                click.echo(f"Rotated API token for {username}")
        except SQLAlchemyError as e:
            db.session.rollback()
            raise click.ClickException(f"Could not save account: {e}")
        click.echo(f"API token: {user.api_token}")

    return app
