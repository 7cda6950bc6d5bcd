import os
import re
import secrets
import json
import logging
import warnings

import click
from flask import Flask, flash, g, has_request_context, jsonify, redirect, render_template, request, url_for
from flask_login import LoginManager
from sqlalchemy import text
from werkzeug.middleware.proxy_fix import ProxyFix

from .config import Config
from .images import fix_image_paths_in_html, resolve_image_path
from .models import db, SiteSettings, User
from .removed_urls import init_removed_url_guard
from .security import (
    apply_security_headers,
    csrf_input,
    ensure_csp_nonce,
    get_csp_nonce,
    get_csrf_token,
    is_csrf_error,
    safe_referrer_path,
    verify_csrf,
)
from .site_context import get_site_context

login_manager = LoginManager()
login_manager.login_view = 'admin.login'
login_manager.login_message_category = 'danger'
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{8,80}$")
_sentry_initialized = False


class JsonLogFormatter(logging.Formatter):
    """One JSON object per record, with request details when there is a request."""

    def format(self, record):
        payload = {
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'time': self.formatTime(record, self.datefmt),
        }
        if has_request_context():
            payload['request_id'] = getattr(g, 'request_id', '')
            payload['method'] = request.method
            payload['path'] = request.path
            payload['remote_ip'] = request.remote_addr
        if record.exc_info:
            payload['exc_info'] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(app):
    level_name = str(app.config.get('LOG_LEVEL') or 'INFO').upper()
    app.logger.setLevel(getattr(logging, level_name, logging.INFO))
    if app.config.get('LOG_JSON', True):
        formatter = JsonLogFormatter()
        for handler in app.logger.handlers:
            handler.setFormatter(formatter)


@login_manager.user_loader
def load_user(user_id):
    try:
        return db.session.get(User, int(user_id))
    except (TypeError, ValueError):
        return None


def assign_request_id():
    incoming = (request.headers.get('X-Request-ID') or '').strip()
    g.request_id = incoming if _REQUEST_ID_RE.match(incoming) else secrets.token_hex(16)


def wants_json_error():
    return request.path == '/api' or request.path.startswith('/api/')


def init_sentry(app):
    global _sentry_initialized
    dsn = (app.config.get('SENTRY_DSN') or '').strip()
    if _sentry_initialized or not dsn:
        return

    try:
        import sentry_sdk
        from sentry_sdk.integrations.flask import FlaskIntegration
        from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

        sentry_sdk.init(
            dsn=dsn,
            integrations=[FlaskIntegration(), SqlalchemyIntegration()],
            traces_sample_rate=float(app.config.get('SENTRY_TRACES_SAMPLE_RATE') or 0.0),
            environment=(app.config.get('SENTRY_ENVIRONMENT') or None),
        )
        _sentry_initialized = True
        app.logger.info('Sentry monitoring enabled.')
    except Exception:
        app.logger.exception('Failed to initialize Sentry monitoring.')


def register_template_helpers(app):
    images_root = app.config['IMAGES_FOLDER']

    @app.template_filter('resolve_image')
    def resolve_image_filter(image_path):
        return resolve_image_path(image_path, images_root)

    @app.template_filter('fix_image_paths')
    def fix_image_paths_filter(html_content):
        return fix_image_paths_in_html(html_content, images_root)

    @app.context_processor
    def inject_globals():
        return dict(
            site=get_site_context(),
            csrf_token=get_csrf_token,
            csrf_input=csrf_input,
            csp_nonce=get_csp_nonce(),
        )


def register_error_handlers(app):
    @app.errorhandler(400)
    def handle_bad_request(error):
        if not is_csrf_error(error):
            return error
        if wants_json_error():
            return jsonify({'error': error.description}), 400
        flash('Your form session expired. Please retry your action.', 'danger')
        return redirect(safe_referrer_path(url_for('main.index')))

    @app.errorhandler(404)
    def handle_not_found(error):
        if wants_json_error():
            return jsonify({'error': 'Not found'}), 404
        return render_template('errors/404.html'), 404

    @app.errorhandler(500)
    def handle_server_error(error):
        if wants_json_error():
            return jsonify({'error': 'Internal server error'}), 500
        return render_template('errors/500.html'), 500


def register_health_checks(app):
    @app.get('/healthz')
    def healthz():
        try:
            db.session.execute(text('SELECT 1'))
        except Exception:
            db.session.rollback()
            app.logger.exception('Health check DB probe failed.')
            return {'status': 'degraded'}, 503
        return {'status': 'ok'}, 200

    @app.get('/readyz')
    def readyz():
        checks = {'database': False, 'site_settings_seeded': False, 'admin_user_seeded': False}
        try:
            db.session.execute(text('SELECT 1'))
            checks['database'] = True
            checks['site_settings_seeded'] = db.session.query(SiteSettings.id).first() is not None
            checks['admin_user_seeded'] = db.session.query(User.id).first() is not None
        except Exception:
            db.session.rollback()
            app.logger.exception('Readiness check failed.')
            return {'status': 'degraded', 'checks': checks}, 503
        ready = all(checks.values())
        return {'status': 'ready' if ready else 'warming', 'checks': checks}, (200 if ready else 503)


def register_cli(app):
    @app.cli.command('seed-db')
    def seed_db_command():
        """Create tables and seed default content."""
        from .seed import seed_database

        db.create_all()
        seed_database()
        click.echo('Database seeded.')

    @app.cli.command('optimize-images')
    @click.option('--root', default=None, help='Image tree to convert (defaults to IMAGES_FOLDER).')
    @click.option('--quality', default=None, type=int, help='WebP quality (1-100).')
    @click.option('--max-width', default=None, type=int, help='Resize wider images down to this width.')
    def optimize_images_command(root, quality, max_width):
        """Convert jpg/png/gif images to WebP, skipping ones already converted."""
        from .image_optimizer import convert_tree_to_webp

        summary = convert_tree_to_webp(
            root or app.config['IMAGES_FOLDER'],
            quality=quality or app.config.get('WEBP_QUALITY', 82),
            max_width=max_width or app.config.get('WEBP_MAX_WIDTH', 1920),
            logger=app.logger,
        )
        click.echo(f'Converted: {summary.converted}, skipped: {summary.skipped}, failed: {summary.failed}')


def create_app(config_overrides=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)
    configure_logging(app)

    if not app.config.get('SECRET_KEY'):
        app.config['SECRET_KEY'] = secrets.token_urlsafe(32)
        warnings.warn(
            'SECRET_KEY is not set, using a random key. '
            'Sessions will not survive restarts. '
            'Set the SECRET_KEY environment variable for production.',
            stacklevel=2,
        )

    if app.config.get('TRUST_PROXY_HEADERS'):
        # Only trust one proxy hop (the platform edge) when explicitly enabled.
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1)

    init_sentry(app)
    os.makedirs(app.config['IMAGES_FOLDER'], exist_ok=True)

    db.init_app(app)
    login_manager.init_app(app)

    app.before_request(assign_request_id)
    # Removed pages answer 410 before routing or CSRF checks run.
    init_removed_url_guard(app)
    app.before_request(verify_csrf)
    app.before_request(ensure_csp_nonce)
    app.after_request(apply_security_headers)

    register_template_helpers(app)
    register_error_handlers(app)
    register_health_checks(app)

    from .routes.main import main_bp
    from .routes.api import api_bp
    from .routes.admin import admin_bp
    app.register_blueprint(main_bp)
    app.register_blueprint(api_bp, url_prefix='/api')
    app.register_blueprint(admin_bp, url_prefix='/admin')
    register_cli(app)

    with app.app_context():
        try:
            db.create_all()
        except Exception:
            app.logger.exception('db.create_all() failed, tables may need manual migration.')
        try:
            from .seed import seed_database
            seed_database()
        except Exception:
            app.logger.exception('seed_database() failed, seeding skipped.')

    return app
