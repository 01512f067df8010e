import os
import logging
import click
from flask import Flask
from dotenv import load_dotenv
from auth.identity import FirebaseIdentityProvider, IdentityProvider
from billing import billing_bp, billing_webhooks_bp
from billing.services.events import WebhookReconciler
from billing.services.stripe_client import STRIPE_API_VERSION, StripeGateway
from billing.services.subscriptions import SubscriptionService
from extensions import db, migrate, limiter

load_dotenv()

def create_app(test_config=None, *, payments: StripeGateway = None, identity: IdentityProvider = None):
    app = Flask(__name__, instance_relative_config=True)

    app.config.from_mapping(
        SECRET_KEY=os.getenv('SECRET_KEY', 'dev'),
        SQLALCHEMY_DATABASE_URI=os.getenv(
            'DATABASE_URL', f"sqlite:///{os.path.join(app.instance_path, 'billing.db')}"
        ),
        SQLALCHEMY_TRACK_MODIFICATIONS=False,

        STRIPE_SECRET_KEY=os.getenv('STRIPE_SECRET_KEY'),
        STRIPE_WEBHOOK_SECRET=os.getenv('STRIPE_WEBHOOK_SECRET'),
        STRIPE_API_VERSION=os.getenv('STRIPE_API_VERSION', STRIPE_API_VERSION),
        STRIPE_TIMEOUT_SECONDS=float(os.getenv('STRIPE_TIMEOUT_SECONDS', 10)),
        STRIPE_MAX_NETWORK_RETRIES=int(os.getenv('STRIPE_MAX_NETWORK_RETRIES', 2)),
        STRIPE_WEBHOOK_TOLERANCE_SECONDS=int(os.getenv('STRIPE_WEBHOOK_TOLERANCE_SECONDS', 300)),
        STRIPE_PRICE_PREMIUM_MONTHLY=os.getenv('STRIPE_PRICE_PREMIUM_MONTHLY'),
        STRIPE_PRICE_PREMIUM_YEARLY=os.getenv('STRIPE_PRICE_PREMIUM_YEARLY'),

        FIREBASE_PROJECT_ID=os.getenv('FIREBASE_PROJECT_ID'),
        IDENTITY_TIMEOUT_SECONDS=float(os.getenv('IDENTITY_TIMEOUT_SECONDS', 10)),

        RATELIMIT_HEADERS_ENABLED=True,
        RATELIMIT_ENABLED=os.getenv('RATELIMIT_ENABLED', '1') == '1',

        LOG_LEVEL=os.getenv('LOG_LEVEL', 'INFO'),
        PORT=int(os.getenv('PORT', 3000)),
    )
    if test_config:
        app.config.update(test_config)

    logging.basicConfig(
        level=app.config['LOG_LEVEL'],
        format='%(asctime)s [%(name)s] %(levelname)s: %(message)s',
    )
    app.logger.setLevel(app.config['LOG_LEVEL'])

    os.makedirs(app.instance_path, exist_ok=True)

    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)

    # tests pass doubles for both
    payments = payments or StripeGateway.from_config(app.config)
    identity = identity or FirebaseIdentityProvider(
        app.config['FIREBASE_PROJECT_ID'],
        http_timeout=app.config['IDENTITY_TIMEOUT_SECONDS'],
    )
    app.extensions['identity_provider'] = identity
    app.extensions['billing'] = {
        'payments': payments,
        'subscriptions': SubscriptionService(payments),
        'reconciler': WebhookReconciler(payments),
    }

    app.register_blueprint(billing_bp)
    app.register_blueprint(billing_webhooks_bp)

    @app.cli.command('create-tables')
    def create_tables():
        """Create billing tables that don't exist yet."""
        db.create_all()
        click.echo('billing tables ready')

    @app.after_request
    def set_security_headers(resp):
        resp.headers['X-Frame-Options'] = 'DENY'
        resp.headers['X-Content-Type-Options'] = 'nosniff'
        resp.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'
        return resp

    return app


if __name__ == '__main__':
    app = create_app()
    app.run(host='0.0.0.0', port=app.config['PORT'], debug=os.getenv('FLASK_DEBUG') == '1')
