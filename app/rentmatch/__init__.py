import os
import boto3
import click
from cachelib.file import FileSystemCache
from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_login import LoginManager
from flask_dance.contrib.google import make_google_blueprint
import logging
from flask_session import Session


def get_secret(name):

    env_var = name.split('/')[-1]
    if env_var in os.environ:
        return os.environ[env_var]

    client = boto3.client('secretsmanager')
    value = client.get_secret_value(SecretId=name)['SecretString']
    return value

db = SQLAlchemy()
migrate = Migrate()
login_manager = LoginManager()


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({'error': 'Authentication required'}), 401


def create_app():
    app = Flask(__name__)

    app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY') or get_secret('rentmatch/FLASK_SECRET_KEY')
    app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get('SQLALCHEMY_DATABASE_URI') or (
        f"mysql+pymysql://{get_secret('rentmatch/MYSQL_USER')}:{get_secret('rentmatch/MYSQL_PASSWORD')}@"
        f"localhost:3306/rentmatch"
    )
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['SESSION_TYPE'] = 'filesystem'
    app.config['SESSION_PERMANENT'] = False
    app.config['SESSION_CACHELIB'] = FileSystemCache(os.environ.get('SESSION_DIR', '/tmp/flask_session'), threshold=500)

    app.config['PAYMENT_WEBHOOK_SECRET'] = get_secret('rentmatch/PAYMENT_WEBHOOK_SECRET')
    app.config['PAYMENT_CHECKOUT_URL'] = os.environ.get('PAYMENT_CHECKOUT_URL', 'https://pay.rentmatch.app/checkout')
    app.config['PAYMENT_PENDING_TIMEOUT_MINUTES'] = int(os.environ.get('PAYMENT_PENDING_TIMEOUT_MINUTES', 30))
    app.config['ASSETS_BUCKET'] = os.environ.get('ASSETS_BUCKET') or get_secret('rentmatch/ASSETS_BUCKET')
    app.config['OPENAI_MODEL'] = os.environ.get('OPENAI_MODEL', 'gpt-4o-mini')
    app.config['AWS_REGION'] = os.environ.get('AWS_REGION', 'us-east-1')
    app.config['MAIL_FROM'] = os.environ.get('MAIL_FROM', 'RentMatch <no-reply@rentmatch.app>')
    app.config['EMAIL_VERIFY_MAX_AGE'] = int(os.environ.get('EMAIL_VERIFY_MAX_AGE', 7 * 24 * 3600))
    app.config['PASSWORD_RESET_MAX_AGE'] = int(os.environ.get('PASSWORD_RESET_MAX_AGE', 3600))

    log_level = os.environ.get('LOG_LEVEL', 'INFO').upper()
    logging.basicConfig(level=log_level)
    logging.getLogger().setLevel(log_level)
    logging.getLogger("flask_dance").setLevel(log_level)
    logging.debug("SQLALCHEMY_DATABASE_URI dialect: %s", app.config['SQLALCHEMY_DATABASE_URI'].split(':')[0])

    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    Session(app)

    from .errors import register_error_handlers
    register_error_handlers(app, db)

    from .auth import auth_bp
    from .views import main_bp
    app.register_blueprint(auth_bp)
    app.register_blueprint(main_bp)

    google_client_id = get_secret('rentmatch/GOOGLE_OAUTH_CLIENT_ID')
    google_client_secret = get_secret('rentmatch/GOOGLE_OAUTH_CLIENT_SECRET')

    google_bp = make_google_blueprint(
        client_id=google_client_id,
        client_secret=google_client_secret,
        scope=[
            "openid",
            "https://www.googleapis.com/auth/userinfo.email",
            "https://www.googleapis.com/auth/userinfo.profile"
        ],
        redirect_to="auth.google_login"
    )

    google_bp.session.params["prompt"] = "select_account"

    app.register_blueprint(google_bp, url_prefix="/auth")

    os.environ['OPENAI_API_KEY'] = get_secret('rentmatch/OPENAI_API_KEY')

    register_commands(app)
    return app


def register_commands(app):

    @app.cli.command('expire-leads')
    def expire_leads_command():
        """Mark leads past their expiry time as expired."""
        from .leads import expire_stale_leads
        count = expire_stale_leads()
        click.echo(f"Expired {count} leads.")

    @app.cli.command('expire-payments')
    def expire_payments_command():
        """Fail pending payments that never received a provider callback."""
        from .payments import expire_pending_payments
        count = expire_pending_payments()
        click.echo(f"Expired {count} pending payments.")
