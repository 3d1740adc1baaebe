import pytest
import os
from unittest import mock
from flask import g
from app.rentmatch import create_app, db

WEBHOOK_SECRET = 'test-webhook-secret'


@pytest.fixture(scope='session')
def app():
    os.environ['FLASK_ENV'] = 'testing'
    os.environ['SECRET_KEY'] = 'test'
    os.environ['SQLALCHEMY_DATABASE_URI'] = 'sqlite:///:memory:'
    # Patch get_secret to return dummy values during tests
    with mock.patch('app.rentmatch.get_secret') as get_secret_mock:
        get_secret_mock.side_effect = lambda name: {
            'rentmatch/FLASK_SECRET_KEY': 'test',
            'rentmatch/MYSQL_USER': 'user',
            'rentmatch/MYSQL_PASSWORD': 'pass',
            'rentmatch/GOOGLE_OAUTH_CLIENT_ID': 'dummy',
            'rentmatch/GOOGLE_OAUTH_CLIENT_SECRET': 'dummy',
            'rentmatch/OPENAI_API_KEY': 'dummy',
            'rentmatch/PAYMENT_WEBHOOK_SECRET': WEBHOOK_SECRET,
            'rentmatch/ASSETS_BUCKET': 'rentmatch-test-assets',
        }.get(name, 'dummy')
        app = create_app()
        app.config['TESTING'] = True
        with app.app_context():
            db.create_all()
            yield app
            db.session.remove()
            db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def clean_db(app):
    yield
    db.session.rollback()
    for table in reversed(db.metadata.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()
    db.session.remove()
    # The app context is shared by every test, so is flask-login's cached user.
    g.pop('_login_user', None)


@pytest.fixture
def make_user(app):
    from app.rentmatch.models import User

    def _make(email, type='tenant', balance=0, **kwargs):
        kwargs.setdefault('name', email.split('@')[0].title())
        user = User(email=email, type=type, wallet_balance=balance, **kwargs)
        db.session.add(user)
        db.session.commit()
        return user
    return _make


@pytest.fixture
def tenant(make_user):
    return make_user('tenant@example.com', type='tenant', email_verified=True)


@pytest.fixture
def agent(make_user):
    return make_user('agent@example.com', type='agent', balance=1000)


@pytest.fixture
def admin_user(make_user):
    return make_user('admin@example.com', type='admin')


@pytest.fixture
def make_lead(app):
    from app.rentmatch.models import Lead

    def _make(**kwargs):
        data = {
            'location': 'Kilimani, Nairobi',
            'property_type': '2 Bedroom',
            'budget': 40000,
            'budget_min': 20000,
            'budget_max': 40000,
            'tenant_name': 'Jane Wanjiru',
            'tenant_email': 'jane@example.com',
            'tenant_phone': '+254700000001',
            'status': 'active',
        }
        data.update(kwargs)
        lead = Lead(**data)
        db.session.add(lead)
        db.session.commit()
        return lead
    return _make


@pytest.fixture
def login_as(monkeypatch):
    from app.rentmatch.models import User

    def _login(user):
        user_id = user.id
        monkeypatch.setattr('flask_login.utils._get_user', lambda: db.session.get(User, user_id))
    return _login


@pytest.fixture(autouse=True)
def outbox(monkeypatch):
    """Stands in for SES; ``outbox.send_email.call_args_list`` holds the sent mail."""
    from app.rentmatch import mailer
    ses = mock.MagicMock()
    monkeypatch.setattr(mailer, '_ses', lambda: ses)
    return ses
