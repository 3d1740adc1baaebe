import logging
import re
import pytest
from botocore.exceptions import ClientError
from app.rentmatch import db
from app.rentmatch.auth import create_user, make_reset_token, make_verification_token
from app.rentmatch.errors import Conflict, ValidationError
from app.rentmatch.models import User


@pytest.fixture
def registered_user(app):
    return create_user('member@example.com', name='Member', type='agent', phone='+254733000000', password='hunter22')


def test_signup_creates_account(client):
    resp = client.post('/auth/signup', json={
        'email': 'Mary@Example.com', 'password': 'secret123', 'name': 'Mary', 'type': 'agent',
    })
    assert resp.status_code == 201
    user = resp.get_json()['user']
    assert user['email'] == 'mary@example.com'
    assert user['type'] == 'agent'
    assert user['wallet_balance'] == 0
    assert user['referral_code'].startswith('YOOM')
    assert client.get('/auth/me').get_json()['user']['email'] == 'mary@example.com'


def test_signup_rejects_short_password(client):
    resp = client.post('/auth/signup', json={'email': 'a@example.com', 'password': '123'})
    assert resp.status_code == 400
    assert User.query.count() == 0


def test_signup_cannot_create_admin(client):
    resp = client.post('/auth/signup', json={'email': 'a@example.com', 'password': 'secret123', 'type': 'admin'})
    assert resp.status_code == 400


def test_create_user_duplicates(registered_user):
    with pytest.raises(Conflict):
        create_user('MEMBER@example.com', password='whatever')
    with pytest.raises(Conflict):
        create_user('other@example.com', phone='+254733000000')
    with pytest.raises(ValidationError):
        create_user('not-an-email')


def test_login_and_logout(client, registered_user):
    resp = client.post('/auth/login', json={'email': 'member@example.com', 'password': 'hunter22'})
    assert resp.status_code == 200
    assert resp.get_json()['user']['id'] == registered_user.id
    assert client.get('/auth/me').status_code == 200

    assert client.post('/auth/logout').status_code == 200
    assert client.get('/auth/me').status_code == 401


def test_login_with_wrong_password(client, registered_user):
    resp = client.post('/auth/login', json={'email': 'member@example.com', 'password': 'nope'})
    assert resp.status_code == 401
    assert resp.get_json()['error'].startswith('Invalid email or password')


def test_login_required_returns_json_401(client):
    resp = client.get('/api/wallet')
    assert resp.status_code == 401
    assert resp.get_json() == {'error': 'Authentication required'}


def mailed_bodies(outbox):
    return [c.kwargs['Message']['Body']['Text']['Data'] for c in outbox.send_email.call_args_list]


def mailed_token(outbox, path):
    match = re.search(rf'{path}/(\S+)', mailed_bodies(outbox)[-1])
    return match.group(1)


def test_password_reset_flow(client, registered_user, outbox, caplog):
    outbox.reset_mock()
    with caplog.at_level(logging.INFO):
        resp = client.post('/auth/reset-password', json={'email': 'member@example.com'})
    assert resp.status_code == 200
    outbox.send_email.assert_called_once()
    assert outbox.send_email.call_args.kwargs['Destination'] == {'ToAddresses': ['member@example.com']}
    token = mailed_token(outbox, '/auth/reset-password')
    assert token not in caplog.text

    unknown = client.post('/auth/reset-password', json={'email': 'ghost@example.com'})
    assert unknown.get_json() == resp.get_json()
    assert outbox.send_email.call_count == 1

    assert client.post(f'/auth/reset-password/{token}', json={'password': 'newpass99'}).status_code == 200
    user = db.session.get(User, registered_user.id)
    assert user.check_password('newpass99')
    assert user.email_verified is True

    assert client.post('/auth/reset-password/garbage', json={'password': 'newpass99'}).status_code == 400


def test_reset_link_works_only_once(client, registered_user):
    token = make_reset_token(registered_user)
    assert client.post(f'/auth/reset-password/{token}', json={'password': 'newpass99'}).status_code == 200
    reused = client.post(f'/auth/reset-password/{token}', json={'password': 'stolen123'})
    assert reused.status_code == 400
    assert reused.get_json()['error'] == 'Invalid reset link'
    assert db.session.get(User, registered_user.id).check_password('newpass99')


def test_signup_mails_verification_link(client, outbox):
    outbox.reset_mock()
    resp = client.post('/auth/signup', json={'email': 'new@example.com', 'password': 'secret123'})
    assert resp.get_json()['verification_email_sent'] is True
    assert resp.get_json()['user']['email_verified'] is False

    token = mailed_token(outbox, '/auth/verify-email')
    verified = client.get(f'/auth/verify-email/{token}')
    assert verified.status_code == 200
    assert verified.get_json()['user']['email_verified'] is True
    assert client.get('/auth/verify-email/garbage').status_code == 400


def test_signup_survives_mail_outage(client, outbox):
    outbox.send_email.side_effect = ClientError({'Error': {'Code': 'Throttling', 'Message': 'slow down'}}, 'SendEmail')
    resp = client.post('/auth/signup', json={'email': 'new@example.com', 'password': 'secret123'})
    assert resp.status_code == 201
    assert resp.get_json()['verification_email_sent'] is False


def test_verification_link_tied_to_email(client, registered_user):
    token = make_verification_token(registered_user)
    registered_user.email = 'changed@example.com'
    db.session.commit()
    assert client.post(f'/auth/verify-email/{token}').status_code == 400


def test_resend_verification(client, tenant, make_user, login_as, outbox):
    outbox.reset_mock()
    login_as(tenant)
    assert client.post('/auth/verify-email').get_json()['message'] == 'Your email is already verified.'
    outbox.send_email.assert_not_called()

    login_as(make_user('unverified@example.com'))
    assert client.post('/auth/verify-email').status_code == 200
    outbox.send_email.assert_called_once()


def test_rbac_standard_user(client, tenant, login_as):
    login_as(tenant)
    resp = client.get('/api/admin/agents')
    assert resp.status_code == 403
    assert resp.get_json()['error'] == 'Admin access required.'
    assert client.get('/api/leads').status_code == 403


def test_admin_access(client, admin_user, agent, login_as):
    login_as(admin_user)
    resp = client.get('/api/admin/agents')
    assert resp.status_code == 200
    assert [a['email'] for a in resp.get_json()['agents']] == ['agent@example.com']


def test_admin_verifies_agent_and_adjusts_credits(client, admin_user, agent, login_as):
    login_as(admin_user)
    resp = client.post(f'/api/admin/agents/{agent.id}/verify', json={'status': 'verified'})
    assert resp.get_json()['agent']['verification_status'] == 'verified'

    resp = client.post(f'/api/admin/users/{agent.id}/credits', json={'amount': -200, 'reason': 'Refund reversal'})
    assert resp.get_json()['balance'] == 800
    resp = client.post(f'/api/admin/users/{agent.id}/credits', json={'amount': 'lots'})
    assert resp.status_code == 400

    actions = [l['action'] for l in client.get('/api/admin/auditlog').get_json()['logs']]
    assert sorted(actions) == ['adjust_credits', 'verify_agent']


def test_profile_update(client, agent, login_as):
    agent.verification_status = 'verified'
    db.session.commit()
    login_as(agent)
    resp = client.patch('/api/profile', json={'agency_name': 'Nairobi Homes', 'license_number': 'EARB-1234'})
    user = resp.get_json()['user']
    assert user['agency_name'] == 'Nairobi Homes'
    assert user['verification_status'] == 'pending'
    assert client.patch('/api/profile', json={'name': ' '}).status_code == 400
