import json
import pytest
from datetime import datetime, timedelta
from app.rentmatch import db, payments
from app.rentmatch.errors import Conflict, NotFound, ValidationError
from app.rentmatch.models import CreditTransaction, Notification, PaymentTransaction
from app.rentmatch.wallet import get_wallet_balance


def post_callback(client, payload, signature=None):
    raw = json.dumps(payload).encode()
    if signature is None:
        signature = payments.sign_payload(raw)
    return client.post('/api/payments/callback', data=raw, content_type='application/json',
                       headers={'X-Payment-Signature': signature})


def test_start_purchase_is_pending_and_grants_nothing(client, agent, login_as):
    login_as(agent)
    resp = client.post('/api/payments', json={'bundle_id': 2, 'phone': '+254722000000'})
    assert resp.status_code == 201
    body = resp.get_json()
    assert body['payment']['status'] == 'pending'
    assert body['payment']['credits'] == 25
    assert body['payment']['amount'] == 1100
    assert body['payment']['currency'] == 'KES'
    assert body['checkout_url'].endswith(f"?reference={body['payment']['reference']}")
    assert get_wallet_balance(agent.id) == 1000
    assert CreditTransaction.query.count() == 0


@pytest.mark.parametrize('bundle_id', [None, 'abc', 0, 99])
def test_start_purchase_rejects_unknown_bundle(agent, bundle_id):
    with pytest.raises(ValidationError):
        payments.start_purchase(agent, bundle_id)
    assert PaymentTransaction.query.count() == 0


def test_idempotency_key_reuses_payment(client, agent, login_as):
    login_as(agent)
    headers = {'Idempotency-Key': 'checkout-123'}
    first = client.post('/api/payments', json={'bundle_id': 1}, headers=headers).get_json()
    second = client.post('/api/payments', json={'bundle_id': 1}, headers=headers).get_json()
    assert first['payment']['reference'] == second['payment']['reference']
    assert PaymentTransaction.query.count() == 1


def test_signed_callback_credits_wallet_once(client, agent):
    payment = payments.start_purchase(agent, 1)
    payload = {'reference': payment.reference, 'status': 'completed', 'receipt': 'QJK12345',
               'amount': 500, 'currency': 'KES'}

    resp = post_callback(client, payload)
    assert resp.status_code == 200
    assert resp.get_json()['applied'] is True
    assert resp.get_json()['payment']['status'] == 'completed'
    assert get_wallet_balance(agent.id) == 1010

    # Providers retry callbacks; a replay must not credit again.
    replay = post_callback(client, payload)
    assert replay.status_code == 200
    assert replay.get_json()['applied'] is False
    assert get_wallet_balance(agent.id) == 1010

    txn = CreditTransaction.query.filter_by(user_id=agent.id).one()
    assert txn.payment_id == payment.id
    assert txn.amount == 10
    assert db.session.get(PaymentTransaction, payment.id).provider_receipt == 'QJK12345'
    assert Notification.query.filter_by(user_id=agent.id, type='credit_added').count() == 1


def test_callback_with_bad_signature_is_rejected(client, agent):
    payment = payments.start_purchase(agent, 1)
    resp = post_callback(client, {'reference': payment.reference, 'status': 'completed'}, signature='forged')
    assert resp.status_code == 401
    assert get_wallet_balance(agent.id) == 1000
    assert db.session.get(PaymentTransaction, payment.id).status == 'pending'


def test_callback_without_signature_is_rejected(client, agent):
    payment = payments.start_purchase(agent, 1)
    resp = client.post('/api/payments/callback', json={'reference': payment.reference, 'status': 'completed'})
    assert resp.status_code == 401


def test_failed_payment_grants_nothing(client, agent):
    payment = payments.start_purchase(agent, 3)
    resp = post_callback(client, {'reference': payment.reference, 'status': 'failed', 'reason': 'Cancelled by user'})
    assert resp.status_code == 200
    stored = db.session.get(PaymentTransaction, payment.id)
    assert stored.status == 'failed'
    assert stored.failure_reason == 'Cancelled by user'
    assert get_wallet_balance(agent.id) == 1000

    late = post_callback(client, {'reference': payment.reference, 'status': 'completed'})
    assert late.status_code == 409
    assert get_wallet_balance(agent.id) == 1000


def test_apply_payment_result_validation(agent):
    payment = payments.start_purchase(agent, 1)
    with pytest.raises(ValidationError):
        payments.apply_payment_result(payment.reference, 'refunded')
    with pytest.raises(NotFound):
        payments.apply_payment_result('missing', 'completed')
    payments.apply_payment_result(payment.reference, 'completed', amount=500)
    with pytest.raises(Conflict):
        payments.apply_payment_result(payment.reference, 'failed')


def test_expire_pending_payments(agent):
    old = payments.start_purchase(agent, 1)
    old.created_at = datetime.utcnow() - timedelta(hours=2)
    fresh = payments.start_purchase(agent, 1)
    db.session.commit()

    assert payments.expire_pending_payments(timedelta(minutes=30)) == 1
    db.session.expire_all()
    assert db.session.get(PaymentTransaction, old.id).status == 'failed'
    assert db.session.get(PaymentTransaction, fresh.id).status == 'pending'


def test_payment_status_is_private(client, agent, make_user, login_as):
    payment = payments.start_purchase(agent, 1)
    reference = payment.reference
    login_as(agent)
    assert client.get(f'/api/payments/{reference}').get_json()['payment']['status'] == 'pending'
    assert len(client.get('/api/payments').get_json()['payments']) == 1

    login_as(make_user('other@example.com', type='agent'))
    assert client.get(f'/api/payments/{reference}').status_code == 404


def test_late_confirmation_after_timeout_still_credits(client, agent):
    payment = payments.start_purchase(agent, 2)
    payment.created_at = datetime.utcnow() - timedelta(hours=1)
    db.session.commit()
    assert payments.expire_pending_payments(timedelta(minutes=30)) == 1
    db.session.expire_all()
    timed_out = db.session.get(PaymentTransaction, payment.id)
    assert timed_out.status == 'failed'
    assert timed_out.timed_out is True

    payload = {'reference': timed_out.reference, 'status': 'completed', 'receipt': 'QLT998877',
               'amount': 1100, 'currency': 'KES'}
    resp = post_callback(client, payload)
    assert resp.status_code == 200
    body = resp.get_json()
    assert body['applied'] is True
    assert body['payment']['status'] == 'completed'
    assert body['payment']['timed_out'] is False
    assert body['payment']['failure_reason'] is None
    assert get_wallet_balance(agent.id) == 1025

    assert post_callback(client, payload).get_json()['applied'] is False
    assert get_wallet_balance(agent.id) == 1025


def test_provider_failure_after_timeout_is_final(agent):
    payment = payments.start_purchase(agent, 1)
    payment.created_at = datetime.utcnow() - timedelta(hours=1)
    db.session.commit()
    payments.expire_pending_payments(timedelta(minutes=30))

    _, applied = payments.apply_payment_result(payment.reference, 'failed', reason='Insufficient M-Pesa balance')
    assert applied is True
    with pytest.raises(Conflict):
        payments.apply_payment_result(payment.reference, 'completed', amount=500)
    assert get_wallet_balance(agent.id) == 1000


@pytest.mark.parametrize('amount, currency', [(None, 'KES'), (499, 'KES'), ('500.50', 'KES'), (500, 'USD'), ('lots', 'KES')])
def test_callback_must_report_the_payment_amount(client, agent, amount, currency):
    payment = payments.start_purchase(agent, 1)
    payload = {'reference': payment.reference, 'status': 'completed', 'currency': currency}
    if amount is not None:
        payload['amount'] = amount
    resp = post_callback(client, payload)
    assert resp.status_code in (400, 409)
    assert get_wallet_balance(agent.id) == 1000
    assert db.session.get(PaymentTransaction, payment.id).status == 'pending'


def test_callback_accepts_decimal_amount(client, agent):
    payment = payments.start_purchase(agent, 1)
    resp = post_callback(client, {'reference': payment.reference, 'status': 'completed', 'amount': '500.00'})
    assert resp.get_json()['applied'] is True
    assert get_wallet_balance(agent.id) == 1010
