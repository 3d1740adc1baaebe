"""Credit bundle purchases.

A purchase starts as a ``pending`` PaymentTransaction. Credits are granted
only when the payment provider calls back with a valid signature, and the
pending -> completed transition is a conditional UPDATE committed together
with the ledger entry, so a replayed callback never credits twice.
Payments the pending sweep gave up on are failed with ``timed_out`` set and
still accept a late verdict from the provider.
"""
import hashlib
import hmac
import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from flask import current_app
from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError

from . import db
from .errors import Conflict, NotFound, ValidationError
from .models import PaymentTransaction
from .notifications import notify
from .pricing import CURRENCY, get_bundle
from .wallet import add_credits

RESULT_STATUSES = (PaymentTransaction.COMPLETED, PaymentTransaction.FAILED)


def start_purchase(user, bundle_id, phone=None, idempotency_key=None):
    try:
        bundle = get_bundle(int(bundle_id))
    except (TypeError, ValueError):
        bundle = None
    if bundle is None:
        raise ValidationError('Please select a credit bundle')

    if idempotency_key:
        existing = PaymentTransaction.query.filter_by(user_id=user.id, idempotency_key=idempotency_key).first()
        if existing:
            logging.info("[PAYMENT] replayed idempotency key user=%s reference=%s", user.id, existing.reference)
            return existing

    payment = PaymentTransaction(
        user_id=user.id,
        reference=uuid.uuid4().hex,
        idempotency_key=idempotency_key,
        bundle_id=bundle['id'],
        credits=bundle['credits'],
        amount=bundle['price'],
        currency=CURRENCY,
        provider='mpesa',
        phone=(phone or user.phone or '').strip() or None,
        status=PaymentTransaction.PENDING,
    )
    db.session.add(payment)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        existing = PaymentTransaction.query.filter_by(user_id=user.id, idempotency_key=idempotency_key).first()
        if existing is None:
            raise
        return existing

    logging.info("[PAYMENT] started user=%s reference=%s bundle=%s amount=%s",
                 user.id, payment.reference, bundle['id'], bundle['price'])
    return payment


def checkout_url(payment):
    return f"{current_app.config['PAYMENT_CHECKOUT_URL']}?reference={payment.reference}"


def sign_payload(payload):
    secret = current_app.config['PAYMENT_WEBHOOK_SECRET'].encode()
    return hmac.new(secret, payload, hashlib.sha256).hexdigest()


def verify_signature(payload, signature):
    if not signature:
        return False
    return hmac.compare_digest(sign_payload(payload), signature)


def _check_paid_amount(payment, amount, currency):
    if amount is None:
        raise ValidationError('Missing paid amount')
    try:
        paid = Decimal(str(amount))
    except InvalidOperation:
        raise ValidationError('Invalid paid amount')
    currency = (currency or payment.currency or CURRENCY).upper()
    if paid != payment.amount or currency != (payment.currency or CURRENCY).upper():
        logging.warning("[PAYMENT] amount mismatch reference=%s expected=%s %s got=%s %s",
                        payment.reference, payment.amount, payment.currency, paid, currency)
        raise Conflict('Paid amount does not match the payment')


def apply_payment_result(reference, status, receipt=None, reason=None, amount=None, currency=None):
    """Record the provider's verdict on a payment.

    A completed verdict must report the amount and currency that were paid,
    and both must match the payment. A payment the pending sweep timed out
    still accepts the provider's verdict.

    Returns ``(payment, applied)``; ``applied`` is False for a repeated
    callback that changed nothing.
    """
    if status not in RESULT_STATUSES:
        raise ValidationError(f'Unknown payment status: {status}')

    payment = PaymentTransaction.query.filter_by(reference=reference).first()
    if not payment:
        raise NotFound('Payment not found')

    timed_out = payment.status == PaymentTransaction.FAILED and payment.timed_out
    if payment.status != PaymentTransaction.PENDING and not timed_out:
        if payment.status == status:
            return payment, False
        raise Conflict(f'Payment is already {payment.status}')

    values = {'status': status, 'completed_at': datetime.utcnow(), 'timed_out': False}
    if status == PaymentTransaction.COMPLETED:
        _check_paid_amount(payment, amount, currency)
        values['provider_receipt'] = receipt
        values['failure_reason'] = None
    else:
        values['failure_reason'] = reason or 'Payment failed'

    try:
        result = db.session.execute(
            update(PaymentTransaction)
            .where(PaymentTransaction.id == payment.id,
                   or_(PaymentTransaction.status == PaymentTransaction.PENDING,
                       and_(PaymentTransaction.status == PaymentTransaction.FAILED,
                            PaymentTransaction.timed_out.is_(True))))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.session.rollback()
            db.session.refresh(payment)
            return payment, False

        if status == PaymentTransaction.COMPLETED:
            add_credits(payment.user_id, payment.credits, f'Purchased {payment.credits} credits', payment=payment)
            notify(payment.user_id, 'credit_added', 'Credits Added',
                   f'{payment.credits} credits have been added to your wallet',
                   {'reference': payment.reference, 'credits': payment.credits})
        db.session.commit()
    except IntegrityError:
        # Another worker already linked a ledger entry to this payment.
        db.session.rollback()
        db.session.refresh(payment)
        return payment, False
    except Exception:
        db.session.rollback()
        raise

    db.session.refresh(payment)
    logging.info("[PAYMENT] reference=%s status=%s credits=%s", reference, status, payment.credits)
    return payment, True


def get_payment(user, reference):
    payment = PaymentTransaction.query.filter_by(reference=reference, user_id=user.id).first()
    if not payment:
        raise NotFound('Payment not found')
    return payment


def list_payments(user, limit=20):
    return (
        PaymentTransaction.query
        .filter_by(user_id=user.id)
        .order_by(PaymentTransaction.created_at.desc(), PaymentTransaction.id.desc())
        .limit(limit)
        .all()
    )


def expire_pending_payments(max_age=None, now=None):
    now = now or datetime.utcnow()
    if max_age is None:
        max_age = timedelta(minutes=current_app.config['PAYMENT_PENDING_TIMEOUT_MINUTES'])
    result = db.session.execute(
        update(PaymentTransaction)
        .where(PaymentTransaction.status == PaymentTransaction.PENDING,
               PaymentTransaction.created_at <= now - max_age)
        .values(status=PaymentTransaction.FAILED, completed_at=now, timed_out=True,
                failure_reason='Timed out waiting for payment confirmation')
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    logging.info("[PAYMENT] expired %s pending payments", result.rowcount)
    return result.rowcount
