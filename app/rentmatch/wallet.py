"""Credit ledger.

Balances only move through :func:`add_credits` and :func:`deduct_credits`.
Each change is one conditional UPDATE on the user row plus a
:class:`CreditTransaction` carrying the resulting balance. Neither function
commits: the caller commits (or rolls back) the whole unit of work.
"""
import logging
from sqlalchemy import update

from . import db
from .errors import InsufficientCredits, NotFound, ValidationError
from .models import CreditTransaction, User


def _validate_amount(amount):
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError('Credit amount must be a whole number')
    if amount <= 0:
        raise ValidationError('Credit amount must be positive')


def _current_balance(user_id):
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFound('User not found')
    # The UPDATE statements bypass the identity map.
    db.session.expire(user, ['wallet_balance'])
    return user.wallet_balance


def add_credits(user_id, amount, reason, payment=None):
    _validate_amount(amount)
    result = db.session.execute(
        update(User)
        .where(User.id == user_id)
        .values(wallet_balance=User.wallet_balance + amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise NotFound('User not found')

    new_balance = _current_balance(user_id)
    txn = CreditTransaction(
        user_id=user_id,
        amount=amount,
        type=CreditTransaction.CREDIT,
        reason=reason,
        balance_after=new_balance,
        payment_id=payment.id if payment is not None else None,
    )
    db.session.add(txn)
    db.session.flush()
    logging.info("[WALLET] credit user=%s amount=%s balance=%s reason=%s", user_id, amount, new_balance, reason)
    return txn


def deduct_credits(user_id, amount, reason):
    _validate_amount(amount)
    result = db.session.execute(
        update(User)
        .where(User.id == user_id, User.wallet_balance >= amount)
        .values(wallet_balance=User.wallet_balance - amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        # Either the user is gone or the guarded update lost to the balance check.
        available = _current_balance(user_id)
        raise InsufficientCredits(required=amount, available=available)

    new_balance = _current_balance(user_id)
    txn = CreditTransaction(
        user_id=user_id,
        amount=amount,
        type=CreditTransaction.DEBIT,
        reason=reason,
        balance_after=new_balance,
    )
    db.session.add(txn)
    db.session.flush()
    logging.info("[WALLET] debit user=%s amount=%s balance=%s reason=%s", user_id, amount, new_balance, reason)
    return txn


def get_wallet_balance(user_id):
    return _current_balance(user_id)


def get_wallet_transactions(user_id, limit=20):
    return (
        CreditTransaction.query
        .filter_by(user_id=user_id)
        .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
        .limit(limit)
        .all()
    )
