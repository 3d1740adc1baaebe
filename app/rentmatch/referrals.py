import logging
import secrets
import time
from datetime import datetime

from . import db
from .errors import Conflict, NotFound, ValidationError
from .models import Referral, User
from .notifications import notify
from .wallet import add_credits

REFERRAL_PREFIX = 'YOOM'
REFERRAL_ALPHABET = 'ABCDEFGHJKLMNPQRSTUVWXYZ23456789'  # no 0/O or 1/I
REFERRAL_ATTEMPTS = 10
REFERRER_BONUS = 5
NEW_USER_BONUS = 2


def _base36(number):
    digits = '0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ'
    out = ''
    while number:
        number, rem = divmod(number, 36)
        out = digits[rem] + out
    return out or '0'


def generate_referral_code():
    for _ in range(REFERRAL_ATTEMPTS):
        code = REFERRAL_PREFIX + ''.join(secrets.choice(REFERRAL_ALPHABET) for _ in range(4))
        if not User.query.filter_by(referral_code=code).first():
            return code
    return REFERRAL_PREFIX + _base36(int(time.time() * 1000))[-6:]


def process_referral(new_user, referral_code):
    """Award both sides of a referral. Commits on success."""
    if not new_user or not referral_code:
        raise ValidationError('Missing user or referral code')

    normalized = referral_code.strip().upper()
    referrer = User.query.filter_by(referral_code=normalized).first()
    if not referrer:
        raise NotFound('Invalid referral code')
    if referrer.id == new_user.id:
        raise ValidationError('You cannot refer yourself.')
    if Referral.query.filter_by(referred_user_id=new_user.id).first():
        raise Conflict('You have already been referred.')

    try:
        add_credits(referrer.id, REFERRER_BONUS, f'Referral bonus: {new_user.email}')
        add_credits(new_user.id, NEW_USER_BONUS, 'Welcome bonus (referral)')
        db.session.add(Referral(
            referrer_id=referrer.id,
            referred_user_id=new_user.id,
            credits_awarded=REFERRER_BONUS,
            status='completed',
            completed_at=datetime.utcnow(),
        ))
        new_user.referred_by = normalized
        notify(referrer.id, 'referral', 'Referral Bonus',
               f'You earned {REFERRER_BONUS} credits from a referral!', {'referred_user_id': new_user.id})
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logging.info("[REFERRAL] referrer=%s new_user=%s code=%s", referrer.id, new_user.id, normalized)
    return referrer


def get_referral_stats(user):
    referrals = Referral.query.filter_by(referrer_id=user.id).all()
    return {
        'total': len(referrals),
        'pending': sum(1 for r in referrals if r.status == 'pending'),
        'completed': sum(1 for r in referrals if r.status == 'completed'),
        'credits_earned': sum(r.credits_awarded or 0 for r in referrals),
    }


def get_referral_code(user):
    if not user.referral_code:
        user.referral_code = generate_referral_code()
        db.session.commit()
    return user.referral_code
