"""Lead pricing, expiry and display-state rules.

Costs are in credits. All datetimes are naive UTC, as stored by the models.
"""
from datetime import datetime, timedelta

SLOT_MULTIPLIERS = [1.0, 1.5, 2.5]
DEFAULT_BASE_PRICE = 250
DEFAULT_MAX_SLOTS = 3
EXCLUSIVE_MULTIPLIER = 5.0  # sum of all slot multipliers
EXCLUSIVE_DISCOUNT = 0.85
LEAD_LIFETIME = timedelta(days=7)

EXPIRED = 'EXPIRED'

LEAD_STATES = ('available', 'open', 'sold_out', 'expired', 'unlocked')

CREDIT_BUNDLES = [
    {'id': 1, 'credits': 10, 'price': 500, 'popular': False, 'savings': None},
    {'id': 2, 'credits': 25, 'price': 1100, 'popular': True, 'savings': '12% OFF'},
    {'id': 3, 'credits': 50, 'price': 2000, 'popular': False, 'savings': '20% OFF'},
    {'id': 4, 'credits': 100, 'price': 3500, 'popular': False, 'savings': '30% OFF'},
]
CURRENCY = 'KES'

SUBSCRIPTION_PLANS = [
    {
        'id': 'free',
        'name': 'Free',
        'price': 0,
        'period': 'forever',
        'monthly_credits': 0,
        'features': ['View lead previews', 'Basic search filters', '5 credits on signup'],
    },
    {
        'id': 'pro',
        'name': 'Pro',
        'price': 1500,
        'period': 'month',
        'monthly_credits': 20,
        'features': ['20 credits per month', 'Priority lead access', 'Advanced filters',
                     'Lead notifications', 'Analytics dashboard'],
    },
    {
        'id': 'enterprise',
        'name': 'Enterprise',
        'price': 5000,
        'period': 'month',
        'monthly_credits': 75,
        'features': ['75 credits per month', 'Exclusive lead access', 'All Pro features',
                     'Team management', 'API access', 'Dedicated support'],
    },
]


def _round(value):
    # Half-up: 1062.5 -> 1063.
    return int(value + 0.5)


def get_bundle(bundle_id):
    for bundle in CREDIT_BUNDLES:
        if bundle['id'] == bundle_id:
            return bundle
    return None


def calculate_unlock_cost(lead):
    """Surge price for the next slot: later slots cost more."""
    base_price = lead.base_price or DEFAULT_BASE_PRICE
    current_slot = lead.claimed_slots or 0
    if current_slot < len(SLOT_MULTIPLIERS):
        multiplier = SLOT_MULTIPLIERS[current_slot]
    else:
        multiplier = SLOT_MULTIPLIERS[-1]
    return _round(base_price * multiplier)


def calculate_exclusive_cost(lead):
    """Buy every slot at once with a 15% discount."""
    base_price = lead.base_price or DEFAULT_BASE_PRICE
    return _round(base_price * EXCLUSIVE_MULTIPLIER * EXCLUSIVE_DISCOUNT)


def lead_expiry(created_at, expires_at):
    if expires_at:
        return expires_at
    if created_at is None:
        return None
    return created_at + LEAD_LIFETIME


def get_remaining_time(created_at, expires_at, now=None):
    now = now or datetime.utcnow()
    expiry = lead_expiry(created_at, expires_at)
    if expiry is None:
        return EXPIRED
    if expiry <= now:
        return EXPIRED

    diff = expiry - now
    days = diff.days
    hours = diff.seconds // 3600

    if days > 0:
        return f"{days}d {hours}h"
    if hours > 0:
        return f"{hours}h"
    return "< 1h"


def is_expired(lead, now=None):
    return lead.status == 'expired' or get_remaining_time(lead.created_at, lead.expires_at, now) == EXPIRED


def is_sold_out(lead):
    max_slots = lead.max_slots or DEFAULT_MAX_SLOTS
    return lead.status == 'sold_out' or (lead.claimed_slots or 0) >= max_slots


def get_lead_state(lead, is_unlocked=False, now=None):
    if is_unlocked:
        return 'unlocked'
    if is_expired(lead, now):
        return 'expired'
    if is_sold_out(lead):
        return 'sold_out'
    if (lead.claimed_slots or 0) > 0:
        return 'open'
    return 'available'
