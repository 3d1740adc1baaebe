"""Lead submission, browsing and the agent unlock flow."""
import logging
from datetime import datetime
from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError

from . import db
from .errors import Conflict, NotFound, PermissionDenied, ValidationError
from .models import ContactHistory, Lead, LeadAgentConnection
from .notifications import notify
from .pricing import (
    DEFAULT_MAX_SLOTS, LEAD_LIFETIME, calculate_exclusive_cost, calculate_unlock_cost,
    get_lead_state, get_remaining_time, is_expired, is_sold_out,
)
from .wallet import deduct_credits, get_wallet_balance

EDITABLE_FIELDS = ('location', 'property_type', 'requirements', 'tenant_phone')


def _to_int(value, field):
    if value is None or value == '':
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be a number')


def _parse_budget(data):
    budget_min = _to_int(data.get('budget_min'), 'budget_min')
    budget_max = _to_int(data.get('budget_max'), 'budget_max')
    budget = _to_int(data.get('budget'), 'budget')
    if budget_min is None and budget_max is None:
        budget_min = budget_max = budget
    elif budget_max is None:
        budget_max = budget_min
    elif budget_min is None:
        budget_min = 0
    if not budget_max or budget_max <= 0:
        raise ValidationError('Budget is required')
    if budget_min < 0 or budget_min > budget_max:
        raise ValidationError('Invalid budget range')
    return budget_min, budget_max


def create_lead(data, tenant=None):
    location = (data.get('location') or '').strip()
    property_type = (data.get('property_type') or '').strip()
    tenant_name = (data.get('tenant_name') or (tenant.name if tenant else '') or '').strip()
    tenant_email = (data.get('tenant_email') or (tenant.email if tenant else '') or '').strip().lower()
    tenant_phone = (data.get('tenant_phone') or (tenant.phone if tenant else '') or '').strip() or None

    if not location:
        raise ValidationError('Please enter a location')
    if not property_type:
        raise ValidationError('Please select a property type')
    if not tenant_name:
        raise ValidationError('Please enter your name')
    if not tenant_email or '@' not in tenant_email:
        raise ValidationError('Please enter your email')
    budget_min, budget_max = _parse_budget(data)

    lead = Lead(
        user_id=tenant.id if tenant else None,
        location=location,
        property_type=property_type,
        budget=budget_max,
        budget_min=budget_min,
        budget_max=budget_max,
        requirements=(data.get('requirements') or '').strip() or None,
        tenant_name=tenant_name,
        tenant_email=tenant_email,
        tenant_phone=tenant_phone,
        status=Lead.ACTIVE,
        claimed_slots=0,
        max_slots=DEFAULT_MAX_SLOTS,
    )
    db.session.add(lead)
    db.session.commit()
    logging.info("[LEADS] created lead=%s location=%s type=%s", lead.id, lead.location, lead.property_type)
    return lead


def fetch_leads(filters=None):
    filters = filters or {}
    query = Lead.query.filter(or_(Lead.is_hidden.is_(None), Lead.is_hidden.is_(False)))

    status = filters.get('status')
    if status and status != 'all':
        query = query.filter(Lead.status == status)
    if filters.get('location'):
        query = query.filter(Lead.location.ilike(f"%{filters['location']}%"))
    if filters.get('property_type'):
        query = query.filter(Lead.property_type == filters['property_type'])
    if filters.get('min_budget'):
        query = query.filter(Lead.budget >= filters['min_budget'])
    if filters.get('max_budget'):
        query = query.filter(Lead.budget <= filters['max_budget'])

    return query.order_by(Lead.created_at.desc(), Lead.id.desc()).all()


def get_lead(lead_id):
    lead = db.session.get(Lead, lead_id)
    if not lead:
        raise NotFound('Lead not found')
    return lead


def has_agent_unlocked_lead(agent_id, lead_id):
    return db.session.query(
        ContactHistory.query.filter(
            ContactHistory.agent_id == agent_id,
            ContactHistory.lead_id == lead_id,
            ContactHistory.contact_type.in_(ContactHistory.UNLOCK_TYPES),
        ).exists()
    ).scalar()


def get_unlocked_lead_ids(agent_id):
    rows = (
        db.session.query(ContactHistory.lead_id)
        .filter(ContactHistory.agent_id == agent_id,
                ContactHistory.contact_type.in_(ContactHistory.UNLOCK_TYPES))
        .distinct()
        .all()
    )
    return {lead_id for (lead_id,) in rows if lead_id}


def get_agent_unlocked_leads(agent_id):
    return (
        ContactHistory.query
        .join(Lead, ContactHistory.lead_id == Lead.id)
        .filter(ContactHistory.agent_id == agent_id,
                ContactHistory.contact_type.in_(ContactHistory.UNLOCK_TYPES))
        .order_by(ContactHistory.created_at.desc(), ContactHistory.id.desc())
        .all()
    )


def _check_unlockable(lead, is_exclusive):
    if is_sold_out(lead):
        raise Conflict('Lead is already sold out')
    if is_exclusive and (lead.claimed_slots or 0) > 0:
        raise Conflict('Exclusive buyout only available for new leads')
    if lead.is_exclusive:
        raise Conflict('This lead has been bought exclusively by another agent')
    if is_expired(lead):
        raise Conflict('This lead has expired')
    if lead.status == Lead.PAUSED:
        raise Conflict('This lead has been paused by the tenant')


def unlock_lead(agent, lead_id, is_exclusive=False):
    """Buy one slot (or every slot, when exclusive) of a lead for ``agent``.

    Charging the wallet, claiming the slot and recording the contact are one
    transaction. The slot claim is a compare-and-set on ``claimed_slots`` so
    two agents racing for the last slot cannot both get it; the loser's
    charge is rolled back and :class:`Conflict` is raised.
    """
    if not agent.is_agent:
        raise PermissionDenied('Only agents can unlock leads')

    lead = get_lead(lead_id)
    if has_agent_unlocked_lead(agent.id, lead.id):
        return {'lead': lead, 'cost': 0, 'already_unlocked': True,
                'balance': get_wallet_balance(agent.id)}

    _check_unlockable(lead, is_exclusive)

    max_slots = lead.max_slots or DEFAULT_MAX_SLOTS
    claimed = lead.claimed_slots or 0
    cost = calculate_exclusive_cost(lead) if is_exclusive else calculate_unlock_cost(lead)
    contact_type = ContactHistory.EXCLUSIVE if is_exclusive else ContactHistory.UNLOCK
    new_claimed = max_slots if is_exclusive else claimed + 1

    try:
        deduct_credits(agent.id, cost, f"Lead Unlock: {lead.id}{' (Exclusive)' if is_exclusive else ''}")

        result = db.session.execute(
            update(Lead)
            .where(Lead.id == lead.id, Lead.claimed_slots == claimed, Lead.is_exclusive.is_(False))
            .values(
                claimed_slots=new_claimed,
                status=Lead.SOLD_OUT if new_claimed >= max_slots else Lead.ACTIVE,
                is_exclusive=is_exclusive,
                contacts=Lead.contacts + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise Conflict('This lead was just claimed by another agent. Please try again.')
        db.session.expire(lead)

        db.session.add(ContactHistory(agent_id=agent.id, lead_id=lead.id,
                                      contact_type=contact_type, cost_credits=cost))

        connection = LeadAgentConnection.query.filter_by(lead_id=lead.id, agent_id=agent.id).first()
        if connection is None:
            connection = LeadAgentConnection(lead_id=lead.id, agent_id=agent.id)
            db.session.add(connection)
        connection.connection_type = contact_type
        connection.status = 'connected'
        connection.cost = cost
        connection.is_exclusive = is_exclusive

        notify(agent.id, 'lead_unlocked', 'Lead Unlocked!',
               f"You've unlocked a lead in {lead.location or 'unknown location'}. Contact the tenant now!",
               {'lead_id': lead.id, 'cost': cost})
        if lead.user_id:
            notify(lead.user_id, 'agent_interested', 'An agent is interested!',
                   'A verified agent has unlocked your rental request and may contact you soon.',
                   {'lead_id': lead.id, 'agent_id': agent.id})

        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        logging.warning("[UNLOCK] duplicate unlock agent=%s lead=%s", agent.id, lead_id)
        raise Conflict('You have already unlocked this lead')
    except Exception:
        db.session.rollback()
        raise

    logging.info("[UNLOCK] agent=%s lead=%s exclusive=%s cost=%s", agent.id, lead.id, is_exclusive, cost)
    return {'lead': lead, 'cost': cost, 'already_unlocked': False,
            'balance': get_wallet_balance(agent.id)}


def increment_lead_views(lead_id, agent_id):
    """Count an agent's first view of a lead. Returns True when counted."""
    exists = ContactHistory.query.filter_by(
        lead_id=lead_id, agent_id=agent_id, contact_type=ContactHistory.BROWSE
    ).first()
    if exists:
        return False
    try:
        db.session.add(ContactHistory(agent_id=agent_id, lead_id=lead_id,
                                      contact_type=ContactHistory.BROWSE, cost_credits=0))
        db.session.execute(
            update(Lead)
            .where(Lead.id == lead_id)
            .values(views=Lead.views + 1)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return False
    lead = db.session.get(Lead, lead_id)
    if lead is not None:
        db.session.expire(lead, ['views'])
    return True


def get_tenant_requests(user):
    owned = Lead.user_id == user.id
    if user.email_verified:
        owned = or_(owned, and_(Lead.user_id.is_(None), Lead.tenant_email == user.email.lower()))
    return (
        Lead.query
        .filter(owned)
        .order_by(Lead.created_at.desc(), Lead.id.desc())
        .all()
    )


def is_lead_owner(user, lead):
    if user is None or not getattr(user, 'is_authenticated', False):
        return False
    if lead.user_id is not None:
        return lead.user_id == user.id
    # Requests sent before signing up match by email once the address is proven.
    if not getattr(user, 'email_verified', False):
        return False
    return (lead.tenant_email or '').lower() == (user.email or '').lower()


def _owned_lead(user, lead_id):
    lead = get_lead(lead_id)
    if not (is_lead_owner(user, lead) or user.is_admin):
        raise PermissionDenied('You can only manage your own requests')
    return lead


def toggle_lead_status(user, lead_id):
    lead = _owned_lead(user, lead_id)
    if lead.status not in (Lead.ACTIVE, Lead.PAUSED):
        raise Conflict(f'A {lead.status.replace("_", " ")} request cannot be paused or resumed')
    if lead.status == Lead.PAUSED and is_expired(lead):
        raise Conflict('This request has expired')
    lead.status = Lead.PAUSED if lead.status == Lead.ACTIVE else Lead.ACTIVE
    db.session.commit()
    logging.info("[LEADS] lead=%s status=%s", lead.id, lead.status)
    return lead


def update_lead(user, lead_id, data):
    lead = _owned_lead(user, lead_id)
    for field in EDITABLE_FIELDS:
        if field in data:
            value = (data.get(field) or '').strip()
            if field in ('location', 'property_type') and not value:
                raise ValidationError(f'{field.replace("_", " ").capitalize()} cannot be empty')
            setattr(lead, field, value or None)
    if any(k in data for k in ('budget', 'budget_min', 'budget_max')):
        lead.budget_min, lead.budget_max = _parse_budget(data)
        lead.budget = lead.budget_max
    db.session.commit()
    return lead


def delete_lead(user, lead_id):
    lead = _owned_lead(user, lead_id)
    db.session.delete(lead)
    db.session.commit()
    logging.info("[LEADS] deleted lead=%s by user=%s", lead_id, user.id)


def expire_stale_leads(now=None):
    now = now or datetime.utcnow()
    stale = Lead.query.filter(
        Lead.status.in_((Lead.ACTIVE, Lead.PAUSED)),
        or_(
            and_(Lead.expires_at.isnot(None), Lead.expires_at <= now),
            and_(Lead.expires_at.is_(None), Lead.created_at <= now - LEAD_LIFETIME),
        ),
    ).all()
    for lead in stale:
        lead.status = Lead.EXPIRED
        if lead.user_id:
            notify(lead.user_id, 'lead_expired', 'Request Expired',
                   f'Your rental request in {lead.location} has expired.', {'lead_id': lead.id})
    db.session.commit()
    logging.info("[LEADS] expired %s stale leads", len(stale))
    return len(stale)


def serialize_lead(lead, viewer=None, is_unlocked=False):
    can_see_contact = is_unlocked or is_lead_owner(viewer, lead) or bool(viewer and getattr(viewer, 'is_admin', False))
    data = {
        'id': lead.id,
        'location': lead.location,
        'property_type': lead.property_type,
        'budget': lead.budget,
        'budget_min': lead.budget_min,
        'budget_max': lead.budget_max,
        'requirements': lead.requirements,
        'status': lead.status,
        'state': get_lead_state(lead, is_unlocked),
        'time_left': get_remaining_time(lead.created_at, lead.expires_at),
        'max_slots': lead.max_slots or DEFAULT_MAX_SLOTS,
        'claimed_slots': lead.claimed_slots or 0,
        'is_exclusive': bool(lead.is_exclusive),
        'unlocked_count': lead.contacts or 0,
        'views': lead.views or 0,
        'unlock_cost': calculate_unlock_cost(lead),
        'exclusive_cost': calculate_exclusive_cost(lead),
        'is_unlocked': is_unlocked,
        'created_at': lead.created_at.isoformat() if lead.created_at else None,
        'expires_at': lead.expires_at.isoformat() if lead.expires_at else None,
    }
    if can_see_contact:
        data.update(tenant_name=lead.tenant_name, tenant_email=lead.tenant_email,
                    tenant_phone=lead.tenant_phone)
    else:
        first_name = (lead.tenant_name or '').split(' ')[0] or None
        data.update(tenant_name=first_name, tenant_email=None, tenant_phone=None)
    return data
