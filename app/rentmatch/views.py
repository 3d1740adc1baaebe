from flask import Blueprint, request, jsonify
from flask_login import login_required, current_user
from .models import db, User, Lead, AuditLog
from functools import wraps
from datetime import datetime
import numpy as np
import csv
from io import StringIO
import logging

from . import ai, assets, leads, notifications, payments, referrals, wallet
from .errors import AuthenticationError, PermissionDenied, ValidationError, NotFound
from .pricing import CREDIT_BUNDLES, SUBSCRIPTION_PLANS, SLOT_MULTIPLIERS, DEFAULT_BASE_PRICE, DEFAULT_MAX_SLOTS

main_bp = Blueprint('main', __name__)

PROFILE_FIELDS = ('name', 'phone', 'agency_name', 'bio', 'license_number', 'avatar_url')


# RBAC decorators
def admin_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not current_user.is_authenticated or not current_user.is_admin:
            raise PermissionDenied('Admin access required.')
        return f(*args, **kwargs)
    return decorated_function


def agent_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not current_user.is_authenticated or not (current_user.is_agent or current_user.is_admin):
            raise PermissionDenied('Agent access required.')
        return f(*args, **kwargs)
    return decorated_function


def _payload():
    return request.get_json(silent=True) or request.form.to_dict()


def log_action(user, action, target, details=None):
    db.session.add(AuditLog(user_id=user.id, action=action, target=target, details=details))
    db.session.commit()


@main_bp.route('/')
def index():
    return jsonify({'message': 'RentMatch API running'})


@main_bp.route('/api/catalog')
def catalog():
    return jsonify({
        'credit_bundles': CREDIT_BUNDLES,
        'subscription_plans': SUBSCRIPTION_PLANS,
        'pricing': {
            'default_base_price': DEFAULT_BASE_PRICE,
            'slot_multipliers': SLOT_MULTIPLIERS,
            'max_slots': DEFAULT_MAX_SLOTS,
        },
    })


# Leads

@main_bp.route('/api/leads', methods=['POST'])
def submit_lead():
    tenant = current_user if current_user.is_authenticated else None
    lead = leads.create_lead(_payload(), tenant=tenant)
    return jsonify({'lead': leads.serialize_lead(lead, viewer=tenant)}), 201


@main_bp.route('/api/leads', methods=['GET'])
@login_required
@agent_required
def list_leads():
    filters = {
        'status': request.args.get('status', 'all', type=str),
        'location': request.args.get('location', '', type=str).strip(),
        'property_type': request.args.get('property_type', '', type=str),
        'min_budget': request.args.get('min_budget', None, type=int),
        'max_budget': request.args.get('max_budget', None, type=int),
    }
    items = leads.fetch_leads(filters)
    unlocked = leads.get_unlocked_lead_ids(current_user.id)
    return jsonify({
        'leads': [leads.serialize_lead(l, viewer=current_user, is_unlocked=l.id in unlocked) for l in items],
        'count': len(items),
    })


@main_bp.route('/api/leads/<int:lead_id>')
@login_required
def lead_detail(lead_id):
    lead = leads.get_lead(lead_id)
    if current_user.is_agent:
        leads.increment_lead_views(lead.id, current_user.id)
        is_unlocked = leads.has_agent_unlocked_lead(current_user.id, lead.id)
    elif current_user.is_admin or leads.is_lead_owner(current_user, lead):
        is_unlocked = False
    else:
        raise PermissionDenied('You can only view your own requests')
    return jsonify({
        'lead': leads.serialize_lead(lead, viewer=current_user, is_unlocked=is_unlocked),
        'balance': current_user.wallet_balance or 0,
    })


@main_bp.route('/api/leads/<int:lead_id>/unlock', methods=['POST'])
@login_required
def unlock(lead_id):
    data = _payload()
    exclusive = str(data.get('exclusive', '')).lower() in ('1', 'true', 'yes')
    result = leads.unlock_lead(current_user, lead_id, is_exclusive=exclusive)
    return jsonify({
        'lead': leads.serialize_lead(result['lead'], viewer=current_user, is_unlocked=True),
        'cost': result['cost'],
        'already_unlocked': result['already_unlocked'],
        'balance': result['balance'],
        'message': 'Already unlocked' if result['already_unlocked'] else 'Lead unlocked successfully!',
    })


@main_bp.route('/api/leads/<int:lead_id>', methods=['PATCH'])
@login_required
def edit_lead(lead_id):
    lead = leads.update_lead(current_user, lead_id, _payload())
    return jsonify({'lead': leads.serialize_lead(lead, viewer=current_user)})


@main_bp.route('/api/leads/<int:lead_id>/toggle-status', methods=['POST'])
@login_required
def toggle_lead(lead_id):
    lead = leads.toggle_lead_status(current_user, lead_id)
    return jsonify({'lead': leads.serialize_lead(lead, viewer=current_user)})


@main_bp.route('/api/leads/<int:lead_id>', methods=['DELETE'])
@login_required
def remove_lead(lead_id):
    leads.delete_lead(current_user, lead_id)
    return jsonify({'success': True})


@main_bp.route('/api/leads/parse', methods=['POST'])
@login_required
def parse_lead_text():
    return jsonify(ai.parse_requirements(_payload().get('text')))


@main_bp.route('/api/tenant/requests')
@login_required
def tenant_requests():
    items = leads.get_tenant_requests(current_user)
    return jsonify({'requests': [leads.serialize_lead(l, viewer=current_user) for l in items]})


@main_bp.route('/api/agent/unlocked-leads')
@login_required
@agent_required
def unlocked_leads():
    history = leads.get_agent_unlocked_leads(current_user.id)
    return jsonify({'unlocked': [
        dict(h.to_dict(), lead=leads.serialize_lead(h.lead, viewer=current_user, is_unlocked=True))
        for h in history
    ]})


# Wallet & payments

@main_bp.route('/api/wallet')
@login_required
def wallet_summary():
    limit = min(request.args.get('limit', 20, type=int), 100)
    return jsonify({
        'balance': wallet.get_wallet_balance(current_user.id),
        'transactions': [t.to_dict() for t in wallet.get_wallet_transactions(current_user.id, limit)],
    })


@main_bp.route('/api/payments', methods=['POST'])
@login_required
def start_payment():
    data = _payload()
    payment = payments.start_purchase(
        current_user,
        data.get('bundle_id'),
        phone=data.get('phone'),
        idempotency_key=request.headers.get('Idempotency-Key') or data.get('idempotency_key'),
    )
    return jsonify({'payment': payment.to_dict(), 'checkout_url': payments.checkout_url(payment)}), 201


@main_bp.route('/api/payments')
@login_required
def payment_history():
    return jsonify({'payments': [p.to_dict() for p in payments.list_payments(current_user)]})


@main_bp.route('/api/payments/<reference>')
@login_required
def payment_status(reference):
    return jsonify({'payment': payments.get_payment(current_user, reference).to_dict()})


@main_bp.route('/api/payments/callback', methods=['POST'])
def payment_callback():
    raw = request.get_data()
    if not payments.verify_signature(raw, request.headers.get('X-Payment-Signature')):
        logging.warning("[PAYMENT] rejected callback with bad signature")
        raise AuthenticationError('Invalid signature')
    data = request.get_json(silent=True) or {}
    if not data.get('reference'):
        raise ValidationError('Missing payment reference')
    payment, applied = payments.apply_payment_result(
        data['reference'], data.get('status'), receipt=data.get('receipt'), reason=data.get('reason'),
        amount=data.get('amount'), currency=data.get('currency'),
    )
    return jsonify({'payment': payment.to_dict(), 'applied': applied})


# Referrals & notifications

@main_bp.route('/api/referrals')
@login_required
def referral_summary():
    return jsonify({
        'code': referrals.get_referral_code(current_user),
        'stats': referrals.get_referral_stats(current_user),
        'referrer_bonus': referrals.REFERRER_BONUS,
        'new_user_bonus': referrals.NEW_USER_BONUS,
    })


@main_bp.route('/api/notifications')
@login_required
def notification_list():
    unread_only = request.args.get('filter') == 'unread'
    items = notifications.list_notifications(current_user, unread_only=unread_only)
    return jsonify({
        'notifications': [n.to_dict() for n in items],
        'unread_count': notifications.unread_count(current_user),
    })


@main_bp.route('/api/notifications/<int:notification_id>/read', methods=['POST'])
@login_required
def notification_read(notification_id):
    return jsonify({'notification': notifications.mark_read(current_user, notification_id).to_dict()})


@main_bp.route('/api/notifications/read-all', methods=['POST'])
@login_required
def notification_read_all():
    return jsonify({'updated': notifications.mark_all_read(current_user)})


# Agent assets

@main_bp.route('/api/assets')
@login_required
@agent_required
def asset_overview():
    folder_id = request.args.get('folder_id', None, type=int)
    return jsonify({
        'folders': assets.list_folders(current_user),
        'files': [a.to_dict() for a in assets.list_assets(current_user, folder_id=folder_id,
                                                           limit=None if folder_id else 5)],
        'storage': assets.storage_usage(current_user),
    })


@main_bp.route('/api/assets/folders', methods=['POST'])
@login_required
@agent_required
def asset_folder_create():
    data = _payload()
    folder = assets.create_folder(current_user, data.get('name'), data.get('location'))
    return jsonify({'folder': {'id': folder.id, 'name': folder.name, 'location': folder.location}}), 201


@main_bp.route('/api/assets', methods=['POST'])
@login_required
@agent_required
def asset_upload():
    asset = assets.upload_asset(current_user, request.files.get('file'),
                                folder_id=request.form.get('folder_id', None, type=int))
    return jsonify({'asset': asset.to_dict()}), 201


@main_bp.route('/api/assets/<int:asset_id>/download')
@login_required
@agent_required
def asset_download(asset_id):
    asset = assets.get_asset(current_user, asset_id)
    return jsonify({'url': assets.download_url(asset)})


@main_bp.route('/api/assets/<int:asset_id>', methods=['DELETE'])
@login_required
@agent_required
def asset_delete(asset_id):
    assets.delete_asset(current_user, asset_id)
    return jsonify({'success': True})


# Profile

@main_bp.route('/api/profile', methods=['GET', 'PATCH'])
@login_required
def profile():
    user = current_user
    if request.method == 'PATCH':
        data = _payload()
        for field in PROFILE_FIELDS:
            if field in data:
                value = (data.get(field) or '').strip()
                if field == 'name' and not value:
                    raise ValidationError('Name cannot be empty')
                setattr(user, field, value or None)
        if 'license_number' in data and user.is_agent:
            # A new licence has to be checked again.
            user.verification_status = 'pending'
            user.verified_at = None
        db.session.commit()
    return jsonify({'user': user.to_dict()})


# Admin

@main_bp.route('/api/admin/agents')
@login_required
@admin_required
def admin_agents():
    status = request.args.get('status', '', type=str)
    query = User.query.filter_by(type=User.AGENT)
    if status:
        query = query.filter_by(verification_status=status)
    agents = query.order_by(User.created_at.desc()).all()
    return jsonify({'agents': [a.to_dict() for a in agents]})


@main_bp.route('/api/admin/agents/<int:user_id>/verify', methods=['POST'])
@login_required
@admin_required
def verify_agent(user_id):
    status = _payload().get('status', 'verified')
    if status not in ('verified', 'rejected', 'pending'):
        raise ValidationError('Invalid verification status')
    agent = db.session.get(User, user_id)
    if not agent or not agent.is_agent:
        raise NotFound('Agent not found')
    agent.verification_status = status
    agent.verified_at = datetime.utcnow() if status == 'verified' else None
    notifications.notify(agent.id, 'system', 'Verification update',
                         f'Your agent verification status is now {status}.')
    db.session.commit()
    log_action(current_user, 'verify_agent', agent.email, details=status)
    return jsonify({'agent': agent.to_dict()})


@main_bp.route('/api/admin/users/<int:user_id>/credits', methods=['POST'])
@login_required
@admin_required
def grant_credits(user_id):
    data = _payload()
    try:
        amount = int(data.get('amount'))
    except (TypeError, ValueError):
        raise ValidationError('Amount must be a whole number')
    reason = (data.get('reason') or 'Manual adjustment').strip()
    if amount > 0:
        wallet.add_credits(user_id, amount, reason)
    else:
        wallet.deduct_credits(user_id, -amount, reason)
    db.session.commit()
    log_action(current_user, 'adjust_credits', str(user_id), details=f'{amount}: {reason}')
    return jsonify({'balance': wallet.get_wallet_balance(user_id)})


@main_bp.route('/api/admin/leads/<int:lead_id>/visibility', methods=['POST'])
@login_required
@admin_required
def lead_visibility(lead_id):
    lead = leads.get_lead(lead_id)
    lead.is_hidden = not lead.is_hidden
    db.session.commit()
    log_action(current_user, 'hide_lead' if lead.is_hidden else 'show_lead', str(lead.id))
    return jsonify({'lead': leads.serialize_lead(lead, viewer=current_user)})


@main_bp.route('/api/admin/auditlog')
@login_required
@admin_required
def auditlog():
    logs = AuditLog.query.order_by(AuditLog.timestamp.desc()).limit(100).all()
    return jsonify({'logs': [l.to_dict() for l in logs]})


def market_summary(items):
    """Budget distribution and demand per location."""
    by_location = {}
    for lead in items:
        key = (lead.location or '').strip().title() or 'Unknown'
        by_location.setdefault(key, []).append(lead)

    rows = []
    for location, group in by_location.items():
        budgets = np.array([l.budget for l in group if l.budget], dtype=float)
        rows.append({
            'location': location,
            'count': len(group),
            'median_budget': float(np.median(budgets)) if budgets.size else 0,
            'p25_budget': float(np.percentile(budgets, 25)) if budgets.size else 0,
            'p75_budget': float(np.percentile(budgets, 75)) if budgets.size else 0,
            'unlock_rate': float(np.mean([1.0 if (l.contacts or 0) > 0 else 0.0 for l in group])),
            'avg_views': float(np.mean([l.views or 0 for l in group])),
        })
    rows.sort(key=lambda r: r['count'], reverse=True)

    all_budgets = np.array([l.budget for l in items if l.budget], dtype=float)
    return {
        'total_leads': len(items),
        'sold_out': sum(1 for l in items if l.status == Lead.SOLD_OUT),
        'median_budget': float(np.median(all_budgets)) if all_budgets.size else 0,
        'locations': rows,
    }


@main_bp.route('/api/admin/market')
@login_required
@admin_required
def admin_market():
    return jsonify(market_summary(Lead.query.all()))


# Export CSV
@main_bp.route('/api/admin/export')
@login_required
@admin_required
def export_csv():
    items = Lead.query.order_by(Lead.created_at.desc()).all()
    si = StringIO()
    writer = csv.writer(si)
    writer.writerow(['ID', 'Location', 'Property Type', 'Budget', 'Status', 'Claimed Slots', 'Views', 'Added'])
    for l in items:
        writer.writerow([
            l.id,
            l.location,
            l.property_type,
            l.budget or '',
            l.status,
            l.claimed_slots or 0,
            l.views or 0,
            l.created_at.strftime('%Y-%m-%d') if l.created_at else '',
        ])
    output = si.getvalue()
    return (output, 200, {'Content-Type': 'text/csv', 'Content-Disposition': 'attachment; filename=leads.csv'})
