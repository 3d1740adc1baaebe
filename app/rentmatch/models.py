from . import db
from flask_login import UserMixin
from datetime import datetime
from werkzeug.security import generate_password_hash, check_password_hash


def _iso(value):
    return value.isoformat() if value else None


class User(db.Model, UserMixin):
    TENANT = 'tenant'
    AGENT = 'agent'
    ADMIN = 'admin'
    TYPES = (TENANT, AGENT, ADMIN)

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False)
    email_verified = db.Column(db.Boolean, default=False, nullable=False)
    name = db.Column(db.String(255))
    phone = db.Column(db.String(32), nullable=True, index=True)
    type = db.Column(db.String(16), default=TENANT, nullable=False)  # 'tenant', 'agent' or 'admin'
    password_hash = db.Column(db.String(255), nullable=True)  # null for Google sign-in accounts
    wallet_balance = db.Column(db.Integer, default=0, nullable=False)
    referral_code = db.Column(db.String(16), unique=True, nullable=True)
    referred_by = db.Column(db.String(16), nullable=True)
    verification_status = db.Column(db.String(16), default='pending')  # pending, verified, rejected
    verified_at = db.Column(db.DateTime, nullable=True)
    agency_name = db.Column(db.String(255), nullable=True)
    bio = db.Column(db.Text, nullable=True)
    license_number = db.Column(db.String(64), nullable=True)
    avatar_url = db.Column(db.String(512), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        if not self.password_hash:
            return False
        return check_password_hash(self.password_hash, password)

    @property
    def is_agent(self):
        return self.type == self.AGENT

    @property
    def is_admin(self):
        return self.type == self.ADMIN

    def to_dict(self):
        return {
            'id': self.id,
            'email': self.email,
            'email_verified': bool(self.email_verified),
            'name': self.name,
            'phone': self.phone,
            'type': self.type,
            'wallet_balance': self.wallet_balance or 0,
            'referral_code': self.referral_code,
            'referred_by': self.referred_by,
            'verification_status': self.verification_status or 'pending',
            'verified_at': _iso(self.verified_at),
            'agency_name': self.agency_name,
            'bio': self.bio,
            'license_number': self.license_number,
            'avatar_url': self.avatar_url,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }

    def __repr__(self):
        return f'<User {self.email}>'


class Lead(db.Model):
    """A tenant's rental request, browsed and unlocked by agents."""
    __table_args__ = (
        db.Index('idx_lead_status_created', 'status', 'created_at'),
    )

    ACTIVE = 'active'
    PAUSED = 'paused'
    EXPIRED = 'expired'
    SOLD_OUT = 'sold_out'
    STATUSES = (ACTIVE, PAUSED, EXPIRED, SOLD_OUT)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True, index=True)
    location = db.Column(db.String(255), nullable=False)
    property_type = db.Column(db.String(64), nullable=False)
    budget = db.Column(db.Integer, nullable=True, index=True)
    budget_min = db.Column(db.Integer, nullable=True)
    budget_max = db.Column(db.Integer, nullable=True)
    requirements = db.Column(db.Text, nullable=True)
    tenant_name = db.Column(db.String(255), nullable=False)
    tenant_email = db.Column(db.String(255), nullable=False, index=True)
    tenant_phone = db.Column(db.String(32), nullable=True)
    status = db.Column(db.String(16), default=ACTIVE, nullable=False)
    base_price = db.Column(db.Integer, nullable=True)  # null means the default unlock price
    max_slots = db.Column(db.Integer, default=3, nullable=False)
    claimed_slots = db.Column(db.Integer, default=0, nullable=False)
    is_exclusive = db.Column(db.Boolean, default=False, nullable=False)
    contacts = db.Column(db.Integer, default=0, nullable=False)
    views = db.Column(db.Integer, default=0, nullable=False)
    is_hidden = db.Column(db.Boolean, default=False, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f'<Lead {self.id} {self.location}>'


class ContactHistory(db.Model):
    __table_args__ = (
        db.UniqueConstraint('agent_id', 'lead_id', 'contact_type', name='uq_contact_agent_lead_type'),
    )

    UNLOCK = 'unlock'
    EXCLUSIVE = 'exclusive'
    BROWSE = 'browse'
    UNLOCK_TYPES = (UNLOCK, EXCLUSIVE)

    id = db.Column(db.Integer, primary_key=True)
    agent_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    lead_id = db.Column(db.Integer, db.ForeignKey('lead.id', ondelete='CASCADE'), nullable=False, index=True)
    contact_type = db.Column(db.String(16), nullable=False)
    cost_credits = db.Column(db.Integer, default=0, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    lead = db.relationship('Lead', backref=db.backref('contact_history', cascade='all, delete-orphan'))

    def to_dict(self):
        return {
            'id': self.id,
            'agent_id': self.agent_id,
            'lead_id': self.lead_id,
            'contact_type': self.contact_type,
            'cost_credits': self.cost_credits,
            'created_at': _iso(self.created_at),
        }


class LeadAgentConnection(db.Model):
    __table_args__ = (
        db.UniqueConstraint('lead_id', 'agent_id', name='uq_connection_lead_agent'),
    )

    id = db.Column(db.Integer, primary_key=True)
    lead_id = db.Column(db.Integer, db.ForeignKey('lead.id', ondelete='CASCADE'), nullable=False)
    agent_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    connection_type = db.Column(db.String(16), nullable=False)
    status = db.Column(db.String(16), default='connected')
    cost = db.Column(db.Integer, default=0)
    is_exclusive = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    lead = db.relationship('Lead', backref=db.backref('connections', cascade='all, delete-orphan'))


class PaymentTransaction(db.Model):
    __table_args__ = (
        db.UniqueConstraint('user_id', 'idempotency_key', name='uq_payment_user_idempotency'),
    )

    PENDING = 'pending'
    COMPLETED = 'completed'
    FAILED = 'failed'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    reference = db.Column(db.String(64), unique=True, nullable=False)
    idempotency_key = db.Column(db.String(128), nullable=True)
    bundle_id = db.Column(db.Integer, nullable=False)
    credits = db.Column(db.Integer, nullable=False)
    amount = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(8), default='KES')
    provider = db.Column(db.String(32), default='mpesa')
    phone = db.Column(db.String(32), nullable=True)
    status = db.Column(db.String(16), default=PENDING, nullable=False)
    provider_receipt = db.Column(db.String(128), nullable=True)
    failure_reason = db.Column(db.String(255), nullable=True)
    timed_out = db.Column(db.Boolean, default=False, nullable=False)  # failed by the pending sweep, not the provider
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    completed_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self):
        return {
            'id': self.id,
            'reference': self.reference,
            'bundle_id': self.bundle_id,
            'credits': self.credits,
            'amount': self.amount,
            'currency': self.currency,
            'provider': self.provider,
            'status': self.status,
            'provider_receipt': self.provider_receipt,
            'failure_reason': self.failure_reason,
            'timed_out': bool(self.timed_out),
            'created_at': _iso(self.created_at),
            'completed_at': _iso(self.completed_at),
        }


class CreditTransaction(db.Model):
    CREDIT = 'credit'
    DEBIT = 'debit'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    amount = db.Column(db.Integer, nullable=False)
    type = db.Column(db.String(8), nullable=False)
    reason = db.Column(db.String(255))
    balance_after = db.Column(db.Integer, nullable=False)
    payment_id = db.Column(db.Integer, db.ForeignKey('payment_transaction.id'), nullable=True, unique=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'amount': self.amount,
            'type': self.type,
            'reason': self.reason,
            'balance_after': self.balance_after,
            'payment_id': self.payment_id,
            'created_at': _iso(self.created_at),
        }


class Referral(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    referrer_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    referred_user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, unique=True)
    credits_awarded = db.Column(db.Integer, default=0)
    status = db.Column(db.String(16), default='pending')
    completed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class Notification(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    type = db.Column(db.String(32), default='system')
    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text)
    data = db.Column(db.JSON)
    read = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'type': self.type,
            'title': self.title,
            'message': self.message,
            'data': self.data or {},
            'read': self.read,
            'created_at': _iso(self.created_at),
        }


class AgentFolder(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    agent_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    location = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class AgentAsset(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    agent_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    folder_id = db.Column(db.Integer, db.ForeignKey('agent_folder.id'), nullable=True)
    file_name = db.Column(db.String(255), nullable=False)
    file_size = db.Column(db.Integer, default=0)
    file_type = db.Column(db.String(128))
    storage_key = db.Column(db.String(512), nullable=False)
    url = db.Column(db.String(1024))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    folder = db.relationship('AgentFolder', backref='assets')

    def to_dict(self):
        return {
            'id': self.id,
            'folder_id': self.folder_id,
            'folder_name': self.folder.name if self.folder else None,
            'file_name': self.file_name,
            'file_size': self.file_size,
            'file_type': self.file_type,
            'url': self.url,
            'created_at': _iso(self.created_at),
        }


class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    action = db.Column(db.String(64))
    target = db.Column(db.String(255))
    timestamp = db.Column(db.DateTime, default=datetime.utcnow)
    details = db.Column(db.Text, nullable=True)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'action': self.action,
            'target': self.target,
            'details': self.details,
            'timestamp': _iso(self.timestamp),
        }
