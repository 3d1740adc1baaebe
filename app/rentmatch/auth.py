from flask import Blueprint, redirect, url_for, request, jsonify, current_app
from flask_login import login_user, logout_user, current_user, login_required
from flask_dance.contrib.google import google
from itsdangerous import URLSafeTimedSerializer, BadSignature, SignatureExpired
from botocore.exceptions import BotoCoreError, ClientError
from . import db, login_manager
from .errors import AuthenticationError, Conflict, RentMatchError, ValidationError
from .mailer import send_email
from .models import User
from .referrals import generate_referral_code, process_referral
import hashlib
import hmac
import logging

MIN_PASSWORD_LENGTH = 6
SIGNUP_TYPES = (User.TENANT, User.AGENT)

auth_bp = Blueprint('auth', __name__, url_prefix='/auth')


@login_manager.user_loader
def load_user(user_id):
    return db.session.get(User, int(user_id))


def _payload():
    return request.get_json(silent=True) or request.form.to_dict()


def create_user(email, name=None, type=User.TENANT, phone=None, password=None, avatar_url=None,
                email_verified=False):
    email = (email or '').strip().lower()
    if not email or '@' not in email:
        raise ValidationError('Please enter a valid email address')
    if type not in SIGNUP_TYPES:
        raise ValidationError('Account type must be tenant or agent')
    if User.query.filter_by(email=email).first():
        raise Conflict('An account with this email already exists')
    phone = (phone or '').strip() or None
    if phone and User.query.filter_by(phone=phone).first():
        raise Conflict('This phone number is already registered')

    user = User(
        email=email,
        email_verified=email_verified,
        name=name if isinstance(name, str) and name.strip() else email.split('@')[0],
        phone=phone,
        type=type,
        wallet_balance=0,
        referral_code=generate_referral_code(),
        verification_status='pending',
        avatar_url=avatar_url,
    )
    if password is not None:
        user.set_password(password)
    db.session.add(user)
    db.session.commit()
    logging.info("[AUTH] created user=%s type=%s", user.id, user.type)
    return user


# Signed tokens

def _reset_serializer():
    return URLSafeTimedSerializer(current_app.config['SECRET_KEY'], salt='password-reset')


def _verify_serializer():
    return URLSafeTimedSerializer(current_app.config['SECRET_KEY'], salt='email-verify')


def _password_fingerprint(user):
    # Changes with every new password, which retires outstanding reset links.
    return hashlib.sha256((user.password_hash or '').encode()).hexdigest()[:16]


def make_reset_token(user):
    return _reset_serializer().dumps([user.id, _password_fingerprint(user)])


def load_reset_token(token):
    try:
        user_id, fingerprint = _reset_serializer().loads(token, max_age=current_app.config['PASSWORD_RESET_MAX_AGE'])
    except SignatureExpired:
        raise ValidationError('This reset link has expired')
    except (BadSignature, TypeError, ValueError):
        raise ValidationError('Invalid reset link')
    user = db.session.get(User, user_id)
    if not user or not hmac.compare_digest(str(fingerprint), _password_fingerprint(user)):
        raise ValidationError('Invalid reset link')
    return user


def make_verification_token(user):
    return _verify_serializer().dumps([user.id, user.email])


def load_verification_token(token):
    try:
        user_id, email = _verify_serializer().loads(token, max_age=current_app.config['EMAIL_VERIFY_MAX_AGE'])
    except SignatureExpired:
        raise ValidationError('This verification link has expired')
    except (BadSignature, TypeError, ValueError):
        raise ValidationError('Invalid verification link')
    user = db.session.get(User, user_id)
    if not user or user.email != email:
        raise ValidationError('Invalid verification link')
    return user


def send_verification_email(user):
    link = url_for('auth.verify_email', token=make_verification_token(user), _external=True)
    send_email(
        user.email,
        'Confirm your RentMatch email',
        f"Hi {user.name},\n\nConfirm your email address to see the rental requests sent from it:\n{link}\n",
    )
    logging.info("[AUTH] verification email sent to user=%s", user.id)


# Routes

@auth_bp.route('/signup', methods=['POST'])
def signup():
    data = _payload()
    password = data.get('password') or ''
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f'Password must be at least {MIN_PASSWORD_LENGTH} characters')
    user = create_user(
        data.get('email'),
        name=data.get('name'),
        type=data.get('type') or data.get('user_type') or User.TENANT,
        phone=data.get('phone'),
        password=password,
    )
    body = {'user': user.to_dict()}
    referral_code = data.get('referral_code') or data.get('referred_by')
    if referral_code:
        # A bad code must not block the signup itself.
        try:
            referrer = process_referral(user, referral_code)
            body['referrer_name'] = referrer.name
        except RentMatchError as e:
            logging.info("[AUTH] referral rejected for user=%s: %s", user.id, e.message)
            body['referral_error'] = e.message
        body['user'] = user.to_dict()
    try:
        send_verification_email(user)
        body['verification_email_sent'] = True
    except (BotoCoreError, ClientError):
        logging.exception("[AUTH] could not send verification email to user=%s", user.id)
        body['verification_email_sent'] = False
    login_user(user)
    return jsonify(body), 201


@auth_bp.route('/login', methods=['POST'])
def login():
    data = _payload()
    email = (data.get('email') or '').strip().lower()
    user = User.query.filter_by(email=email).first()
    if not user or not user.check_password(data.get('password') or ''):
        logging.info("[AUTH] failed login for %s", email)
        raise AuthenticationError('Invalid email or password. Please check your credentials and try again.')
    login_user(user, remember=bool(data.get('remember')))
    return jsonify({'user': user.to_dict()})


@auth_bp.route('/logout', methods=['POST'])
@login_required
def logout():
    logging.info("[AUTH] logout user=%s", current_user.id)
    logout_user()
    return jsonify({'success': True})


@auth_bp.route('/me')
@login_required
def me():
    return jsonify({'user': current_user.to_dict()})


@auth_bp.route('/verify-email', methods=['POST'])
@login_required
def resend_verification():
    if current_user.email_verified:
        return jsonify({'message': 'Your email is already verified.'})
    send_verification_email(current_user)
    return jsonify({'message': 'A verification link has been sent to your email.'})


@auth_bp.route('/verify-email/<token>', methods=['GET', 'POST'])
def verify_email(token):
    user = load_verification_token(token)
    if not user.email_verified:
        user.email_verified = True
        db.session.commit()
        logging.info("[AUTH] email verified for user=%s", user.id)
    return jsonify({'user': user.to_dict()})


@auth_bp.route('/reset-password', methods=['POST'])
def request_password_reset():
    email = (_payload().get('email') or '').strip().lower()
    user = User.query.filter_by(email=email).first()
    if user and user.password_hash:
        link = url_for('auth.reset_password', token=make_reset_token(user), _external=True)
        send_email(
            user.email,
            'Reset your RentMatch password',
            f"Hi {user.name},\n\nUse the link below to choose a new password. "
            f"It expires in {current_app.config['PASSWORD_RESET_MAX_AGE'] // 60} minutes.\n{link}\n\n"
            "If you did not ask for this, you can ignore this email.\n",
        )
        logging.info("[AUTH] password reset email sent to user=%s", user.id)
    # Same answer whether or not the account exists.
    return jsonify({'message': 'If an account exists for that email, a reset link has been sent.'})


@auth_bp.route('/reset-password/<token>', methods=['POST'])
def reset_password(token):
    user = load_reset_token(token)
    password = _payload().get('password') or ''
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f'Password must be at least {MIN_PASSWORD_LENGTH} characters')
    user.set_password(password)
    # The link arrived by email, so the address is proven.
    user.email_verified = True
    db.session.commit()
    logging.info("[AUTH] password reset for user=%s", user.id)
    return jsonify({'success': True})


@auth_bp.route('/google-login')
def google_login():
    if not google.authorized:
        return redirect(url_for('google.login'))
    resp = google.get("/oauth2/v2/userinfo")
    if not resp.ok:
        raise AuthenticationError('Failed to fetch user info from Google.')
    info = resp.json()
    email = info["email"].lower()
    avatar_url = info.get("picture")
    verified = bool(info.get("verified_email"))
    user = User.query.filter_by(email=email).first()
    if not user:
        user = create_user(email, name=info.get("name"), avatar_url=avatar_url, email_verified=verified)
    else:
        if avatar_url and user.avatar_url != avatar_url:
            user.avatar_url = avatar_url
        if verified and not user.email_verified:
            user.email_verified = True
        db.session.commit()
    login_user(user)
    logging.info("[AUTH] google login user=%s", user.id)
    return jsonify({'user': user.to_dict()})
