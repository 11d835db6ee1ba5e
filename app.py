import os
import io
import re
import json
import time
import uuid
import base64
import logging
import threading
from datetime import datetime, timedelta, timezone
from functools import wraps

import qrcode
import requests
import stripe
from flask import Flask, render_template, jsonify, request, send_file, session
from flask_sqlalchemy import SQLAlchemy
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.security import generate_password_hash, check_password_hash
from werkzeug.utils import secure_filename
from jdatetime import datetime as jdatetime_class
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from errors import (
    StorefrontError, ConfigurationError, AuthError, InvalidInput, NotFound, Conflict,
    PanelUnavailable, PanelRejected, IllegalTransition, to_envelope,
)
from panel_clients import get_panel_client, load_json_field
from payment_gateways import (
    ZarinpalGateway, NowPaymentsGateway, StripeGateway, ManualGateway,
    NOWPAYMENTS_FAILED_STATUSES, ZARINPAL_API_BASE, poll_payment_status,
)
from notifications import (
    send_email, post_webhook, build_webhook_payload,
    EVENT_NEW_SUBSCRIPTION, EVENT_MANUAL_PAYMENT_APPROVAL, EVENT_SUBSCRIPTION_APPROVED,
    EVENT_SUBSCRIPTION_REJECTED, EVENT_WEBHOOK_TEST,
)

APP_VERSION = "1.0.0"

# --- WORKFLOW STATE ---

SUB_STATUS_PENDING = 'pending'
SUB_STATUS_PENDING_MANUAL = 'pending_manual_verification'
SUB_STATUS_PAID = 'paid'
SUB_STATUS_PENDING_ACTIVATION = 'pending_activation'
SUB_STATUS_ACTIVE = 'active'
SUB_STATUS_REJECTED = 'rejected'
SUB_STATUS_CANCELLED = 'cancelled'
SUB_STATUS_FAILED = 'failed'
SUB_STATUS_EXPIRED = 'expired'

SUBSCRIPTION_STATUSES = (
    SUB_STATUS_PENDING, SUB_STATUS_PENDING_MANUAL, SUB_STATUS_PAID, SUB_STATUS_PENDING_ACTIVATION,
    SUB_STATUS_ACTIVE, SUB_STATUS_REJECTED, SUB_STATUS_CANCELLED, SUB_STATUS_FAILED, SUB_STATUS_EXPIRED,
)

ALLOWED_TRANSITIONS = {
    SUB_STATUS_PENDING: {
        SUB_STATUS_PENDING_MANUAL, SUB_STATUS_PAID, SUB_STATUS_ACTIVE, SUB_STATUS_PENDING_ACTIVATION,
        SUB_STATUS_REJECTED, SUB_STATUS_CANCELLED, SUB_STATUS_FAILED,
    },
    SUB_STATUS_PENDING_MANUAL: {
        SUB_STATUS_PAID, SUB_STATUS_ACTIVE, SUB_STATUS_PENDING_ACTIVATION, SUB_STATUS_REJECTED, SUB_STATUS_CANCELLED,
    },
    SUB_STATUS_PAID: {SUB_STATUS_ACTIVE, SUB_STATUS_PENDING_ACTIVATION, SUB_STATUS_FAILED},
    SUB_STATUS_PENDING_ACTIVATION: {SUB_STATUS_ACTIVE, SUB_STATUS_FAILED, SUB_STATUS_CANCELLED},
    SUB_STATUS_FAILED: {SUB_STATUS_PENDING},
    SUB_STATUS_ACTIVE: {SUB_STATUS_EXPIRED},
    SUB_STATUS_REJECTED: set(),
    SUB_STATUS_CANCELLED: set(),
    SUB_STATUS_EXPIRED: set(),
}

DECISION_PENDING = 'pending'
DECISION_APPROVED = 'approved'
DECISION_REJECTED = 'rejected'

CONTRACT_STATUS_PENDING = 'pending'
CONTRACT_STATUS_ACTIVE = 'active'
CONTRACT_STATUS_FAILED = 'failed'
CONTRACT_STATUS_CANCELLED = 'cancelled'

PANEL_TYPES = ('marzban', 'marzneshin')
DEFAULT_PRICE_PER_GB = 800
MIN_DURATION_DAYS = 1
MAX_DURATION_DAYS = 365
RENEWAL_MAX_DATA_GB = 500
RENEWAL_MAX_DURATION_DAYS = 180


def _parse_bool(value) -> bool:
    return str(value or '').strip().lower() in ('1', 'true', 'yes', 'y', 'on')


app = Flask(__name__)
app.secret_key = os.environ.get("SESSION_SECRET", "dev-secret-key-change-in-production")

# Use SQLite by default, but allow override via DATABASE_URL
db_url = os.environ.get("DATABASE_URL")
if db_url:
    db_url = str(db_url).strip()
    # Heroku-style scheme; SQLAlchemy expects postgresql://
    if db_url.startswith("postgres://"):
        db_url = "postgresql://" + db_url[len("postgres://"):]
else:
    db_path = os.path.join(app.instance_path, 'storefront.db')
    os.makedirs(app.instance_path, exist_ok=True)
    db_url = f"sqlite:///{db_path}"

app.config['SQLALCHEMY_DATABASE_URI'] = db_url
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
app.config['SQLALCHEMY_ENGINE_OPTIONS'] = {
    'pool_recycle': 1800,
    'pool_pre_ping': True
}
app.config['PERMANENT_SESSION_LIFETIME'] = timedelta(days=7)

app.config.update(
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SAMESITE='Lax',
    RATELIMIT_ENABLED=_parse_bool(os.environ.get('RATELIMIT_ENABLED', '1')),
    PUBLIC_BASE_URL=(os.environ.get('PUBLIC_BASE_URL') or '').rstrip('/'),
    ZARINPAL_MERCHANT_ID=os.environ.get('ZARINPAL_MERCHANT_ID'),
    ZARINPAL_API_BASE=os.environ.get('ZARINPAL_API_BASE') or ZARINPAL_API_BASE,
    NOWPAYMENTS_API_KEY=os.environ.get('NOWPAYMENTS_API_KEY'),
    NOWPAYMENTS_IPN_URL=os.environ.get('NOWPAYMENTS_IPN_URL'),
    STRIPE_SECRET_KEY=os.environ.get('STRIPE_SECRET_KEY'),
    RESEND_API_KEY=os.environ.get('RESEND_API_KEY'),
    EMAIL_FROM=os.environ.get('EMAIL_FROM') or 'VPN Admin <admin@resend.dev>',
    ADMIN_NOTIFY_EMAIL=os.environ.get('ADMIN_NOTIFY_EMAIL'),
    WEBHOOK_URL=os.environ.get('WEBHOOK_URL'),
    DEFAULT_PANEL_TYPE=(os.environ.get('DEFAULT_PANEL_TYPE') or 'marzneshin').strip().lower(),
    TOMAN_PER_USD=int(os.environ.get('TOMAN_PER_USD') or 60000),
)

RECEIPT_ALLOWED_EXTENSIONS = {'png', 'jpg', 'jpeg', 'webp', 'heic', 'heif', 'pdf'}
RECEIPTS_DIR = os.environ.get('RECEIPTS_DIR') or os.path.join(app.instance_path, 'receipts')
os.makedirs(RECEIPTS_DIR, exist_ok=True)

limiter = Limiter(
    app=app,
    key_func=get_remote_address,
    default_limits=["5000 per day", "500 per hour"]
)

db = SQLAlchemy(app)

logger = logging.getLogger(__name__)
if not logger.handlers:
    logging.basicConfig(level=logging.INFO)


def _iso(value):
    return value.isoformat() if value else None


# --- MODELS ---

class Admin(db.Model):
    __tablename__ = 'admins'
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(100), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    enabled = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    last_login = db.Column(db.DateTime)

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'enabled': self.enabled,
            'created_at': _iso(self.created_at),
            'last_login': _iso(self.last_login)
        }


class PanelServer(db.Model):
    __tablename__ = 'panel_servers'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    type = db.Column(db.String(20), nullable=False, index=True)  # marzban, marzneshin
    panel_url = db.Column(db.String(255), nullable=False)
    username = db.Column(db.String(100), nullable=False)
    password = db.Column(db.String(255), nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    health_status = db.Column(db.String(20), default='unknown')
    last_health_check = db.Column(db.DateTime)
    enabled_protocols = db.Column(db.Text, default='[]')
    panel_config_data = db.Column(db.Text, default='{}')
    country_en = db.Column(db.String(64))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'type': self.type,
            'panel_url': self.panel_url,
            'username': self.username,
            'is_active': self.is_active,
            'health_status': self.health_status,
            'last_health_check': _iso(self.last_health_check),
            'enabled_protocols': load_json_field(self.enabled_protocols, []),
            'panel_config_data': load_json_field(self.panel_config_data, {}),
            'country_en': self.country_en,
            'created_at': _iso(self.created_at),
        }


class SubscriptionPlan(db.Model):
    __tablename__ = 'subscription_plans'
    id = db.Column(db.Integer, primary_key=True)
    plan_id = db.Column(db.String(64), unique=True, nullable=False)
    name_en = db.Column(db.String(120), nullable=False)
    name_fa = db.Column(db.String(120))
    description = db.Column(db.Text)
    api_type = db.Column(db.String(20), default='marzneshin')
    assigned_panel_id = db.Column(db.Integer, db.ForeignKey('panel_servers.id'), nullable=True)
    price_per_gb = db.Column(db.Integer, default=DEFAULT_PRICE_PER_GB)
    default_data_limit_gb = db.Column(db.Integer, default=10)
    default_duration_days = db.Column(db.Integer, default=30)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    mappings = db.relationship('PlanPanelMapping', backref='plan', lazy=True, cascade='all, delete-orphan')

    def to_dict(self):
        return {
            'id': self.id,
            'plan_id': self.plan_id,
            'name_en': self.name_en,
            'name_fa': self.name_fa,
            'description': self.description,
            'api_type': self.api_type,
            'assigned_panel_id': self.assigned_panel_id,
            'price_per_gb': self.price_per_gb,
            'default_data_limit_gb': self.default_data_limit_gb,
            'default_duration_days': self.default_duration_days,
            'is_active': self.is_active,
            'panels': [m.to_dict() for m in self.mappings],
        }


class PlanPanelMapping(db.Model):
    __tablename__ = 'plan_panel_mappings'
    id = db.Column(db.Integer, primary_key=True)
    plan_id = db.Column(db.Integer, db.ForeignKey('subscription_plans.id'), nullable=False)
    panel_id = db.Column(db.Integer, db.ForeignKey('panel_servers.id'), nullable=False)
    is_primary = db.Column(db.Boolean, default=False)
    inbound_ids = db.Column(db.Text, default='[]')

    panel = db.relationship('PanelServer')

    def to_dict(self):
        return {
            'panel_id': self.panel_id,
            'panel_name': self.panel.name if self.panel else None,
            'is_primary': self.is_primary,
            'inbound_ids': load_json_field(self.inbound_ids, []),
        }


class Subscription(db.Model):
    __tablename__ = 'subscriptions'
    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    username = db.Column(db.String(64), nullable=False, index=True)
    mobile = db.Column(db.String(20), nullable=False, index=True)
    email = db.Column(db.String(120))
    plan_id = db.Column(db.Integer, db.ForeignKey('subscription_plans.id'), nullable=True)
    data_limit_gb = db.Column(db.Integer, nullable=False)
    duration_days = db.Column(db.Integer, nullable=False)
    price_toman = db.Column(db.Integer, nullable=False, default=0)
    original_price_toman = db.Column(db.Integer)
    discount_code = db.Column(db.String(64))
    protocol = db.Column(db.String(32))
    notes = db.Column(db.Text)
    status = db.Column(db.String(32), default=SUB_STATUS_PENDING, nullable=False, index=True)
    payment_method = db.Column(db.String(20))
    admin_decision = db.Column(db.String(16))
    admin_decision_token = db.Column(db.String(64), index=True)
    admin_decided_at = db.Column(db.DateTime)
    zarinpal_authority = db.Column(db.String(64), unique=True)
    zarinpal_ref_id = db.Column(db.String(64))
    provider_reference = db.Column(db.String(128), index=True)
    provider_amount = db.Column(db.Integer)  # amount in the provider's unit (Rial for Zarinpal)
    receipt_image_url = db.Column(db.String(300))
    subscription_url = db.Column(db.String(500))
    marzban_user_created = db.Column(db.Boolean, default=False)
    is_renewal = db.Column(db.Boolean, default=False)
    expire_at = db.Column(db.DateTime)
    panel_id = db.Column(db.Integer, db.ForeignKey('panel_servers.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    plan = db.relationship('SubscriptionPlan')
    panel = db.relationship('PanelServer')

    def to_dict(self, include_private=False):
        data = {
            'id': self.id,
            'username': self.username,
            'mobile': self.mobile,
            'email': self.email,
            'plan_id': self.plan_id,
            'data_limit_gb': self.data_limit_gb,
            'duration_days': self.duration_days,
            'price_toman': self.price_toman,
            'original_price_toman': self.original_price_toman,
            'discount_code': self.discount_code,
            'protocol': self.protocol,
            'status': self.status,
            'payment_method': self.payment_method,
            'admin_decision': self.admin_decision,
            'admin_decided_at': _iso(self.admin_decided_at),
            'zarinpal_authority': self.zarinpal_authority,
            'zarinpal_ref_id': self.zarinpal_ref_id,
            'subscription_url': self.subscription_url,
            'marzban_user_created': bool(self.marzban_user_created),
            'is_renewal': bool(self.is_renewal),
            'expire_at': _iso(self.expire_at),
            'expire_at_jalali': format_jalali(self.expire_at),
            'panel_id': self.panel_id,
            'created_at': _iso(self.created_at),
            'created_at_jalali': format_jalali(self.created_at),
            'updated_at': _iso(self.updated_at),
        }
        if include_private:
            data['notes'] = self.notes
            data['provider_reference'] = self.provider_reference
            data['provider_amount'] = self.provider_amount
            data['receipt_image_url'] = self.receipt_image_url
        return data


class ZarinpalContract(db.Model):
    __tablename__ = 'zarinpal_contracts'
    id = db.Column(db.Integer, primary_key=True)
    user_mobile = db.Column(db.String(20), nullable=False, index=True)
    payman_authority = db.Column(db.String(128), unique=True, nullable=False)
    signature = db.Column(db.Text)
    bank_code = db.Column(db.String(32))
    max_amount = db.Column(db.Integer, nullable=False)
    max_daily_count = db.Column(db.Integer, default=100)
    max_monthly_count = db.Column(db.Integer, default=1000)
    expire_at = db.Column(db.DateTime)
    status = db.Column(db.String(20), default=CONTRACT_STATUS_PENDING, index=True)
    signed_at = db.Column(db.DateTime)
    cancelled_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'user_mobile': self.user_mobile,
            'payman_authority': self.payman_authority,
            'has_signature': bool(self.signature),
            'bank_code': self.bank_code,
            'max_amount': self.max_amount,
            'max_daily_count': self.max_daily_count,
            'max_monthly_count': self.max_monthly_count,
            'expire_at': _iso(self.expire_at),
            'status': self.status,
            'signed_at': _iso(self.signed_at),
            'cancelled_at': _iso(self.cancelled_at),
            'created_at': _iso(self.created_at),
        }


class UserCreationLog(db.Model):
    __tablename__ = 'user_creation_logs'
    id = db.Column(db.Integer, primary_key=True)
    subscription_id = db.Column(db.String(36), index=True)
    panel_id = db.Column(db.Integer)
    panel_name = db.Column(db.String(100))
    panel_url = db.Column(db.String(255))
    action = db.Column(db.String(64))
    request_data = db.Column(db.Text)
    response_data = db.Column(db.Text)
    success = db.Column(db.Boolean, default=False)
    error_message = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    def to_dict(self):
        return {
            'id': self.id,
            'subscription_id': self.subscription_id,
            'panel_id': self.panel_id,
            'panel_name': self.panel_name,
            'panel_url': self.panel_url,
            'action': self.action,
            'request_data': load_json_field(self.request_data, {}),
            'response_data': load_json_field(self.response_data, {}),
            'success': self.success,
            'error_message': self.error_message,
            'created_at': _iso(self.created_at),
        }


class WebhookLog(db.Model):
    __tablename__ = 'webhook_logs'
    id = db.Column(db.Integer, primary_key=True)
    webhook_config_id = db.Column(db.Integer)
    trigger_type = db.Column(db.String(64), index=True)
    webhook_url = db.Column(db.String(500))
    payload = db.Column(db.Text)
    response_status = db.Column(db.Integer)
    response_body = db.Column(db.Text)
    success = db.Column(db.Boolean, default=False)
    error_message = db.Column(db.Text)
    sent_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    def to_dict(self):
        return {
            'id': self.id,
            'webhook_config_id': self.webhook_config_id,
            'trigger_type': self.trigger_type,
            'webhook_url': self.webhook_url,
            'payload': load_json_field(self.payload, {}),
            'response_status': self.response_status,
            'response_body': self.response_body,
            'success': self.success,
            'error_message': self.error_message,
            'sent_at': _iso(self.sent_at),
        }


class EmailNotification(db.Model):
    __tablename__ = 'email_notifications'
    id = db.Column(db.Integer, primary_key=True)
    subscription_id = db.Column(db.String(36), index=True)
    recipient_email = db.Column(db.String(120))
    email_type = db.Column(db.String(64))
    email_data = db.Column(db.Text)
    success = db.Column(db.Boolean, default=False)
    error_message = db.Column(db.Text)
    sent_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    def to_dict(self):
        return {
            'id': self.id,
            'subscription_id': self.subscription_id,
            'recipient_email': self.recipient_email,
            'email_type': self.email_type,
            'email_data': load_json_field(self.email_data, {}),
            'success': self.success,
            'error_message': self.error_message,
            'sent_at': _iso(self.sent_at),
        }


class PaymentEvent(db.Model):
    """One row per provider reference that has already been credited."""
    __tablename__ = 'payment_events'
    __table_args__ = (db.UniqueConstraint('provider', 'reference', name='uq_payment_event_reference'),)
    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(20), nullable=False)
    reference = db.Column(db.String(128), nullable=False)
    subscription_id = db.Column(db.String(36), index=True)
    payload = db.Column(db.Text)
    processed_at = db.Column(db.DateTime, default=datetime.utcnow)


class WebhookConfig(db.Model):
    __tablename__ = 'webhook_configs'
    id = db.Column(db.Integer, primary_key=True)
    webhook_url = db.Column(db.String(500), nullable=False)
    method = db.Column(db.String(10), default='POST')
    headers = db.Column(db.Text, default='{}')
    is_enabled = db.Column(db.Boolean, default=True)
    is_primary = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'webhook_url': self.webhook_url,
            'method': self.method,
            'headers': load_json_field(self.headers, {}),
            'is_enabled': self.is_enabled,
            'is_primary': self.is_primary,
            'created_at': _iso(self.created_at),
        }


class DiscountCode(db.Model):
    __tablename__ = 'discount_codes'
    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(64), unique=True, nullable=False)
    discount_type = db.Column(db.String(20), default='percentage')  # percentage, fixed
    discount_value = db.Column(db.Integer, nullable=False)
    applicable_plans = db.Column(db.Text, default='[]')
    expires_at = db.Column(db.DateTime)
    is_active = db.Column(db.Boolean, default=True)
    total_usage_limit = db.Column(db.Integer)
    current_usage_count = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'code': self.code,
            'discount_type': self.discount_type,
            'discount_value': self.discount_value,
            'applicable_plans': load_json_field(self.applicable_plans, []),
            'expires_at': _iso(self.expires_at),
            'is_active': self.is_active,
            'total_usage_limit': self.total_usage_limit,
            'current_usage_count': self.current_usage_count,
        }


with app.app_context():
    db.create_all()

    if Admin.query.count() == 0:
        initial_username = os.environ.get("INITIAL_ADMIN_USERNAME", "admin")
        default_admin = Admin(username=initial_username, enabled=True)
        default_admin.set_password(os.environ.get("INITIAL_ADMIN_PASSWORD", "admin"))
        db.session.add(default_admin)
        db.session.commit()
        logger.info(f"Created initial admin account: {initial_username}")


# --- HELPERS ---

def login_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'admin_id' not in session:
            return jsonify({"success": False, "error": "Unauthorized"}), 401
        return f(*args, **kwargs)
    return decorated_function


def format_jalali(dt):
    if not dt:
        return None
    try:
        # Convert UTC to Tehran (+3:30)
        dt_tehran = dt + timedelta(hours=3, minutes=30)
        jalali_date = jdatetime_class.fromgregorian(datetime=dt_tehran)
        return jalali_date.strftime('%Y/%m/%d %H:%M')
    except Exception:
        return dt.isoformat() if dt else None


_DIGIT_TRANSLATION = str.maketrans({
    '۰': '0', '۱': '1', '۲': '2', '۳': '3', '۴': '4', '۵': '5', '۶': '6', '۷': '7', '۸': '8', '۹': '9',
    '٠': '0', '١': '1', '٢': '2', '٣': '3', '٤': '4', '٥': '5', '٦': '6', '٧': '7', '٨': '8', '٩': '9',
})

USERNAME_PATTERN = re.compile(r'^[A-Za-z0-9_]{3,32}$')
MOBILE_PATTERN = re.compile(r'^09\d{9}$')


def parse_whole_number(value):
    """Parse a non-negative whole number from user input.

    Accepts ints, integral floats and digit strings with commas/spaces and
    Persian/Arabic digits. Returns None for decimals, signs or anything else.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, float):
        return int(value) if value.is_integer() and value >= 0 else None
    s = str(value).strip().translate(_DIGIT_TRANSLATION)
    s = re.sub(r'[,\s٬]', '', s)
    if not re.fullmatch(r'[0-9]+', s):
        return None
    return int(s)


def whole_number_field(data, *keys, default=None, minimum=None, maximum=None):
    """Read the first non-blank key as a whole number, raising InvalidInput when malformed."""
    for key in keys:
        raw = data.get(key)
        if raw is None or (isinstance(raw, str) and not raw.strip()):
            continue
        value = parse_whole_number(raw)
        if value is None:
            raise InvalidInput(f"{key} must be a whole number", details={'field': key})
        if minimum is not None and value < minimum:
            raise InvalidInput(f"{key} must be at least {minimum}", details={'field': key})
        if maximum is not None and value > maximum:
            raise InvalidInput(f"{key} must be at most {maximum}", details={'field': key})
        return value
    return default


def normalize_mobile(value):
    if not value:
        return None
    s = re.sub(r'[^0-9]', '', str(value).translate(_DIGIT_TRANSLATION))
    if s.startswith('98') and len(s) == 12:
        s = '0' + s[2:]
    elif len(s) == 10 and s.startswith('9'):
        s = '0' + s
    return s if MOBILE_PATTERN.match(s) else None


def normalize_username(value):
    """Usernames without an underscore get a timestamp suffix to stay unique on the panel."""
    name = re.sub(r'[^A-Za-z0-9_]', '', str(value or '').strip())
    if not name:
        return None
    if '_' not in name:
        name = f"{name[:20]}_{int(time.time())}"
    return name if USERNAME_PATTERN.match(name) else None


def parse_iso_datetime(value):
    if not value:
        return None
    try:
        if isinstance(value, datetime):
            return value
        return datetime.fromisoformat(value)
    except Exception:
        try:
            # fallback for "2024-12-01 12:00"
            return datetime.strptime(value, '%Y-%m-%d %H:%M')
        except Exception:
            return None


def allowed_receipt_file(filename):
    if not filename or '.' not in filename:
        return False
    ext = filename.rsplit('.', 1)[1].lower()
    return ext in RECEIPT_ALLOWED_EXTENSIONS


def save_receipt_file(file_storage):
    if not file_storage or not allowed_receipt_file(file_storage.filename):
        return None
    ext = file_storage.filename.rsplit('.', 1)[1].lower()
    subdir = datetime.utcnow().strftime('%Y/%m')
    dest_dir = os.path.join(RECEIPTS_DIR, subdir)
    os.makedirs(dest_dir, exist_ok=True)
    safe_name = secure_filename(f"{uuid.uuid4().hex}.{ext}")
    file_storage.save(os.path.join(dest_dir, safe_name))
    return f"{subdir}/{safe_name}"


def make_qr_data_uri(link):
    qr = qrcode.QRCode(version=1, box_size=10, border=2)
    qr.add_data(link)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    img.save(buffer, format='PNG')
    return f"data:image/png;base64,{base64.b64encode(buffer.getvalue()).decode()}"


def append_note(existing, text):
    line = f"[{datetime.utcnow().strftime('%Y-%m-%d %H:%M')}] {text}"
    return f"{existing}\n{line}" if existing else line


def require_setting(key):
    value = app.config.get(key)
    if not value:
        raise ConfigurationError(f"{key} is not configured")
    return value


def public_url(path):
    base = app.config.get('PUBLIC_BASE_URL') or request.host_url.rstrip('/')
    return f"{base}{path}"


def get_http_session():
    return requests.Session()


def get_stripe_client():
    return stripe


def get_zarinpal_gateway():
    return ZarinpalGateway(
        require_setting('ZARINPAL_MERCHANT_ID'),
        session=get_http_session(),
        api_base=app.config['ZARINPAL_API_BASE'],
    )


def get_nowpayments_gateway():
    return NowPaymentsGateway(
        require_setting('NOWPAYMENTS_API_KEY'),
        session=get_http_session(),
        toman_per_usd=app.config['TOMAN_PER_USD'],
    )


def get_stripe_gateway():
    return StripeGateway(
        require_setting('STRIPE_SECRET_KEY'),
        client=get_stripe_client(),
        toman_per_usd=app.config['TOMAN_PER_USD'],
    )


ENVELOPE_STATUS = {
    'ProviderUnavailable': 502,
    'ProviderRejected': 400,
    'NotFound': 404,
    'Pending': 202,
}


def public_failure(envelope):
    """Strip provider bodies before a gateway failure reaches the customer."""
    details = envelope.get('details') or {}
    safe = {k: details[k] for k in ('kind', 'code', 'status') if k in details}
    return jsonify({"success": False, "error": envelope.get('error'), "details": safe}), ENVELOPE_STATUS.get(details.get('kind'), 400)


def request_data():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        data = request.form.to_dict() if request.form else {}
    return data


@app.errorhandler(StorefrontError)
def handle_storefront_error(e):
    app.logger.warning(f"{e.__class__.__name__} on {request.path}: {e.message}")
    return jsonify(to_envelope(e)), e.status_code


# --- AUDIT ---

def record_audit(model_cls, **fields):
    """Insert an audit row; failures are logged and never reach the caller."""
    try:
        db.session.add(model_cls(**fields))
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception(f"Failed to write {model_cls.__tablename__} entry")


def make_creation_log_sink(subscription_id=None, source='panel'):
    def sink(action, panel, request_data, response_data, success, error_message):
        record_audit(
            UserCreationLog,
            subscription_id=subscription_id,
            panel_id=getattr(panel, 'id', None),
            panel_name=getattr(panel, 'name', None),
            panel_url=getattr(panel, 'panel_url', None),
            action=f"{source}:{action}",
            request_data=json.dumps(request_data, default=str),
            response_data=json.dumps(response_data, default=str) if response_data is not None else None,
            success=success,
            error_message=error_message,
        )
    return sink


# --- STATE TRANSITIONS ---

def transition_subscription(subscription_id, to_status, expected=None, criteria=(), **fields):
    """Move a subscription to ``to_status`` with a single compare-and-swap UPDATE.

    The row only changes when its current status is a legal source for
    ``to_status`` (optionally narrowed by ``expected``) and every extra
    criterion holds. Zero affected rows raises ``IllegalTransition``.
    """
    if to_status not in SUBSCRIPTION_STATUSES:
        raise ValueError(f"Unknown subscription status: {to_status}")
    sources = [s for s, targets in ALLOWED_TRANSITIONS.items() if to_status in targets]
    if expected is not None:
        expected = (expected,) if isinstance(expected, str) else tuple(expected)
        sources = [s for s in sources if s in expected]
    if not sources:
        raise IllegalTransition(f"No legal transition into {to_status} from {expected}")
    if to_status == SUB_STATUS_ACTIVE and not fields.get('subscription_url'):
        raise IllegalTransition('A subscription cannot become active without a subscription_url')

    values = dict(fields)
    values['status'] = to_status
    values['updated_at'] = datetime.utcnow()
    updated = Subscription.query.filter(
        Subscription.id == subscription_id,
        Subscription.status.in_(sources),
        *criteria
    ).update(values, synchronize_session=False)
    if not updated:
        db.session.rollback()
        current = db.session.get(Subscription, subscription_id)
        if not current:
            raise NotFound('Subscription not found')
        raise IllegalTransition(
            f"Cannot move subscription from {current.status} to {to_status}",
            details={'status': current.status, 'requested': to_status},
        )
    db.session.commit()
    subscription = db.session.get(Subscription, subscription_id)
    db.session.refresh(subscription)
    return subscription


def update_subscription_fields(subscription_id, **fields):
    fields['updated_at'] = datetime.utcnow()
    Subscription.query.filter_by(id=subscription_id).update(fields, synchronize_session=False)
    db.session.commit()
    subscription = db.session.get(Subscription, subscription_id)
    db.session.refresh(subscription)
    return subscription


def record_payment_event(provider, reference, subscription_id, payload=None):
    """Claim a provider reference. Returns False when it was already processed."""
    db.session.add(PaymentEvent(
        provider=provider,
        reference=str(reference),
        subscription_id=subscription_id,
        payload=json.dumps(payload, default=str) if payload is not None else None,
    ))
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        logger.info(f"Duplicate {provider} event for reference {reference}; skipping")
        return False
    return True


# --- PANELS ---

def select_panel(panel_type, panel_id=None):
    if panel_id not in (None, ''):
        try:
            panel = db.session.get(PanelServer, int(panel_id))
        except (TypeError, ValueError):
            panel = None
        if not panel:
            raise NotFound(f"Panel {panel_id} not found")
        if not panel.is_active:
            raise Conflict(f"Panel {panel.name} is not active")
        if panel_type and panel.type != panel_type:
            raise Conflict(f"Panel {panel.name} is a {panel.type} panel, not {panel_type}")
        return panel

    query = PanelServer.query.filter_by(type=panel_type, is_active=True).order_by(
        PanelServer.created_at.asc(), PanelServer.id.asc()
    )
    panel = query.filter_by(health_status='online').first()
    if panel:
        return panel
    panel = query.first()
    if panel:
        logger.warning(f"No online {panel_type} panel; falling back to {panel.name} ({panel.health_status})")
        return panel
    raise NotFound(f"No active {panel_type} panel available")


def resolve_panel_for_plan(plan):
    if plan is None:
        return select_panel(app.config['DEFAULT_PANEL_TYPE'])
    mappings = PlanPanelMapping.query.filter_by(plan_id=plan.id).order_by(
        PlanPanelMapping.is_primary.desc(), PlanPanelMapping.id.asc()
    ).all()
    for mapping in mappings:
        if mapping.panel and mapping.panel.is_active:
            return mapping.panel
    if plan.assigned_panel_id:
        return select_panel(plan.api_type, plan.assigned_panel_id)
    return select_panel(plan.api_type or app.config['DEFAULT_PANEL_TYPE'])


def mark_panel_health(panel, error=None):
    if error is None or isinstance(error, PanelRejected):
        health = 'online'
    elif isinstance(error, (AuthError, PanelUnavailable)):
        health = 'offline'
    else:
        health = 'degraded'
    try:
        PanelServer.query.filter_by(id=panel.id).update(
            {'health_status': health, 'last_health_check': datetime.utcnow()},
            synchronize_session=False,
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception(f"Failed to update health for panel {panel.id}")


def panel_client_for(panel, subscription_id=None, source='panel'):
    return get_panel_client(
        panel,
        session=get_http_session(),
        log_sink=make_creation_log_sink(subscription_id, source),
    )


# --- ORCHESTRATION ---

def provision_subscription(subscription):
    """Create the VPN account for a confirmed order.

    Renewals extend the existing user on the panel it already lives on.
    Success writes the subscription URL, expiry and ``active`` in one UPDATE.
    Any failure leaves the row in ``pending_activation`` with a note so the
    account can be retried without charging again.
    """
    plan = db.session.get(SubscriptionPlan, subscription.plan_id) if subscription.plan_id else None
    panel = None
    try:
        if subscription.is_renewal:
            panel = db.session.get(PanelServer, subscription.panel_id) if subscription.panel_id else None
            if not panel:
                raise NotFound('The panel holding this account no longer exists')
            client = panel_client_for(panel, subscription.id, 'renewal')
            result = client.update_user(subscription.username, subscription.data_limit_gb, subscription.duration_days)
        else:
            panel = resolve_panel_for_plan(plan)
            client = panel_client_for(panel, subscription.id, 'provision')
            result = client.create_user(
                subscription.username,
                subscription.data_limit_gb,
                subscription.duration_days,
                notes=f"mobile={subscription.mobile} subscription={subscription.id}",
            )
    except Exception as e:
        if not isinstance(e, StorefrontError):
            logger.exception(f"Unexpected provisioning error for {subscription.id}")
        else:
            logger.error(f"Provisioning failed for {subscription.id}: {e.message}")
        if panel is not None:
            mark_panel_health(panel, e)
        envelope = to_envelope(e)
        note = append_note(subscription.notes, f"Provisioning failed: {envelope['error']}")
        if subscription.status == SUB_STATUS_PENDING_ACTIVATION:
            subscription = update_subscription_fields(subscription.id, notes=note)
        else:
            subscription = transition_subscription(
                subscription.id, SUB_STATUS_PENDING_ACTIVATION, expected=subscription.status, notes=note,
            )
        return subscription, envelope

    mark_panel_health(panel)
    expire_at = None
    if result.get('expire'):
        expire_at = datetime.fromtimestamp(int(result['expire']), timezone.utc).replace(tzinfo=None)
    subscription = transition_subscription(
        subscription.id, SUB_STATUS_ACTIVE,
        expected=(SUB_STATUS_PENDING, SUB_STATUS_PAID, SUB_STATUS_PENDING_ACTIVATION),
        subscription_url=result['subscription_url'],
        expire_at=expire_at,
        marzban_user_created=True,
        panel_id=panel.id,
    )
    outcome = dict(result)
    outcome.update({'success': True, 'panel_type': panel.type, 'panel_name': panel.name, 'panel_id': panel.id})
    return subscription, outcome


def notify_activation(subscription):
    dispatch_webhook(EVENT_NEW_SUBSCRIPTION, subscription)
    if subscription.email:
        dispatch_email(
            'user_confirmation', subscription, subscription.email,
            'Your VPN subscription is ready', 'emails/user_confirmation.html',
        )


def confirm_payment(subscription, provider, reference, **fields):
    """Credit a verified payment once, then provision."""
    if not record_payment_event(provider, reference, subscription.id, payload=fields):
        current = db.session.get(Subscription, subscription.id)
        return current, {'success': True, 'duplicate': True}
    subscription = transition_subscription(
        subscription.id, SUB_STATUS_PAID,
        expected=(SUB_STATUS_PENDING, SUB_STATUS_PENDING_MANUAL),
        **fields
    )
    logger.info(f"Payment confirmed for {subscription.id} via {provider} ({reference})")
    subscription, provisioning = provision_subscription(subscription)
    if provisioning.get('success'):
        notify_activation(subscription)
    return subscription, provisioning


def fail_payment(subscription, reason):
    logger.warning(f"Payment failed for {subscription.id}: {reason}")
    return transition_subscription(
        subscription.id, SUB_STATUS_FAILED,
        expected=(SUB_STATUS_PENDING, SUB_STATUS_PAID),
        notes=append_note(subscription.notes, f"Payment failed: {reason}"),
    )


def reopen_for_checkout(subscription):
    if subscription.status == SUB_STATUS_FAILED:
        return transition_subscription(subscription.id, SUB_STATUS_PENDING, expected=SUB_STATUS_FAILED)
    if subscription.status != SUB_STATUS_PENDING:
        raise Conflict(f"Subscription is {subscription.status} and cannot be paid")
    return subscription


def resolve_discount(code, plan):
    if not code:
        return None
    discount = DiscountCode.query.filter(func.upper(DiscountCode.code) == str(code).strip().upper()).first()
    if not discount or not discount.is_active:
        raise NotFound('Discount code is not valid')
    if discount.expires_at and discount.expires_at < datetime.utcnow():
        raise Conflict('Discount code has expired')
    if discount.total_usage_limit and (discount.current_usage_count or 0) >= discount.total_usage_limit:
        raise Conflict('Discount code usage limit reached')
    applicable = load_json_field(discount.applicable_plans, [])
    if applicable and (plan is None or plan.plan_id not in applicable):
        raise Conflict('Discount code does not apply to this plan')
    return discount


def compute_price(plan, data_limit_gb, discount=None):
    price_per_gb = plan.price_per_gb if plan and plan.price_per_gb is not None else DEFAULT_PRICE_PER_GB
    price = int(round(float(data_limit_gb) * price_per_gb))
    if discount:
        if discount.discount_type == 'percentage':
            price -= int(price * min(discount.discount_value, 100) / 100)
        else:
            price -= discount.discount_value
    return max(0, price)


def find_plan(plan_ref):
    if plan_ref in (None, ''):
        return None
    plan = None
    if str(plan_ref).isdigit():
        plan = db.session.get(SubscriptionPlan, int(plan_ref))
    if plan is None:
        plan = SubscriptionPlan.query.filter_by(plan_id=str(plan_ref)).first()
    if not plan or not plan.is_active:
        raise NotFound('Plan not found')
    return plan


def create_subscription(username, mobile, data_limit_gb, duration_days, plan=None, email=None,
                        protocol=None, notes=None, discount=None, renewal_of=None):
    original_price = compute_price(plan, data_limit_gb)
    price = compute_price(plan, data_limit_gb, discount)
    subscription = Subscription(
        username=username,
        mobile=mobile,
        email=email,
        plan_id=plan.id if plan else None,
        data_limit_gb=data_limit_gb,
        duration_days=duration_days,
        price_toman=price,
        original_price_toman=original_price,
        discount_code=discount.code if discount else None,
        protocol=protocol,
        notes=notes,
        status=SUB_STATUS_PENDING,
        payment_method='free' if price == 0 else None,
        is_renewal=renewal_of is not None,
        panel_id=renewal_of.panel_id if renewal_of is not None else None,
    )
    db.session.add(subscription)
    if discount:
        DiscountCode.query.filter_by(id=discount.id).update(
            {DiscountCode.current_usage_count: func.coalesce(DiscountCode.current_usage_count, 0) + 1},
            synchronize_session=False,
        )
    db.session.commit()
    logger.info(f"Subscription {subscription.id} created for {mobile} ({price} Toman)")

    provisioning = None
    if price == 0:
        subscription, provisioning = provision_subscription(subscription)
        if provisioning.get('success'):
            notify_activation(subscription)
    return subscription, provisioning


def find_pending_subscription(subscription_id=None, mobile=None):
    if subscription_id:
        subscription = db.session.get(Subscription, str(subscription_id))
        if not subscription:
            raise NotFound('Subscription not found')
        return subscription
    if mobile:
        subscription = Subscription.query.filter(
            Subscription.mobile == mobile,
            Subscription.status.in_((SUB_STATUS_PENDING, SUB_STATUS_FAILED)),
        ).order_by(Subscription.created_at.desc()).first()
        if subscription:
            return subscription
    raise NotFound('No pending subscription found')


def decision_links(subscription, token):
    base = public_url('/api/admin/decision')
    return (
        f"{base}?id={subscription.id}&action=approve&token={token}",
        f"{base}?id={subscription.id}&action=reject&token={token}",
    )


def apply_admin_decision(subscription_id, action, token):
    if subscription_id:
        subscription = db.session.get(Subscription, str(subscription_id))
    else:
        subscription = Subscription.query.filter_by(admin_decision_token=str(token)).first()
    if not subscription:
        raise NotFound('Subscription not found')
    stored = subscription.admin_decision_token
    if not ManualGateway().verify_payment(stored, token=token)['success']:
        raise NotFound('Invalid or already used decision token')
    if subscription.admin_decision != DECISION_PENDING:
        raise Conflict(f"Decision already recorded: {subscription.admin_decision}")

    claim = (Subscription.admin_decision == DECISION_PENDING, Subscription.admin_decision_token == stored)
    now = datetime.utcnow()
    if action == 'reject':
        subscription = transition_subscription(
            subscription.id, SUB_STATUS_REJECTED,
            expected=(SUB_STATUS_PENDING_MANUAL, SUB_STATUS_PENDING),
            criteria=claim,
            admin_decision=DECISION_REJECTED, admin_decision_token=None, admin_decided_at=now,
        )
        logger.info(f"Subscription {subscription.id} rejected by admin")
        dispatch_webhook(EVENT_SUBSCRIPTION_REJECTED, subscription)
        if subscription.email:
            dispatch_email(
                'user_rejection', subscription, subscription.email,
                'Your VPN payment was not approved', 'emails/user_rejection.html',
            )
        return {'success': True, 'action': 'reject', 'partial': False, 'subscription': subscription.to_dict()}

    subscription = transition_subscription(
        subscription.id, SUB_STATUS_PAID,
        expected=(SUB_STATUS_PENDING_MANUAL, SUB_STATUS_PENDING),
        criteria=claim,
        admin_decision=DECISION_APPROVED, admin_decision_token=None, admin_decided_at=now,
    )
    record_payment_event('manual', stored, subscription.id)
    logger.info(f"Subscription {subscription.id} approved by admin")
    subscription, provisioning = provision_subscription(subscription)
    dispatch_webhook(EVENT_SUBSCRIPTION_APPROVED, subscription, provisioned=bool(provisioning.get('success')))
    if provisioning.get('success'):
        notify_activation(subscription)
        return {'success': True, 'action': 'approve', 'partial': False, 'subscription': subscription.to_dict()}
    return {
        'success': True,
        'action': 'approve',
        'partial': True,
        'error': provisioning.get('error'),
        'subscription': subscription.to_dict(),
    }


# --- NOTIFICATIONS ---

def webhook_targets():
    configs = WebhookConfig.query.filter_by(is_enabled=True).order_by(
        WebhookConfig.is_primary.desc(), WebhookConfig.id.asc()
    ).all()
    targets = [(c.id, c.webhook_url, c.method, load_json_field(c.headers, {})) for c in configs]
    if not targets and app.config.get('WEBHOOK_URL'):
        targets.append((None, app.config['WEBHOOK_URL'], 'POST', {}))
    return targets


def send_logged_webhook(event, payload, config_id, url, method='POST', headers=None):
    result = post_webhook(url, payload, method=method, headers=headers, session=get_http_session())
    record_audit(
        WebhookLog,
        webhook_config_id=config_id,
        trigger_type=event,
        webhook_url=url,
        payload=json.dumps(payload, default=str),
        response_status=result['status_code'],
        response_body=result['body'],
        success=result['success'],
        error_message=result['error'],
    )
    return result


def dispatch_webhook(event, subscription, **extra):
    """Send ``event`` to every enabled webhook. Failures never reach the caller."""
    try:
        targets = webhook_targets()
        if not targets:
            logger.info(f"No webhook configured; skipping {event}")
            return []
        payload = build_webhook_payload(
            event,
            subscription.to_dict(include_private=True),
            plan=subscription.plan.to_dict() if subscription.plan else None,
            panel=subscription.panel.to_dict() if subscription.panel else None,
            **extra
        )
        return [send_logged_webhook(event, payload, *target) for target in targets]
    except Exception:
        db.session.rollback()
        logger.exception(f"Webhook dispatch failed for {event}")
        return []


def dispatch_email(email_type, subscription, recipient, subject, template, **context):
    try:
        html = render_template(template, subscription=subscription, **context)
        result = send_email(
            app.config.get('RESEND_API_KEY'), recipient, subject, html,
            sender=app.config.get('EMAIL_FROM'), session=get_http_session(),
        )
    except Exception as e:
        logger.exception(f"Email {email_type} failed for {recipient}")
        result = {'success': False, 'status_code': None, 'body': None, 'error': str(e)}
    record_audit(
        EmailNotification,
        subscription_id=subscription.id if subscription else None,
        recipient_email=recipient,
        email_type=email_type,
        email_data=json.dumps({'subject': subject, 'status_code': result.get('status_code')}),
        success=result['success'],
        error_message=result['error'],
    )
    return result


# --- AUTH ROUTES ---

@app.route('/login', methods=['POST'])
@limiter.limit("10 per minute")
def login():
    data = request_data()
    user = Admin.query.filter_by(username=data.get('username'), enabled=True).first()
    if user and user.check_password(data.get('password') or ''):
        session.permanent = True
        session['admin_id'] = user.id
        session['admin_username'] = user.username
        user.last_login = datetime.utcnow()
        db.session.commit()
        return jsonify({"success": True})
    app.logger.warning(f"Failed login attempt for user: {data.get('username')} from IP: {request.remote_addr}")
    return jsonify({"success": False, "error": "Invalid credentials"}), 401


@app.route('/logout')
def logout():
    session.clear()
    return jsonify({"success": True})


# --- ORDER ROUTES ---

@app.route('/api/subscriptions', methods=['POST'])
@limiter.limit("20 per minute")
def create_subscription_endpoint():
    data = request_data()
    username = normalize_username(data.get('username'))
    if not username:
        return jsonify({"success": False, "error": "Username must be 3-32 letters, digits or underscores"}), 400
    mobile = normalize_mobile(data.get('mobile'))
    if not mobile:
        return jsonify({"success": False, "error": "A valid mobile number is required"}), 400

    plan = find_plan(data.get('plan_id'))
    data_limit_gb = whole_number_field(data, 'data_limit_gb', 'dataLimitGB')
    duration_days = whole_number_field(data, 'duration_days', 'durationDays')
    if data_limit_gb is None and plan:
        data_limit_gb = plan.default_data_limit_gb
    if duration_days is None and plan:
        duration_days = plan.default_duration_days
    if not data_limit_gb or data_limit_gb <= 0:
        return jsonify({"success": False, "error": "data_limit_gb must be positive"}), 400
    if not duration_days or not (MIN_DURATION_DAYS <= duration_days <= MAX_DURATION_DAYS):
        return jsonify({"success": False, "error": f"duration_days must be between {MIN_DURATION_DAYS} and {MAX_DURATION_DAYS}"}), 400

    discount = resolve_discount(data.get('discount_code'), plan)
    subscription, provisioning = create_subscription(
        username, mobile, data_limit_gb, duration_days,
        plan=plan,
        email=str(data.get('email') or '').strip() or None,
        protocol=data.get('protocol'),
        notes=data.get('notes'),
        discount=discount,
    )
    return jsonify({
        "success": True,
        "subscription": subscription.to_dict(),
        "requires_payment": subscription.price_toman > 0,
        "provisioning": provisioning,
    }), 201


@app.route('/api/subscriptions/renew', methods=['POST'])
@limiter.limit("10 per minute")
def renew_subscription_endpoint():
    """Open a renewal order for an account that already exists on a panel.

    The order goes through the same payment routes as a new one; once paid
    (or straight away when free) the panel user gets the extra traffic and days.
    """
    data = request_data()
    username = str(data.get('username') or '').strip()
    mobile = normalize_mobile(data.get('mobile'))
    if not username or not mobile:
        return jsonify({"success": False, "error": "username and a valid mobile number are required"}), 400
    data_limit_gb = whole_number_field(
        data, 'data_limit_gb', 'dataLimitGB', minimum=1, maximum=RENEWAL_MAX_DATA_GB,
    )
    duration_days = whole_number_field(
        data, 'duration_days', 'durationDays', minimum=MIN_DURATION_DAYS, maximum=RENEWAL_MAX_DURATION_DAYS,
    )
    if data_limit_gb is None or duration_days is None:
        return jsonify({"success": False, "error": "data_limit_gb and duration_days are required"}), 400

    previous = Subscription.query.filter_by(
        username=username, mobile=mobile, marzban_user_created=True,
    ).order_by(Subscription.created_at.desc()).first()
    if not previous or not previous.panel_id:
        return jsonify({"success": False, "error": "No subscription found for this username and mobile"}), 404
    panel = db.session.get(PanelServer, previous.panel_id)
    if not panel or not panel.is_active:
        raise Conflict('The panel holding this account is not available')
    try:
        panel_client_for(panel, previous.id, 'renewal').get_user(username)
    except StorefrontError as e:
        if not isinstance(e, NotFound):
            mark_panel_health(panel, e)
        raise

    plan = find_plan(data.get('plan_id')) if data.get('plan_id') else previous.plan
    discount = resolve_discount(data.get('discount_code'), plan)
    subscription, provisioning = create_subscription(
        username, mobile, data_limit_gb, duration_days,
        plan=plan,
        email=str(data.get('email') or '').strip() or previous.email,
        protocol=previous.protocol,
        notes=f"Renewal of {previous.id}",
        discount=discount,
        renewal_of=previous,
    )
    return jsonify({
        "success": True,
        "subscription": subscription.to_dict(),
        "requires_payment": subscription.price_toman > 0,
        "provisioning": provisioning,
    }), 201


@app.route('/api/subscriptions/<subscription_id>', methods=['GET'])
def get_subscription_endpoint(subscription_id):
    subscription = db.session.get(Subscription, subscription_id)
    if not subscription:
        return jsonify({"success": False, "error": "Subscription not found"}), 404
    return jsonify({"success": True, "subscription": subscription.to_dict()})


@app.route('/api/subscriptions/<subscription_id>/qrcode', methods=['GET'])
def subscription_qrcode(subscription_id):
    subscription = db.session.get(Subscription, subscription_id)
    if not subscription or not subscription.subscription_url:
        return jsonify({"success": False, "error": "Subscription link not available"}), 404
    try:
        return jsonify({"success": True, "qrcode": make_qr_data_uri(subscription.subscription_url)})
    except Exception as e:
        app.logger.error(f"QR Code error: {str(e)}")
        return jsonify({"success": False, "error": "QR code could not be generated"}), 500


# --- ZARINPAL ---

@app.route('/api/payments/zarinpal/request', methods=['POST'])
@limiter.limit("20 per minute")
def zarinpal_request():
    data = request_data()
    mobile = normalize_mobile(data.get('mobile'))
    subscription = find_pending_subscription(data.get('subscription_id'), mobile)
    amount = whole_number_field(data, 'amount')
    if amount is None:
        amount = subscription.price_toman
    if amount != subscription.price_toman:
        return jsonify({"success": False, "error": "Amount does not match the subscription price"}), 400
    if amount <= 0:
        return jsonify({"success": False, "error": "Free subscriptions do not need payment"}), 400
    subscription = reopen_for_checkout(subscription)

    gateway = get_zarinpal_gateway()
    result = gateway.create_payment(amount, {
        'callback_url': data.get('callback_url') or public_url('/api/payments/zarinpal/verify'),
        'mobile': subscription.mobile,
        'email': subscription.email,
        'description': f"VPN subscription {subscription.username}",
    })
    if not result['success']:
        app.logger.error(f"Zarinpal request failed for {subscription.id}: {result['error']}")
        return public_failure(result)

    Subscription.query.filter_by(id=subscription.id, status=SUB_STATUS_PENDING).update({
        'zarinpal_authority': result['reference'],
        'provider_amount': result['details']['amount_rial'],
        'payment_method': 'zarinpal',
        'updated_at': datetime.utcnow(),
    }, synchronize_session=False)
    db.session.commit()
    return jsonify({
        "success": True,
        "authority": result['reference'],
        "gateway_url": result['redirect_url'],
        "subscription_id": subscription.id,
    })


@app.route('/api/payments/zarinpal/verify', methods=['GET', 'POST'])
@limiter.limit("60 per minute")
def zarinpal_verify():
    data = request_data() if request.method == 'POST' else {}
    authority = request.args.get('Authority') or data.get('authority')
    status = (request.args.get('Status') or data.get('status') or 'OK').upper()
    claimed_amount = whole_number_field({'amount': data.get('amount', request.args.get('amount'))}, 'amount')
    as_html = request.method == 'GET'

    def respond(ok, message, code=200, **extra):
        if as_html:
            return render_template('payment_result.html', ok=ok, message=message, **extra), code
        body = {"success": ok}
        body['message' if ok else 'error'] = message
        body.update(extra)
        return jsonify(body), code

    if not authority:
        return respond(False, 'Authority is required', 400)
    subscription = Subscription.query.filter_by(zarinpal_authority=authority).first()
    if not subscription:
        return respond(False, 'Payment not found', 404)

    if status != 'OK':
        if subscription.status == SUB_STATUS_PENDING:
            transition_subscription(
                subscription.id, SUB_STATUS_CANCELLED, expected=SUB_STATUS_PENDING,
                notes=append_note(subscription.notes, 'Payment cancelled at the bank'),
            )
        return respond(False, 'Payment was cancelled', 400)

    if subscription.zarinpal_ref_id and subscription.status in (SUB_STATUS_ACTIVE, SUB_STATUS_PENDING_ACTIVATION):
        return respond(True, 'Payment already verified', ref_id=subscription.zarinpal_ref_id,
                       subscription=subscription.to_dict())
    if subscription.status != SUB_STATUS_PENDING:
        return respond(False, f"Payment is already {subscription.status}", 409)

    expected_amount = subscription.provider_amount or subscription.price_toman * 10
    if claimed_amount is not None and claimed_amount != expected_amount:
        fail_payment(subscription, f"amount mismatch (got {claimed_amount}, expected {expected_amount} Rial)")
        return respond(False, 'Payment amount does not match', 400)

    result = get_zarinpal_gateway().verify_payment(authority, expected_amount)
    if not result['success']:
        fail_payment(subscription, result['error'])
        return respond(False, 'Payment could not be verified', 400)

    subscription, provisioning = confirm_payment(
        subscription, 'zarinpal', authority, zarinpal_ref_id=result['provider_ref_id'],
    )
    return respond(
        True, 'Payment verified',
        ref_id=subscription.zarinpal_ref_id,
        subscription=subscription.to_dict(),
        provisioning={k: v for k, v in provisioning.items() if k != 'details'},
    )


@app.route('/api/payments/zarinpal/contract', methods=['POST'])
@limiter.limit("10 per minute")
def zarinpal_contract_request():
    data = request_data()
    mobile = normalize_mobile(data.get('mobile'))
    max_amount = whole_number_field(data, 'max_amount')
    if not mobile or not max_amount:
        return jsonify({"success": False, "error": "mobile and max_amount are required"}), 400
    expire_days = whole_number_field(data, 'expire_days', default=30, minimum=1)

    result = get_zarinpal_gateway().create_recurring_contract(
        mobile, max_amount,
        data.get('callback_url') or public_url('/api/payments/zarinpal/contract/callback'),
        expire_days=expire_days,
    )
    if not result['success']:
        app.logger.error(f"Payman contract request failed for {mobile}: {result['error']}")
        return public_failure(result)

    details = result['details']
    contract = ZarinpalContract(
        user_mobile=mobile,
        payman_authority=result['reference'],
        max_amount=details['max_amount'],
        max_daily_count=details['max_daily_count'],
        max_monthly_count=details['max_monthly_count'],
        expire_at=parse_iso_datetime(details['expire_at']),
        status=CONTRACT_STATUS_PENDING,
    )
    db.session.add(contract)
    db.session.commit()
    return jsonify({
        "success": True,
        "payman_authority": contract.payman_authority,
        "gateway_url": result['redirect_url'],
        "contract": contract.to_dict(),
    })


@app.route('/api/payments/zarinpal/contract/callback', methods=['GET', 'POST'])
def zarinpal_contract_callback():
    data = request_data() if request.method == 'POST' else {}
    authority = request.args.get('payman_authority') or data.get('payman_authority')
    status = (request.args.get('status') or data.get('status') or '').upper()
    contract = ZarinpalContract.query.filter_by(payman_authority=authority).first() if authority else None
    if not contract:
        return jsonify({"success": False, "error": "Contract not found"}), 404
    if contract.status == CONTRACT_STATUS_ACTIVE:
        return jsonify({"success": True, "contract": contract.to_dict()})
    if status != 'OK':
        contract.status = CONTRACT_STATUS_FAILED
        db.session.commit()
        return jsonify({"success": False, "error": "Contract was not signed"}), 400

    result = get_zarinpal_gateway().get_signature(authority)
    if not result['success']:
        contract.status = CONTRACT_STATUS_FAILED
        db.session.commit()
        return public_failure(result)
    contract.signature = result['signature']
    contract.bank_code = result['details'].get('bank_code') or request.args.get('bank_code')
    contract.status = CONTRACT_STATUS_ACTIVE
    contract.signed_at = datetime.utcnow()
    db.session.commit()
    logger.info(f"Payman contract {contract.id} signed for {contract.user_mobile}")
    return jsonify({"success": True, "contract": contract.to_dict()})


def _active_contract(data):
    contract = None
    contract_id = whole_number_field(data, 'contract_id')
    if contract_id:
        contract = db.session.get(ZarinpalContract, contract_id)
    elif data.get('mobile'):
        contract = ZarinpalContract.query.filter_by(
            user_mobile=normalize_mobile(data.get('mobile')), status=CONTRACT_STATUS_ACTIVE
        ).order_by(ZarinpalContract.signed_at.desc()).first()
    if not contract or contract.status != CONTRACT_STATUS_ACTIVE or not contract.signature:
        raise NotFound('No active contract found')
    return contract


@app.route('/api/payments/zarinpal/contract/checkout', methods=['POST'])
@limiter.limit("10 per minute")
def zarinpal_contract_checkout():
    data = request_data()
    contract = _active_contract(data)
    subscription = reopen_for_checkout(find_pending_subscription(data.get('subscription_id'), contract.user_mobile))
    gateway = get_zarinpal_gateway()
    if gateway.toman_to_rial(subscription.price_toman) > contract.max_amount:
        return jsonify({"success": False, "error": "Amount exceeds the contract limit"}), 400

    created = gateway.create_payment(subscription.price_toman, {
        'callback_url': public_url('/api/payments/zarinpal/verify'),
        'mobile': contract.user_mobile,
        'description': f"VPN subscription {subscription.username} (direct debit)",
    })
    if not created['success']:
        return public_failure(created)
    authority = created['reference']
    subscription = update_subscription_fields(
        subscription.id,
        zarinpal_authority=authority,
        provider_amount=created['details']['amount_rial'],
        payment_method='zarinpal_payman',
    )
    charged = gateway.direct_checkout(authority, contract.signature)
    if not charged['success']:
        fail_payment(subscription, charged['error'])
        return public_failure(charged)
    subscription, provisioning = confirm_payment(
        subscription, 'zarinpal', authority, zarinpal_ref_id=charged['provider_ref_id'],
    )
    return jsonify({"success": True, "subscription": subscription.to_dict(), "provisioning": provisioning})


@app.route('/api/payments/zarinpal/contract/cancel', methods=['POST'])
def zarinpal_contract_cancel():
    contract = _active_contract(request_data())
    result = get_zarinpal_gateway().cancel_contract(contract.signature)
    if not result['success']:
        return public_failure(result)
    contract.status = CONTRACT_STATUS_CANCELLED
    contract.cancelled_at = datetime.utcnow()
    db.session.commit()
    return jsonify({"success": True, "contract": contract.to_dict()})


@app.route('/api/payments/zarinpal/banks', methods=['GET'])
def zarinpal_banks():
    result = get_zarinpal_gateway().list_banks()
    if not result['success']:
        return public_failure(result)
    return jsonify(result)


# --- NOWPAYMENTS ---

def settle_crypto_payment(subscription, payment_id, payment_status):
    provisioning = None
    if payment_status == 'finished' and subscription.status in (SUB_STATUS_PENDING, SUB_STATUS_PAID):
        subscription, provisioning = confirm_payment(subscription, 'nowpayments', payment_id)
    elif payment_status in NOWPAYMENTS_FAILED_STATUSES and subscription.status == SUB_STATUS_PENDING:
        subscription = fail_payment(subscription, f"NOWPayments status {payment_status}")
    return subscription, provisioning


def _run_crypto_poller(subscription_id, payment_id):
    with app.app_context():
        try:
            gateway = get_nowpayments_gateway()

            def on_success(result):
                subscription = db.session.get(Subscription, subscription_id)
                if subscription:
                    settle_crypto_payment(subscription, payment_id, 'finished')

            outcome = poll_payment_status(gateway, payment_id, on_success)
            if outcome == 'failed':
                subscription = db.session.get(Subscription, subscription_id)
                if subscription and subscription.status == SUB_STATUS_PENDING:
                    fail_payment(subscription, f"NOWPayments payment {payment_id} failed")
        except Exception:
            db.session.rollback()
            logger.exception(f"Crypto poller crashed for payment {payment_id}")
        finally:
            db.session.remove()


def start_crypto_poller(subscription_id, payment_id):
    t = threading.Thread(target=_run_crypto_poller, args=(subscription_id, payment_id), daemon=True)
    t.start()
    return t


@app.route('/api/payments/nowpayments/create', methods=['POST'])
@limiter.limit("10 per minute")
def nowpayments_create():
    data = request_data()
    subscription = reopen_for_checkout(
        find_pending_subscription(data.get('subscription_id'), normalize_mobile(data.get('mobile')))
    )
    if subscription.price_toman <= 0:
        return jsonify({"success": False, "error": "Free subscriptions do not need payment"}), 400
    meta = {
        'order_id': subscription.id,
        'description': f"VPN subscription {subscription.username}",
        'ipn_callback_url': app.config.get('NOWPAYMENTS_IPN_URL'),
    }
    result = get_nowpayments_gateway().create_payment(subscription.price_toman, meta)
    if not result['success']:
        app.logger.error(f"NOWPayments create failed for {subscription.id}: {result['error']}")
        return public_failure(result)
    update_subscription_fields(
        subscription.id,
        provider_reference=result['reference'],
        provider_amount=result['details']['price_amount'],
        payment_method='crypto',
        notes=append_note(subscription.notes, f"NOWPayments payment_id: {result['reference']}"),
    )
    if not os.environ.get('DISABLE_BACKGROUND_THREADS'):
        start_crypto_poller(subscription.id, result['reference'])
    return jsonify({"success": True, "subscription_id": subscription.id, "payment": result['details']})


@app.route('/api/payments/nowpayments/status/<payment_id>', methods=['GET'])
@limiter.limit("30 per minute")
def nowpayments_status(payment_id):
    subscription = Subscription.query.filter_by(provider_reference=str(payment_id), payment_method='crypto').first()
    if not subscription:
        return jsonify({"success": False, "error": "Payment not found"}), 404
    result = get_nowpayments_gateway().get_status(payment_id)
    if not result['success']:
        return public_failure(result)
    payment_status = result['status']
    subscription, provisioning = settle_crypto_payment(subscription, payment_id, payment_status)
    return jsonify({
        "success": True,
        "payment_status": payment_status,
        "subscription": subscription.to_dict(),
        "provisioning": provisioning,
    })


# --- STRIPE ---

@app.route('/api/payments/stripe/checkout', methods=['POST'])
@limiter.limit("10 per minute")
def stripe_checkout():
    data = request_data()
    subscription = reopen_for_checkout(
        find_pending_subscription(data.get('subscription_id'), normalize_mobile(data.get('mobile')))
    )
    if subscription.price_toman <= 0:
        return jsonify({"success": False, "error": "Free subscriptions do not need payment"}), 400
    result = get_stripe_gateway().create_payment(subscription.price_toman, {
        'subscription_id': subscription.id,
        'mobile': subscription.mobile,
        'success_url': data.get('success_url') or public_url('/payment/success?session_id={CHECKOUT_SESSION_ID}'),
        'cancel_url': data.get('cancel_url') or public_url('/payment/cancel'),
    })
    if not result['success']:
        return public_failure(result)
    update_subscription_fields(
        subscription.id,
        provider_reference=result['reference'],
        provider_amount=result['details']['amount_cents'],
        payment_method='stripe',
    )
    return jsonify({"success": True, "session_id": result['reference'], "url": result['redirect_url']})


@app.route('/api/payments/stripe/verify', methods=['POST'])
@limiter.limit("30 per minute")
def stripe_verify():
    session_id = request_data().get('session_id')
    if not session_id:
        return jsonify({"success": False, "error": "session_id is required"}), 400
    result = get_stripe_gateway().verify_payment(session_id)
    if not result['success']:
        return public_failure(result)

    metadata = result['details'].get('metadata') or {}
    subscription = None
    if metadata.get('subscription_id'):
        subscription = db.session.get(Subscription, metadata['subscription_id'])
    if not subscription:
        subscription = Subscription.query.filter_by(provider_reference=session_id).first()
    if not subscription and metadata.get('mobile'):
        subscription = Subscription.query.filter_by(
            mobile=metadata['mobile'], status=SUB_STATUS_PENDING
        ).order_by(Subscription.created_at.desc()).first()
    if not subscription:
        return jsonify({"success": False, "error": "Subscription not found"}), 404

    provisioning = None
    if subscription.status == SUB_STATUS_PENDING:
        subscription, provisioning = confirm_payment(
            subscription, 'stripe', session_id, provider_reference=session_id, payment_method='stripe',
        )
    return jsonify({"success": True, "subscription": subscription.to_dict(), "provisioning": provisioning})


# --- MANUAL PAYMENT ---

@app.route('/api/payments/manual', methods=['POST'])
@limiter.limit("10 per minute")
def manual_payment():
    data = request_data()
    subscription = reopen_for_checkout(
        find_pending_subscription(data.get('subscription_id'), normalize_mobile(data.get('mobile')))
    )
    receipt_path = save_receipt_file(request.files.get('receipt'))
    if not receipt_path:
        return jsonify({"success": False, "error": "A receipt image (png, jpg, webp, heic or pdf) is required"}), 400

    token = ManualGateway().create_payment(subscription.price_toman, {'receipt_image_url': receipt_path})['reference']
    subscription = transition_subscription(
        subscription.id, SUB_STATUS_PENDING_MANUAL, expected=SUB_STATUS_PENDING,
        admin_decision=DECISION_PENDING,
        admin_decision_token=token,
        receipt_image_url=receipt_path,
        payment_method='manual',
    )
    approve_link, reject_link = decision_links(subscription, token)
    admin_email = app.config.get('ADMIN_NOTIFY_EMAIL')
    if admin_email:
        dispatch_email(
            'admin_manual_payment', subscription, admin_email,
            f"Manual payment awaiting approval: {subscription.username}",
            'emails/admin_manual_payment.html',
            approve_link=approve_link, reject_link=reject_link,
            receipt_link=public_url(f"/api/admin/subscriptions/{subscription.id}/receipt"),
        )
    else:
        logger.warning('ADMIN_NOTIFY_EMAIL is not configured; manual payment email skipped')
    dispatch_webhook(EVENT_MANUAL_PAYMENT_APPROVAL, subscription, approve_link=approve_link, reject_link=reject_link)
    return jsonify({"success": True, "subscription": subscription.to_dict()})


@app.route('/api/admin/decision', methods=['GET', 'POST'])
@limiter.limit("30 per minute")
def admin_decision():
    params = request.args.to_dict()
    if request.method == 'POST':
        params.update(request_data())
    subscription_id = params.get('subscriptionId') or params.get('subscription_id') or params.get('id')
    action = (params.get('action') or '').strip().lower()
    token = params.get('token')
    as_html = request.method == 'GET'

    if action not in ('approve', 'reject') or not token:
        message = 'action (approve or reject) and token are required'
        if as_html:
            return render_template('decision_result.html', ok=False, title='Invalid request', message=message), 400
        return jsonify({"success": False, "error": message}), 400

    try:
        outcome = apply_admin_decision(subscription_id, action, token)
    except StorefrontError as e:
        app.logger.warning(f"Admin decision refused for {subscription_id}: {e.message}")
        if as_html:
            return render_template('decision_result.html', ok=False, title='Decision not applied', message=e.message), e.status_code
        return jsonify(to_envelope(e)), e.status_code

    if as_html:
        return render_template('decision_result.html', ok=True, outcome=outcome, subscription=outcome['subscription'])
    return jsonify(outcome)


# --- ADMIN: PANELS & PROVISIONING ---

@app.route('/api/vpn/create-user', methods=['POST'])
@login_required
def vpn_create_user():
    data = request_data()
    username = str(data.get('username') or '').strip()
    data_limit_gb = whole_number_field(data, 'dataLimitGB', 'data_limit_gb')
    duration_days = whole_number_field(data, 'durationDays', 'duration_days')
    panel_type = str(data.get('panelType') or data.get('panel_type') or app.config['DEFAULT_PANEL_TYPE']).strip().lower()
    if not USERNAME_PATTERN.match(username):
        return jsonify({"success": False, "error": "Invalid username"}), 400
    if not data_limit_gb or data_limit_gb <= 0:
        return jsonify({"success": False, "error": "dataLimitGB must be positive"}), 400
    if not duration_days or not (MIN_DURATION_DAYS <= duration_days <= MAX_DURATION_DAYS):
        return jsonify({"success": False, "error": f"durationDays must be between {MIN_DURATION_DAYS} and {MAX_DURATION_DAYS}"}), 400
    if panel_type not in PANEL_TYPES:
        return jsonify({"success": False, "error": f"Unsupported panel type: {panel_type}"}), 400

    panel = select_panel(panel_type, data.get('panelId', data.get('panel_id')))
    client = panel_client_for(panel, data.get('subscriptionId'), 'create-user')
    try:
        result = client.create_user(username, data_limit_gb, duration_days, notes=data.get('notes') or '')
    except StorefrontError as e:
        mark_panel_health(panel, e)
        app.logger.error(f"create-user failed on {panel.name}: {e.message}")
        return jsonify(to_envelope(e, include_raw=True)), e.status_code
    mark_panel_health(panel)
    result.update({'panel_type': panel.type, 'panel_name': panel.name, 'panel_id': panel.id})
    return jsonify({"success": True, "data": result})


@app.route('/api/vpn/subscription', methods=['POST'])
@login_required
def vpn_subscription_from_panel():
    data = request_data()
    username = str(data.get('username') or '').strip()
    if not username:
        return jsonify({"success": False, "error": "username is required"}), 400
    panel_type = str(data.get('panelType') or data.get('panel_type') or app.config['DEFAULT_PANEL_TYPE']).strip().lower()
    if panel_type not in PANEL_TYPES:
        return jsonify({"success": False, "error": f"Unsupported panel type: {panel_type}"}), 400
    panel = select_panel(panel_type, data.get('panelId', data.get('panel_id')))
    try:
        user = panel_client_for(panel, source='lookup').get_user(username)
    except StorefrontError as e:
        if not isinstance(e, NotFound):
            mark_panel_health(panel, e)
        return jsonify(to_envelope(e, include_raw=True)), e.status_code

    fields = {'subscription_url': user['subscription_url']}
    if user.get('expire'):
        fields['expire_at'] = datetime.fromtimestamp(int(user['expire']), timezone.utc).replace(tzinfo=None)
    Subscription.query.filter_by(username=username).update(fields, synchronize_session=False)
    db.session.commit()

    user['expire'] = int(user['expire']) * 1000 if user.get('expire') else None
    return jsonify({"success": True, "data": user})


@app.route('/api/panels/<int:panel_id>/refresh', methods=['POST'])
@login_required
def refresh_panel_config(panel_id):
    panel = db.session.get(PanelServer, panel_id)
    if not panel:
        return jsonify({"success": False, "error": "Panel not found"}), 404
    try:
        config = panel_client_for(panel, source='refresh').fetch_config()
    except StorefrontError as e:
        mark_panel_health(panel, e)
        return jsonify(to_envelope(e, include_raw=True)), e.status_code
    existing = load_json_field(panel.panel_config_data, {})
    existing.update(config)
    panel.panel_config_data = json.dumps(existing)
    panel.health_status = 'online'
    panel.last_health_check = datetime.utcnow()
    db.session.commit()
    return jsonify({"success": True, "config": config, "panel": panel.to_dict()})


@app.route('/api/panels/<int:panel_id>/test', methods=['POST'])
@login_required
def test_panel_connection(panel_id):
    panel = db.session.get(PanelServer, panel_id)
    if not panel:
        return jsonify({"success": False, "error": "Panel not found"}), 404
    try:
        result = panel_client_for(panel, source='connection').check_connection()
    except StorefrontError as e:
        mark_panel_health(panel, e)
        db.session.refresh(panel)
        app.logger.warning(f"Connection test failed for panel {panel.name}: {e.message}")
        body = to_envelope(e)
        body['panel'] = panel.to_dict()
        return jsonify(body), 400
    mark_panel_health(panel)
    db.session.refresh(panel)
    return jsonify({"success": True, "data": result, "panel": panel.to_dict()})


@app.route('/api/panels/search-users', methods=['POST'])
@login_required
def search_panel_users():
    data = request_data()
    query_text = str(data.get('searchQuery') or data.get('query') or '').strip()
    if len(query_text) < 2:
        return jsonify({"success": False, "error": "searchQuery must be at least 2 characters"}), 400
    panels_q = PanelServer.query.filter_by(is_active=True)
    panel_ids = data.get('panelIds') or []
    if not isinstance(panel_ids, list):
        panel_ids = [panel_ids]
    wanted = [parse_whole_number(p) for p in panel_ids]
    if None in wanted:
        return jsonify({"success": False, "error": "panelIds must be panel ids"}), 400
    if wanted:
        panels_q = panels_q.filter(PanelServer.id.in_(wanted))

    results = []
    errors = []
    for panel in panels_q.order_by(PanelServer.id.asc()).all():
        try:
            users = panel_client_for(panel, source='search').search_users(query_text)
        except StorefrontError as e:
            app.logger.warning(f"Search failed on panel {panel.name}: {e.message}")
            errors.append({'panel_id': panel.id, 'panel_name': panel.name, 'error': e.message})
            continue
        results.append({'panel_id': panel.id, 'panel_name': panel.name, 'panel_type': panel.type, 'users': users})
    return jsonify({"success": True, "results": results, "errors": errors})


@app.route('/api/panels', methods=['GET'])
@login_required
def list_panels():
    panels = PanelServer.query.order_by(PanelServer.id.asc()).all()
    return jsonify({"success": True, "panels": [p.to_dict() for p in panels]})


@app.route('/api/panels', methods=['POST'])
@login_required
def create_panel():
    data = request_data()
    panel_type = str(data.get('type') or '').strip().lower()
    if panel_type not in PANEL_TYPES:
        return jsonify({"success": False, "error": "type must be marzban or marzneshin"}), 400
    if not all(data.get(k) for k in ('name', 'panel_url', 'username', 'password')):
        return jsonify({"success": False, "error": "name, panel_url, username and password are required"}), 400
    panel = PanelServer(
        name=data['name'],
        type=panel_type,
        panel_url=data['panel_url'].strip().rstrip('/'),
        username=data['username'],
        password=data['password'],
        is_active=_parse_bool(data.get('is_active', True)),
        enabled_protocols=json.dumps(data.get('enabled_protocols') or []),
        panel_config_data=json.dumps(data.get('panel_config_data') or {}),
        country_en=data.get('country_en'),
    )
    db.session.add(panel)
    db.session.commit()
    return jsonify({"success": True, "panel": panel.to_dict()}), 201


@app.route('/api/panels/<int:panel_id>', methods=['PUT'])
@login_required
def update_panel(panel_id):
    panel = db.session.get(PanelServer, panel_id)
    if not panel:
        return jsonify({"success": False, "error": "Panel not found"}), 404
    data = request_data()
    for key in ('name', 'panel_url', 'username', 'password', 'country_en'):
        if data.get(key):
            setattr(panel, key, data[key])
    if 'is_active' in data:
        panel.is_active = _parse_bool(data['is_active'])
    if 'enabled_protocols' in data:
        panel.enabled_protocols = json.dumps(data['enabled_protocols'] or [])
    if 'panel_config_data' in data:
        panel.panel_config_data = json.dumps(data['panel_config_data'] or {})
    db.session.commit()
    return jsonify({"success": True, "panel": panel.to_dict()})


@app.route('/api/plans', methods=['GET'])
def list_plans():
    plans = SubscriptionPlan.query.filter_by(is_active=True).order_by(SubscriptionPlan.id.asc()).all()
    return jsonify({"success": True, "plans": [p.to_dict() for p in plans]})


@app.route('/api/plans', methods=['POST'])
@login_required
def create_plan():
    data = request_data()
    if not data.get('plan_id') or not data.get('name_en'):
        return jsonify({"success": False, "error": "plan_id and name_en are required"}), 400
    api_type = str(data.get('api_type') or app.config['DEFAULT_PANEL_TYPE']).strip().lower()
    if api_type not in PANEL_TYPES:
        return jsonify({"success": False, "error": f"Unsupported api_type: {api_type}"}), 400
    mappings = data.get('panels') or []
    if not isinstance(mappings, list):
        return jsonify({"success": False, "error": "panels must be a list"}), 400
    panel_ids = []
    for item in mappings:
        panel_id = parse_whole_number(item.get('panel_id')) if isinstance(item, dict) else None
        if panel_id is None or not db.session.get(PanelServer, panel_id):
            return jsonify({"success": False, "error": "Each panels entry needs an existing panel_id"}), 400
        panel_ids.append(panel_id)
    assigned_panel_id = whole_number_field(data, 'assigned_panel_id')
    plan = SubscriptionPlan(
        plan_id=data['plan_id'],
        name_en=data['name_en'],
        name_fa=data.get('name_fa'),
        description=data.get('description'),
        api_type=api_type,
        assigned_panel_id=assigned_panel_id,
        price_per_gb=whole_number_field(data, 'price_per_gb', default=DEFAULT_PRICE_PER_GB),
        default_data_limit_gb=whole_number_field(data, 'default_data_limit_gb', default=10, minimum=1),
        default_duration_days=whole_number_field(
            data, 'default_duration_days', default=30, minimum=MIN_DURATION_DAYS, maximum=MAX_DURATION_DAYS,
        ),
    )
    db.session.add(plan)
    db.session.flush()
    for item, panel_id in zip(mappings, panel_ids):
        db.session.add(PlanPanelMapping(
            plan_id=plan.id,
            panel_id=panel_id,
            is_primary=bool(item.get('is_primary')),
            inbound_ids=json.dumps(item.get('inbound_ids') or []),
        ))
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return jsonify({"success": False, "error": "Plan id already exists"}), 409
    return jsonify({"success": True, "plan": plan.to_dict()}), 201


@app.route('/api/discounts', methods=['GET'])
@login_required
def list_discounts():
    discounts = DiscountCode.query.order_by(DiscountCode.id.desc()).all()
    return jsonify({"success": True, "discounts": [d.to_dict() for d in discounts]})


@app.route('/api/discounts', methods=['POST'])
@login_required
def create_discount():
    data = request_data()
    code = str(data.get('code') or '').strip().upper()
    value = whole_number_field(data, 'discount_value')
    discount_type = data.get('discount_type') or 'percentage'
    if not code or value is None or discount_type not in ('percentage', 'fixed'):
        return jsonify({"success": False, "error": "code, discount_type and discount_value are required"}), 400
    discount = DiscountCode(
        code=code,
        discount_type=discount_type,
        discount_value=value,
        applicable_plans=json.dumps(data.get('applicable_plans') or []),
        expires_at=parse_iso_datetime(data.get('expires_at')),
        total_usage_limit=whole_number_field(data, 'total_usage_limit'),
    )
    db.session.add(discount)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return jsonify({"success": False, "error": "Discount code already exists"}), 409
    return jsonify({"success": True, "discount": discount.to_dict()}), 201


@app.route('/api/webhooks', methods=['GET'])
@login_required
def list_webhooks():
    configs = WebhookConfig.query.order_by(WebhookConfig.id.asc()).all()
    return jsonify({"success": True, "webhooks": [c.to_dict() for c in configs]})


@app.route('/api/webhooks', methods=['POST'])
@login_required
def create_webhook():
    data = request_data()
    url = str(data.get('webhook_url') or '').strip()
    if not url.startswith(('http://', 'https://')):
        return jsonify({"success": False, "error": "webhook_url must be an http(s) URL"}), 400
    config = WebhookConfig(
        webhook_url=url,
        method=(data.get('method') or 'POST').upper(),
        headers=json.dumps(data.get('headers') or {}),
        is_enabled=_parse_bool(data.get('is_enabled', True)),
        is_primary=_parse_bool(data.get('is_primary', False)),
    )
    db.session.add(config)
    db.session.commit()
    return jsonify({"success": True, "webhook": config.to_dict()}), 201


@app.route('/api/notifications/webhook-test', methods=['POST'])
@login_required
def webhook_test():
    data = request_data()
    sample = {
        'id': 'test-subscription',
        'username': 'test_user',
        'mobile': '09120000000',
        'price_toman': 0,
        'payment_method': 'manual',
        'status': SUB_STATUS_PENDING,
        'created_at': datetime.utcnow(),
    }
    payload = build_webhook_payload(EVENT_WEBHOOK_TEST, sample, approve_link='#approve', reject_link='#reject', test=True)
    if data.get('webhook_url'):
        targets = [(None, data['webhook_url'], data.get('method') or 'POST', data.get('headers') or {})]
    else:
        targets = webhook_targets()
    if not targets:
        return jsonify({"success": False, "error": "No webhook configured"}), 400
    results = [send_logged_webhook(EVENT_WEBHOOK_TEST, payload, *target) for target in targets]
    return jsonify({"success": all(r['success'] for r in results), "results": results})


# --- ADMIN: SUBSCRIPTIONS & LOGS ---

@app.route('/api/admin/subscriptions', methods=['GET'])
@login_required
def admin_list_subscriptions():
    query = Subscription.query
    status = request.args.get('status')
    if status:
        query = query.filter_by(status=status)
    if request.args.get('mobile'):
        query = query.filter_by(mobile=normalize_mobile(request.args['mobile']))
    limit = min(whole_number_field(request.args, 'limit', default=100) or 100, 500)
    subs = query.order_by(Subscription.created_at.desc()).limit(limit).all()
    return jsonify({"success": True, "subscriptions": [s.to_dict(include_private=True) for s in subs]})


@app.route('/api/admin/subscriptions/<subscription_id>/retry-provision', methods=['POST'])
@login_required
def admin_retry_provision(subscription_id):
    subscription = db.session.get(Subscription, subscription_id)
    if not subscription:
        return jsonify({"success": False, "error": "Subscription not found"}), 404
    if subscription.status not in (SUB_STATUS_PENDING_ACTIVATION, SUB_STATUS_PAID):
        return jsonify({"success": False, "error": f"Subscription is {subscription.status}"}), 409
    subscription, provisioning = provision_subscription(subscription)
    if provisioning.get('success'):
        notify_activation(subscription)
    code = 200 if provisioning.get('success') else 502
    return jsonify({
        "success": bool(provisioning.get('success')),
        "subscription": subscription.to_dict(include_private=True),
        "provisioning": provisioning,
    }), code


@app.route('/api/admin/subscriptions/<subscription_id>/receipt', methods=['GET'])
@login_required
def download_receipt(subscription_id):
    subscription = db.session.get(Subscription, subscription_id)
    if not subscription or not subscription.receipt_image_url:
        return jsonify({"success": False, "error": "Receipt not found"}), 404
    full_path = os.path.abspath(os.path.join(RECEIPTS_DIR, subscription.receipt_image_url))
    if not full_path.startswith(os.path.abspath(RECEIPTS_DIR)) or not os.path.exists(full_path):
        return jsonify({"success": False, "error": "Receipt file missing"}), 404
    return send_file(full_path)


def _log_listing(model_cls, order_column):
    limit = min(whole_number_field(request.args, 'limit', default=100) or 100, 500)
    rows = model_cls.query.order_by(order_column.desc()).limit(limit).all()
    return jsonify({"success": True, "logs": [r.to_dict() for r in rows]})


@app.route('/api/logs/user-creation', methods=['GET'])
@login_required
def user_creation_logs():
    return _log_listing(UserCreationLog, UserCreationLog.created_at)


@app.route('/api/logs/webhooks', methods=['GET'])
@login_required
def webhook_logs():
    return _log_listing(WebhookLog, WebhookLog.sent_at)


@app.route('/api/logs/emails', methods=['GET'])
@login_required
def email_logs():
    return _log_listing(EmailNotification, EmailNotification.sent_at)


@app.route('/health')
def health():
    return jsonify({"success": True, "version": APP_VERSION})


if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=_parse_bool(os.environ.get('FLASK_DEBUG')))
