import logging
from datetime import datetime

import requests

logger = logging.getLogger(__name__)

RESEND_API_URL = 'https://api.resend.com/emails'
DEFAULT_SENDER = 'VPN Admin <admin@resend.dev>'

EVENT_NEW_SUBSCRIPTION = 'new_subscription'
EVENT_MANUAL_PAYMENT_APPROVAL = 'manual_payment_approval'
EVENT_SUBSCRIPTION_APPROVED = 'subscription_approved'
EVENT_SUBSCRIPTION_REJECTED = 'subscription_rejected'
EVENT_WEBHOOK_TEST = 'webhook_test'


def _result(success, status_code=None, body=None, error=None):
    return {
        'success': success,
        'status_code': status_code,
        'body': (body or '')[:2000] if isinstance(body, str) else body,
        'error': error,
    }


def send_email(api_key, to, subject, html, sender=None, session=None, timeout=15):
    """Send one transactional email through Resend. Never raises."""
    if not api_key:
        return _result(False, error='RESEND_API_KEY is not configured')
    if not to:
        return _result(False, error='Recipient address is missing')
    http = session or requests
    payload = {
        'from': sender or DEFAULT_SENDER,
        'to': [to] if isinstance(to, str) else list(to),
        'subject': subject,
        'html': html,
    }
    try:
        resp = http.post(
            RESEND_API_URL,
            json=payload,
            headers={'Authorization': f"Bearer {api_key}", 'Content-Type': 'application/json'},
            timeout=timeout,
        )
    except requests.RequestException as e:
        logger.error(f"Email to {to} failed: {e}")
        return _result(False, error=str(e))
    ok = 200 <= resp.status_code < 300
    if not ok:
        logger.warning(f"Email provider returned {resp.status_code} for {to}: {(resp.text or '')[:300]}")
    return _result(ok, resp.status_code, resp.text, None if ok else f"HTTP {resp.status_code}")


def post_webhook(url, payload, method='POST', headers=None, session=None, timeout=15):
    if not url:
        return _result(False, error='Webhook URL is not configured')
    http = session or requests
    all_headers = {'Content-Type': 'application/json'}
    all_headers.update(headers or {})
    try:
        resp = http.request((method or 'POST').upper(), url, json=payload, headers=all_headers, timeout=timeout)
    except requests.RequestException as e:
        logger.error(f"Webhook {url} failed: {e}")
        return _result(False, error=str(e))
    ok = 200 <= resp.status_code < 300
    if not ok:
        logger.warning(f"Webhook {url} returned {resp.status_code}")
    return _result(ok, resp.status_code, resp.text, None if ok else f"HTTP {resp.status_code}")


def build_webhook_payload(event, subscription, plan=None, panel=None, **extra):
    """Normalized event body shared by every outbound webhook."""
    def _iso(value):
        return value.isoformat() if isinstance(value, datetime) else value

    payload = {
        'type': event,
        'webhook_type': event,
        'subscription_id': subscription.get('id'),
        'username': subscription.get('username'),
        'mobile': subscription.get('mobile'),
        'email': subscription.get('email'),
        'amount': subscription.get('price_toman'),
        'payment_method': subscription.get('payment_method'),
        'subscription_url': subscription.get('subscription_url'),
        'data_limit_gb': subscription.get('data_limit_gb'),
        'duration_days': subscription.get('duration_days'),
        'expire_at': _iso(subscription.get('expire_at')),
        'protocol': subscription.get('protocol'),
        'status': subscription.get('status'),
        'receipt_image_url': subscription.get('receipt_image_url'),
        'created_at': _iso(subscription.get('created_at')),
        'plan_name': (plan or {}).get('name_en'),
        'panel_name': (panel or {}).get('name'),
        'panel_type': (panel or {}).get('type'),
    }
    approve_link = extra.pop('approve_link', None)
    reject_link = extra.pop('reject_link', None)
    if subscription.get('payment_method') == 'manual':
        payload['approve_link'] = approve_link
        payload['reject_link'] = reject_link
    payload.update(extra)
    return payload
