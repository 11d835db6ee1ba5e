import hmac
import math
import time
import uuid
import logging
from datetime import datetime, timedelta

import requests
import stripe

from errors import ConfigurationError

logger = logging.getLogger(__name__)

ZARINPAL_API_BASE = 'https://api.zarinpal.com/pg/v4'
ZARINPAL_START_PAY = 'https://www.zarinpal.com/pg/StartPay/{authority}'
ZARINPAL_START_PAYMAN = 'https://www.zarinpal.com/pg/StartPayman/{authority}'
NOWPAYMENTS_API_BASE = 'https://api.nowpayments.io/v1'

TOMAN_PER_USD = 60000
NOWPAYMENTS_MIN_USD = 5
NOWPAYMENTS_PAY_CURRENCY = 'usdttrc20'
STRIPE_MIN_CENTS = 50

ZARINPAL_ERRORS = {
    -9: 'Validation error in the request sent to Zarinpal',
    -10: 'Merchant id or IP address is not valid',
    -11: 'Merchant or contract is not active',
    -50: 'Paid amount does not match the requested amount',
    -51: 'Payment was not successful',
    -54: 'Authority is not valid',
    -80: 'Merchant has no access to Payman direct debit',
    101: 'Payment was already verified',
}

NOWPAYMENTS_ERRORS = {
    'AMOUNT_MINIMAL_ERROR': 'Amount is below the minimum accepted for this currency',
    'INVALID_API_KEY': 'NOWPayments API key is not valid',
}

NOWPAYMENTS_FAILED_STATUSES = ('failed', 'expired', 'refunded')


def failure(error, **details):
    return {"success": False, "error": error, "details": details}


def _mask(value):
    value = str(value or '')
    return value[:4] + '***' if len(value) > 4 else '***'


class PaymentGateway:
    """Common contract shared by every payment rail.

    ``create_payment`` returns ``{success, reference, redirect_url, details}``
    and ``verify_payment`` returns ``{success, provider_ref_id, details}``.
    Failures come back as ``{success: False, error, details}``; nothing here
    retries or raises past the adapter boundary once configured.
    """

    provider = None

    def __init__(self, session=None, timeout=15):
        self.session = session or requests.Session()
        self.timeout = timeout

    def create_payment(self, amount, meta):
        raise NotImplementedError

    def verify_payment(self, reference, amount=None):
        raise NotImplementedError

    def create_recurring_contract(self, *args, **kwargs):
        raise NotImplementedError(f"{self.provider} has no recurring contracts")

    def _call(self, method, url, accept_error_body=False, timeout=None, **kwargs):
        """Send one request and return ``(body, error_envelope)``."""
        try:
            resp = self.session.request(method, url, timeout=timeout or self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.error(f"{self.provider} request to {url} failed: {e}")
            return None, failure(f"{self.provider} is unreachable", kind='ProviderUnavailable', reason=str(e))

        raw = (resp.text or '')[:500]
        try:
            body = resp.json()
        except ValueError:
            logger.error(f"{self.provider} returned non-JSON ({resp.status_code}): {raw[:300]}")
            return None, failure(
                f"Invalid response from {self.provider}",
                kind='ProviderUnavailable', status=resp.status_code, raw_response=raw,
            )

        if resp.status_code >= 500 or (resp.status_code >= 400 and not accept_error_body):
            logger.error(f"{self.provider} HTTP {resp.status_code}: {raw[:300]}")
            kind = 'ProviderUnavailable' if resp.status_code >= 500 else 'ProviderRejected'
            return None, failure(
                f"{self.provider} request failed with status {resp.status_code}",
                kind=kind, status=resp.status_code, raw_response=raw,
            )
        return body, None


class ZarinpalGateway(PaymentGateway):
    provider = 'zarinpal'

    def __init__(self, merchant_id, session=None, api_base=ZARINPAL_API_BASE, timeout=15):
        if not merchant_id:
            raise ConfigurationError('ZARINPAL_MERCHANT_ID is not configured')
        super().__init__(session=session, timeout=timeout)
        self.merchant_id = merchant_id
        self.api_base = api_base.rstrip('/')

    @staticmethod
    def toman_to_rial(amount_toman):
        return int(amount_toman) * 10

    def _post(self, path, payload):
        body, error = self._call(
            'POST', f"{self.api_base}/{path}",
            accept_error_body=True,
            json=payload,
            headers={'accept': 'application/json', 'content-type': 'application/json'},
        )
        if error:
            return None, error
        body = body if isinstance(body, dict) else {}
        data = body.get('data')
        errors = body.get('errors') if isinstance(body.get('errors'), dict) else {}
        code = data.get('code') if isinstance(data, dict) else None
        if code is None:
            code = errors.get('code')
        try:
            code = int(code) if code is not None else None
        except (TypeError, ValueError):
            pass
        return {'data': data if isinstance(data, dict) else {}, 'raw_data': data, 'errors': errors, 'code': code, 'body': body}, None

    def _rejected(self, action, result):
        code = result.get('code')
        message = ZARINPAL_ERRORS.get(code) or result['errors'].get('message') or f"Zarinpal {action} failed"
        logger.warning(f"Zarinpal {action} rejected (code={code}, merchant={_mask(self.merchant_id)}): {str(result['body'])[:300]}")
        return failure(message, kind='ProviderRejected', code=code, raw_response=str(result['body'])[:500])

    def create_payment(self, amount, meta):
        amount_rial = self.toman_to_rial(amount)
        if amount_rial <= 0:
            return failure('Amount must be greater than zero', kind='ProviderRejected')
        if not meta.get('callback_url'):
            return failure('callback_url is required', kind='ProviderRejected')
        payload = {
            'merchant_id': self.merchant_id,
            'amount': amount_rial,
            'description': meta.get('description') or 'VPN subscription',
            'callback_url': meta['callback_url'],
        }
        metadata = {k: meta[k] for k in ('mobile', 'email') if meta.get(k)}
        if metadata:
            payload['metadata'] = metadata
        result, error = self._post('payment/request.json', payload)
        if error:
            return error
        authority = result['data'].get('authority')
        if result['code'] == 100 and authority:
            return {
                'success': True,
                'reference': authority,
                'redirect_url': ZARINPAL_START_PAY.format(authority=authority),
                'details': {'amount_rial': amount_rial, 'fee': result['data'].get('fee')},
            }
        return self._rejected('payment request', result)

    def verify_payment(self, reference, amount=None):
        """Verify a returning authority; ``amount`` is in Rial."""
        if not reference or amount is None:
            return failure('authority and amount are required', kind='ProviderRejected')
        payload = {'merchant_id': self.merchant_id, 'authority': reference, 'amount': int(amount)}
        result, error = self._post('payment/verify.json', payload)
        if error:
            return error
        if result['code'] == 100:
            return {
                'success': True,
                'provider_ref_id': str(result['data'].get('ref_id') or ''),
                'details': {
                    'code': result['code'],
                    'card_pan': result['data'].get('card_pan'),
                },
            }
        return self._rejected('verify', result)

    # --- Payman (recurring direct debit) ---

    def create_recurring_contract(self, mobile, max_amount, callback_url, expire_days=30,
                                  max_daily_count=100, max_monthly_count=1000):
        if not mobile or not callback_url:
            return failure('mobile and callback_url are required', kind='ProviderRejected')
        expire_at = (datetime.now() + timedelta(days=expire_days)).strftime('%Y-%m-%d %H:%M:%S')
        max_amount_rial = self.toman_to_rial(max_amount)
        payload = {
            'merchant_id': self.merchant_id,
            'mobile': mobile,
            'expire_at': expire_at,
            'max_daily_count': str(max_daily_count),
            'max_monthly_count': str(max_monthly_count),
            'max_amount': max_amount_rial,
            'callback_url': callback_url,
        }
        result, error = self._post('payman/request.json', payload)
        if error:
            return error
        authority = result['data'].get('payman_authority')
        if result['code'] == 100 and authority:
            return {
                'success': True,
                'reference': authority,
                'redirect_url': ZARINPAL_START_PAYMAN.format(authority=authority),
                'details': {
                    'expire_at': expire_at,
                    'max_amount': max_amount_rial,
                    'max_daily_count': max_daily_count,
                    'max_monthly_count': max_monthly_count,
                },
            }
        return self._rejected('contract request', result)

    def get_signature(self, payman_authority):
        result, error = self._post('payman/verify.json', {
            'merchant_id': self.merchant_id,
            'payman_authority': payman_authority,
        })
        if error:
            return error
        signature = result['data'].get('signature')
        if result['code'] == 100 and signature:
            return {'success': True, 'signature': signature, 'details': {'bank_code': result['data'].get('bank_code')}}
        return self._rejected('signature', result)

    def direct_checkout(self, authority, signature):
        result, error = self._post('payman/checkout.json', {
            'merchant_id': self.merchant_id,
            'authority': authority,
            'signature': signature,
        })
        if error:
            return error
        if result['code'] == 100:
            return {
                'success': True,
                'provider_ref_id': str(result['data'].get('ref_id') or ''),
                'details': {'code': result['code']},
            }
        return self._rejected('direct checkout', result)

    def cancel_contract(self, signature):
        result, error = self._post('payman/cancelContract.json', {
            'merchant_id': self.merchant_id,
            'signature': signature,
        })
        if error:
            return error
        if result['code'] == 100:
            return {'success': True, 'details': {'code': 100}}
        return self._rejected('contract cancel', result)

    def list_banks(self):
        result, error = self._post('payman/banksList.json', {'merchant_id': self.merchant_id})
        if error:
            return error
        raw = result['raw_data']
        banks = raw.get('banks', []) if isinstance(raw, dict) else (raw or [])
        if result['errors'] and not banks:
            return self._rejected('bank list', result)
        return {'success': True, 'banks': banks}


class NowPaymentsGateway(PaymentGateway):
    provider = 'nowpayments'

    def __init__(self, api_key, session=None, api_base=NOWPAYMENTS_API_BASE, toman_per_usd=TOMAN_PER_USD, timeout=15):
        if not api_key:
            raise ConfigurationError('NOWPAYMENTS_API_KEY is not configured')
        super().__init__(session=session, timeout=timeout)
        self.api_key = api_key
        self.api_base = api_base.rstrip('/')
        self.toman_per_usd = toman_per_usd

    def toman_to_usd(self, amount_toman):
        return max(1, math.ceil(int(amount_toman) / self.toman_per_usd))

    def create_payment(self, amount, meta):
        usd = self.toman_to_usd(amount)
        if usd < NOWPAYMENTS_MIN_USD:
            logger.info(f"NOWPayments amount ${usd} raised to minimum ${NOWPAYMENTS_MIN_USD}")
            usd = NOWPAYMENTS_MIN_USD
        payload = {
            'price_amount': usd,
            'price_currency': 'usd',
            'pay_currency': meta.get('pay_currency') or NOWPAYMENTS_PAY_CURRENCY,
            'order_id': meta.get('order_id'),
            'order_description': meta.get('description') or 'VPN subscription',
        }
        if meta.get('ipn_callback_url'):
            payload['ipn_callback_url'] = meta['ipn_callback_url']
        body, error = self._call(
            'POST', f"{self.api_base}/payment",
            accept_error_body=True,
            json=payload,
            headers={'x-api-key': self.api_key, 'Content-Type': 'application/json'},
        )
        if error:
            return error
        if not isinstance(body, dict) or not body.get('payment_id'):
            code = body.get('code') if isinstance(body, dict) else None
            message = NOWPAYMENTS_ERRORS.get(code) or (body.get('message') if isinstance(body, dict) else None)
            logger.warning(f"NOWPayments create rejected ({code}): {str(body)[:300]}")
            return failure(message or 'Crypto payment could not be created', kind='ProviderRejected', code=code, raw_response=str(body)[:500])
        payment_id = str(body['payment_id'])
        return {
            'success': True,
            'reference': payment_id,
            'redirect_url': body.get('invoice_url') or body.get('payment_url'),
            'details': {
                'payment_id': payment_id,
                'pay_address': body.get('pay_address'),
                'pay_amount': body.get('pay_amount'),
                'pay_currency': body.get('pay_currency') or payload['pay_currency'],
                'price_amount': usd,
                'invoice_url': body.get('invoice_url'),
                'payment_url': body.get('payment_url'),
                'payment_status': body.get('payment_status'),
            },
        }

    def get_status(self, payment_id):
        body, error = self._call(
            'GET', f"{self.api_base}/payment/{payment_id}",
            headers={'x-api-key': self.api_key},
        )
        if error:
            return error
        return {'success': True, 'status': body.get('payment_status'), 'details': body}

    def verify_payment(self, reference, amount=None):
        result = self.get_status(reference)
        if not result['success']:
            return result
        status = result['status']
        if status == 'finished':
            return {'success': True, 'provider_ref_id': str(reference), 'details': result['details']}
        return failure(f"Payment status is {status}", kind='Pending' if status not in NOWPAYMENTS_FAILED_STATUSES else 'ProviderRejected', status=status)


def poll_payment_status(gateway, payment_id, on_success, interval=5, max_attempts=60, sleep=time.sleep, on_status=None):
    """Poll a crypto payment until it finishes, fails, or attempts run out.

    Returns ``'finished'``, ``'failed'`` or ``'timeout'``. ``on_success`` fires
    at most once. Errors from the status call count as an attempt.
    """
    for attempt in range(1, max_attempts + 1):
        result = gateway.get_status(payment_id)
        status = result.get('status') if result.get('success') else None
        if on_status:
            on_status(attempt, status)
        if status == 'finished':
            on_success(result)
            return 'finished'
        if status in NOWPAYMENTS_FAILED_STATUSES:
            logger.info(f"Payment {payment_id} ended with status {status}")
            return 'failed'
        if attempt < max_attempts:
            sleep(interval)
    logger.warning(f"Stopped polling payment {payment_id} after {max_attempts} attempts")
    return 'timeout'


def _stripe_value(obj, key):
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


class StripeGateway(PaymentGateway):
    provider = 'stripe'

    def __init__(self, secret_key, client=None, toman_per_usd=TOMAN_PER_USD):
        if not secret_key:
            raise ConfigurationError('STRIPE_SECRET_KEY is not configured')
        self.secret_key = secret_key
        self.client = client or stripe
        self.toman_per_usd = toman_per_usd

    def toman_to_cents(self, amount_toman):
        return math.ceil(int(amount_toman) / self.toman_per_usd) * 100

    def create_payment(self, amount, meta):
        cents = self.toman_to_cents(amount)
        if cents < STRIPE_MIN_CENTS:
            return failure('Amount is below the Stripe minimum', kind='ProviderRejected', amount_cents=cents)
        metadata = {
            'subscription_id': str(meta.get('subscription_id') or ''),
            'mobile': meta.get('mobile') or '',
            'original_amount_toman': str(amount),
        }
        try:
            checkout = self.client.checkout.Session.create(
                api_key=self.secret_key,
                payment_method_types=['card'],
                line_items=[{
                    'price_data': {
                        'currency': 'usd',
                        'product_data': {'name': meta.get('product_name') or 'VPN Subscription'},
                        'unit_amount': cents,
                    },
                    'quantity': 1,
                }],
                mode='payment',
                success_url=meta['success_url'],
                cancel_url=meta['cancel_url'],
                metadata=metadata,
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe session create failed: {e}")
            return failure('Card payment could not be started', kind='ProviderRejected', reason=str(e)[:300])
        return {
            'success': True,
            'reference': _stripe_value(checkout, 'id'),
            'redirect_url': _stripe_value(checkout, 'url'),
            'details': {'amount_cents': cents},
        }

    def verify_payment(self, reference, amount=None):
        if not reference:
            return failure('session_id is required', kind='ProviderRejected')
        try:
            checkout = self.client.checkout.Session.retrieve(reference, api_key=self.secret_key)
        except stripe.StripeError as e:
            logger.error(f"Stripe session retrieve failed for {reference}: {e}")
            return failure('Card payment could not be verified', kind='ProviderUnavailable', reason=str(e)[:300])
        payment_status = _stripe_value(checkout, 'payment_status')
        metadata = dict(_stripe_value(checkout, 'metadata') or {})
        if payment_status != 'paid':
            return failure(f"Payment status is {payment_status}", kind='ProviderRejected', payment_status=payment_status)
        return {
            'success': True,
            'provider_ref_id': _stripe_value(checkout, 'payment_intent') or reference,
            'details': {'metadata': metadata, 'amount_total': _stripe_value(checkout, 'amount_total')},
        }


class ManualGateway(PaymentGateway):
    """Offline bank transfer confirmed by an admin through a one-time token."""

    provider = 'manual'

    def __init__(self):
        pass

    def create_payment(self, amount, meta):
        return {
            'success': True,
            'reference': str(uuid.uuid4()),
            'redirect_url': None,
            'details': {'amount': amount, 'receipt': meta.get('receipt_image_url')},
        }

    def verify_payment(self, reference, amount=None, token=None):
        if not reference or not token or not hmac.compare_digest(str(reference), str(token)):
            return failure('Invalid decision token', kind='NotFound')
        return {'success': True, 'provider_ref_id': None, 'details': {}}
