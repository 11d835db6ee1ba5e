from types import SimpleNamespace

import pytest
import requests
import stripe

from conftest import FakeResponse, FakeSession
from errors import ConfigurationError
from payment_gateways import (
    ManualGateway, NowPaymentsGateway, StripeGateway, ZarinpalGateway, poll_payment_status,
)


def zarinpal(session):
    return ZarinpalGateway('merchant-1234-5678', session=session)


def test_zarinpal_requires_merchant_id():
    with pytest.raises(ConfigurationError):
        ZarinpalGateway('', session=FakeSession())


def test_zarinpal_create_payment_converts_toman_to_rial():
    session = FakeSession().add('POST', 'payment/request.json', FakeResponse(200, {
        'data': {'code': 100, 'authority': 'A0000012345', 'fee': 2500}, 'errors': [],
    }))
    result = zarinpal(session).create_payment(8000, {'callback_url': 'https://shop/cb', 'mobile': '09121234567'})

    assert result['success'] is True
    assert result['reference'] == 'A0000012345'
    assert result['redirect_url'] == 'https://www.zarinpal.com/pg/StartPay/A0000012345'
    payload = session.calls[0]['json']
    assert payload['amount'] == 80000
    assert payload['metadata'] == {'mobile': '09121234567'}


def test_zarinpal_create_payment_maps_error_codes():
    session = FakeSession().add('POST', 'payment/request.json', FakeResponse(200, {
        'data': [], 'errors': {'code': -10, 'message': 'merchant invalid'},
    }))
    result = zarinpal(session).create_payment(8000, {'callback_url': 'https://shop/cb'})
    assert result['success'] is False
    assert result['details']['code'] == -10
    assert result['error'] == 'Merchant id or IP address is not valid'


def test_zarinpal_verify_succeeds_only_on_code_100():
    session = FakeSession().add('POST', 'payment/verify.json', FakeResponse(200, {
        'data': {'code': 100, 'ref_id': 987654, 'card_pan': '6037****1234'}, 'errors': [],
    }))
    result = zarinpal(session).verify_payment('A0000012345', 80000)
    assert result['success'] is True
    assert result['provider_ref_id'] == '987654'
    assert result['details']['code'] == 100
    assert session.calls[0]['json']['amount'] == 80000


def test_zarinpal_verify_treats_already_verified_code_as_failure():
    session = FakeSession().add('POST', 'payment/verify.json', FakeResponse(200, {
        'data': {'code': 101, 'ref_id': 987654}, 'errors': [],
    }))
    result = zarinpal(session).verify_payment('A0000012345', 80000)
    assert result['success'] is False
    assert result['details']['kind'] == 'ProviderRejected'
    assert result['details']['code'] == 101
    assert result['error'] == 'Payment was already verified'


def test_zarinpal_direct_checkout_rejects_code_101():
    session = FakeSession().add('POST', 'payman/checkout.json', FakeResponse(200, {
        'data': {'code': 101, 'ref_id': 55}, 'errors': [],
    }))
    result = zarinpal(session).direct_checkout('P0000001', 'sig-1')
    assert result['success'] is False
    assert result['details']['code'] == 101


def test_zarinpal_verify_amount_mismatch_is_rejected():
    session = FakeSession().add('POST', 'payment/verify.json', FakeResponse(200, {
        'data': [], 'errors': {'code': -50, 'message': 'amount'},
    }))
    result = zarinpal(session).verify_payment('A0000012345', 1)
    assert result['success'] is False
    assert result['details']['kind'] == 'ProviderRejected'


def test_zarinpal_network_failure_is_unavailable():
    session = FakeSession().add('POST', 'payment/verify.json', requests.ConnectionError('down'))
    result = zarinpal(session).verify_payment('A0000012345', 80000)
    assert result['success'] is False
    assert result['details']['kind'] == 'ProviderUnavailable'


def test_zarinpal_recurring_contract_flow():
    session = FakeSession()
    session.add('POST', 'payman/request.json', FakeResponse(200, {'data': {'code': 100, 'payman_authority': 'P123'}}))
    session.add('POST', 'payman/verify.json', FakeResponse(200, {'data': {'code': 100, 'signature': 'SIG', 'bank_code': '062'}}))
    session.add('POST', 'payman/checkout.json', FakeResponse(200, {'data': {'code': 100, 'ref_id': 55}}))
    gateway = zarinpal(session)

    contract = gateway.create_recurring_contract('09121234567', 500000, 'https://shop/cb', expire_days=60)
    assert contract['redirect_url'].endswith('/StartPayman/P123')
    assert contract['details']['max_amount'] == 5000000

    signature = gateway.get_signature('P123')
    assert signature['signature'] == 'SIG'
    assert signature['details']['bank_code'] == '062'

    charged = gateway.direct_checkout('A1', 'SIG')
    assert charged['success'] is True
    assert charged['provider_ref_id'] == '55'


def test_nowpayments_raises_amount_to_minimum():
    session = FakeSession().add('POST', '/payment', FakeResponse(201, {
        'payment_id': 4455, 'pay_address': 'TXYZ', 'pay_amount': 5.01, 'payment_status': 'waiting',
    }))
    gateway = NowPaymentsGateway('np-key', session=session)

    result = gateway.create_payment(60000, {'order_id': 'sub-1'})

    assert result['success'] is True
    assert result['reference'] == '4455'
    body = session.calls[0]['json']
    assert body['price_amount'] == 5
    assert body['pay_currency'] == 'usdttrc20'
    assert session.calls[0]['headers']['x-api-key'] == 'np-key'


def test_nowpayments_converts_toman_with_ceiling():
    gateway = NowPaymentsGateway('np-key', session=FakeSession())
    assert gateway.toman_to_usd(600001) == 11
    assert gateway.toman_to_usd(100) == 1


def test_nowpayments_rejected_body():
    session = FakeSession().add('POST', '/payment', FakeResponse(400, {'code': 'AMOUNT_MINIMAL_ERROR', 'message': 'too small'}))
    result = NowPaymentsGateway('np-key', session=session).create_payment(60000, {})
    assert result['success'] is False
    assert result['details']['code'] == 'AMOUNT_MINIMAL_ERROR'


def test_nowpayments_verify_only_succeeds_when_finished():
    session = FakeSession().add('GET', '/payment/77', FakeResponse(200, {'payment_status': 'confirming'}))
    result = NowPaymentsGateway('np-key', session=session).verify_payment('77')
    assert result['success'] is False
    assert result['details']['kind'] == 'Pending'


class ScriptedStatusGateway:
    def __init__(self, statuses):
        self.statuses = list(statuses)
        self.calls = 0

    def get_status(self, payment_id):
        self.calls += 1
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return {'success': True, 'status': status, 'details': {}}


def test_poll_payment_status_finishes_on_third_attempt():
    gateway = ScriptedStatusGateway(['waiting', 'confirming', 'finished'])
    sleeps = []
    finished = []

    outcome = poll_payment_status(gateway, '77', finished.append, sleep=sleeps.append)

    assert outcome == 'finished'
    assert gateway.calls == 3
    assert sleeps == [5, 5]
    assert len(finished) == 1


def test_poll_payment_status_gives_up_after_max_attempts():
    gateway = ScriptedStatusGateway(['waiting'])
    sleeps = []
    outcome = poll_payment_status(gateway, '77', lambda r: None, sleep=sleeps.append)
    assert outcome == 'timeout'
    assert gateway.calls == 60
    assert len(sleeps) == 59


def test_poll_payment_status_stops_on_failure():
    gateway = ScriptedStatusGateway(['waiting', 'expired'])
    outcome = poll_payment_status(gateway, '77', lambda r: None, sleep=lambda s: None)
    assert outcome == 'failed'
    assert gateway.calls == 2


class FakeStripeSessions:
    def __init__(self, retrieved=None, error=None):
        self.created = []
        self.retrieved = retrieved
        self.error = error

    def create(self, **kwargs):
        if self.error:
            raise self.error
        self.created.append(kwargs)
        return {'id': 'cs_test_1', 'url': 'https://checkout.stripe.com/c/cs_test_1'}

    def retrieve(self, session_id, api_key=None):
        return self.retrieved


def fake_stripe(sessions):
    return SimpleNamespace(checkout=SimpleNamespace(Session=sessions))


def test_stripe_checkout_rounds_up_to_whole_dollars():
    sessions = FakeStripeSessions()
    gateway = StripeGateway('sk_test', client=fake_stripe(sessions))

    result = gateway.create_payment(90000, {
        'subscription_id': 'sub-1', 'mobile': '09121234567',
        'success_url': 'https://shop/ok', 'cancel_url': 'https://shop/no',
    })

    assert result['success'] is True
    assert result['reference'] == 'cs_test_1'
    created = sessions.created[0]
    assert created['line_items'][0]['price_data']['unit_amount'] == 200
    assert created['metadata']['original_amount_toman'] == '90000'
    assert created['api_key'] == 'sk_test'


def test_stripe_error_becomes_failure():
    sessions = FakeStripeSessions(error=stripe.StripeError('card declined'))
    result = StripeGateway('sk_test', client=fake_stripe(sessions)).create_payment(90000, {
        'success_url': 'https://shop/ok', 'cancel_url': 'https://shop/no',
    })
    assert result['success'] is False


def test_stripe_verify_requires_paid_status():
    unpaid = FakeStripeSessions(retrieved={'payment_status': 'unpaid', 'metadata': {}})
    assert StripeGateway('sk_test', client=fake_stripe(unpaid)).verify_payment('cs_1')['success'] is False

    paid = FakeStripeSessions(retrieved={'payment_status': 'paid', 'metadata': {'subscription_id': 'sub-1'}, 'payment_intent': 'pi_1'})
    result = StripeGateway('sk_test', client=fake_stripe(paid)).verify_payment('cs_1')
    assert result['success'] is True
    assert result['details']['metadata'] == {'subscription_id': 'sub-1'}


def test_manual_gateway_token_check():
    gateway = ManualGateway()
    token = gateway.create_payment(1000, {})['reference']
    assert gateway.verify_payment(token, token=token)['success'] is True
    assert gateway.verify_payment(token, token='guess')['success'] is False
    assert gateway.verify_payment(None, token=token)['success'] is False
