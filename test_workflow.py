import io
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

import app as app_module
from app import (
    DiscountCode, EmailNotification, PanelServer, PaymentEvent, PlanPanelMapping, Subscription, SubscriptionPlan,
    UserCreationLog, WebhookLog, db, transition_subscription,
)
from conftest import FakeResponse, add_marzneshin_panel, reload, script_marzneshin_success
from errors import IllegalTransition


def add_plan(plan_id='default', price_per_gb=800, **overrides):
    plan = SubscriptionPlan(plan_id=plan_id, name_en=plan_id.title(), api_type='marzneshin', price_per_gb=price_per_gb, **overrides)
    db.session.add(plan)
    db.session.commit()
    return plan


def order(client, **overrides):
    body = {'username': 'alice_1', 'mobile': '09121234567', 'plan_id': 'default', 'data_limit_gb': 10, 'duration_days': 30}
    body.update(overrides)
    resp = client.post('/api/subscriptions', json=body)
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()['subscription']


def script_zarinpal(session, authority='A000000000000000000000000000012345', ref_id=12345):
    session.add('POST', 'payment/request.json', FakeResponse(200, {'data': {'code': 100, 'authority': authority, 'fee': 0}, 'errors': []}))
    session.add('POST', 'payment/verify.json', FakeResponse(200, {'data': {'code': 100, 'ref_id': ref_id}, 'errors': []}))
    return authority


def upload_receipt(client, subscription_id):
    return client.post('/api/payments/manual', data={
        'subscription_id': subscription_id,
        'receipt': (io.BytesIO(b'fake image bytes'), 'receipt.png'),
    }, content_type='multipart/form-data')


# --- ordering ---

def test_order_is_priced_per_gb(client):
    add_plan()
    sub = order(client)
    assert sub['status'] == 'pending'
    assert sub['price_toman'] == 8000
    assert sub['subscription_url'] is None


def test_username_without_underscore_gets_suffix(client):
    add_plan()
    sub = order(client, username='alice')
    assert sub['username'].startswith('alice_')


def test_invalid_mobile_is_rejected(client):
    add_plan()
    resp = client.post('/api/subscriptions', json={'username': 'alice_1', 'mobile': '12345', 'plan_id': 'default', 'data_limit_gb': 10, 'duration_days': 30})
    assert resp.status_code == 400


def test_percentage_discount_and_usage_count(client):
    add_plan()
    db.session.add(DiscountCode(code='HALF', discount_type='percentage', discount_value=50, total_usage_limit=1))
    db.session.commit()

    sub = order(client, discount_code='half')
    assert sub['price_toman'] == 4000
    assert sub['original_price_toman'] == 8000
    assert reload(DiscountCode, 1).current_usage_count == 1

    resp = client.post('/api/subscriptions', json={
        'username': 'bob_1', 'mobile': '09121234568', 'plan_id': 'default',
        'data_limit_gb': 10, 'duration_days': 30, 'discount_code': 'HALF',
    })
    assert resp.status_code == 409


def test_zero_price_order_provisions_immediately(client, fake_session):
    add_plan('free', price_per_gb=0)
    add_marzneshin_panel()
    script_marzneshin_success(fake_session)

    sub = order(client, plan_id='free', email='alice@example.com')

    assert sub['status'] == 'active'
    assert sub['payment_method'] == 'free'
    assert sub['subscription_url'] == 'https://mz.example.com/sub/alice_1/abc'
    assert sub['marzban_user_created'] is True
    assert len(fake_session.calls_to('hooks.example.com')) == 1
    assert len(fake_session.calls_to('api.resend.com')) == 1
    assert UserCreationLog.query.filter_by(success=True).count() == 1


# --- zarinpal ---

def test_zarinpal_end_to_end(client, fake_session):
    add_plan()
    add_marzneshin_panel()
    script_marzneshin_success(fake_session)
    authority = script_zarinpal(fake_session)
    sub = order(client)

    resp = client.post('/api/payments/zarinpal/request', json={'subscription_id': sub['id'], 'amount': 8000})
    body = resp.get_json()
    assert resp.status_code == 200, body
    assert body['authority'] == authority
    assert body['gateway_url'].endswith(authority)
    assert fake_session.calls_to('payment/request.json')[0]['json']['amount'] == 80000

    resp = client.get(f'/api/payments/zarinpal/verify?Authority={authority}&Status=OK')
    assert resp.status_code == 200

    stored = reload(Subscription, sub['id'])
    assert stored.status == 'active'
    assert stored.zarinpal_ref_id == '12345'
    assert stored.subscription_url == 'https://mz.example.com/sub/alice_1/abc'
    assert fake_session.calls_to('payment/verify.json')[0]['json']['amount'] == 80000
    assert PaymentEvent.query.count() == 1

    # a repeated callback is answered from the stored state
    resp = client.post('/api/payments/zarinpal/verify', json={'authority': authority, 'status': 'OK'})
    assert resp.status_code == 200
    assert resp.get_json()['ref_id'] == '12345'
    assert len(fake_session.calls_to('payment/verify.json')) == 1


def test_zarinpal_request_amount_must_match_price(client, fake_session):
    add_plan()
    script_zarinpal(fake_session)
    sub = order(client)
    resp = client.post('/api/payments/zarinpal/request', json={'subscription_id': sub['id'], 'amount': 100})
    assert resp.status_code == 400
    assert fake_session.calls_to('payment/request.json') == []


def test_zarinpal_verify_amount_mismatch_fails_order(client, fake_session):
    add_plan()
    authority = script_zarinpal(fake_session)
    sub = order(client)
    client.post('/api/payments/zarinpal/request', json={'subscription_id': sub['id']})

    resp = client.post('/api/payments/zarinpal/verify', json={'authority': authority, 'status': 'OK', 'amount': 1})

    assert resp.status_code == 400
    assert reload(Subscription, sub['id']).status == 'failed'
    assert fake_session.calls_to('payment/verify.json') == []


def test_zarinpal_cancelled_at_bank(client, fake_session):
    add_plan()
    authority = script_zarinpal(fake_session)
    sub = order(client)
    client.post('/api/payments/zarinpal/request', json={'subscription_id': sub['id']})

    resp = client.get(f'/api/payments/zarinpal/verify?Authority={authority}&Status=NOK')

    assert resp.status_code == 400
    assert reload(Subscription, sub['id']).status == 'cancelled'


def test_missing_gateway_configuration_is_reported(client, flask_app):
    add_plan()
    flask_app.config['ZARINPAL_MERCHANT_ID'] = None
    sub = order(client)
    resp = client.post('/api/payments/zarinpal/request', json={'subscription_id': sub['id']})
    assert resp.status_code == 500
    assert resp.get_json()['details']['kind'] == 'ConfigurationError'


# --- manual payment & admin decision ---

def test_manual_approval_with_failed_provisioning_then_retry(client, admin_client, fake_session):
    add_plan()
    fake_session.add('POST', 'hooks.example.com', FakeResponse(200, {'ok': True}))
    fake_session.add('POST', 'api.resend.com', FakeResponse(200, {'id': 'e1'}))
    sub = order(client)

    resp = upload_receipt(client, sub['id'])
    assert resp.status_code == 200, resp.get_json()
    stored = reload(Subscription, sub['id'])
    assert stored.status == 'pending_manual_verification'
    assert stored.receipt_image_url.endswith('.png')
    token = stored.admin_decision_token
    assert token

    hook = fake_session.calls_to('hooks.example.com')[0]['json']
    assert hook['type'] == 'manual_payment_approval'
    assert token in hook['approve_link']
    assert EmailNotification.query.filter_by(email_type='admin_manual_payment').count() == 1

    # no panel exists yet, so provisioning fails after the approval
    resp = client.post('/api/admin/decision', json={'id': sub['id'], 'action': 'approve', 'token': token})
    body = resp.get_json()
    assert resp.status_code == 200
    assert body['partial'] is True
    stored = reload(Subscription, sub['id'])
    assert stored.status == 'pending_activation'
    assert stored.admin_decision == 'approved'
    assert stored.admin_decision_token is None
    assert 'Provisioning failed' in stored.notes

    # the token is single use
    resp = client.post('/api/admin/decision', json={'id': sub['id'], 'action': 'approve', 'token': token})
    assert resp.status_code == 404

    add_marzneshin_panel()
    script_marzneshin_success(fake_session)
    resp = admin_client.post(f"/api/admin/subscriptions/{sub['id']}/retry-provision")
    assert resp.status_code == 200
    assert reload(Subscription, sub['id']).status == 'active'


def test_manual_rejection_from_email_link(client, fake_session):
    add_plan()
    sub = order(client, email='alice@example.com')
    upload_receipt(client, sub['id'])
    token = reload(Subscription, sub['id']).admin_decision_token

    resp = client.get(f"/api/admin/decision?id={sub['id']}&action=reject&token={token}")
    assert resp.status_code == 200
    assert b'Payment rejected' in resp.data
    assert reload(Subscription, sub['id']).status == 'rejected'
    assert EmailNotification.query.filter_by(email_type='user_rejection').count() == 1

    resp = client.get(f"/api/admin/decision?id={sub['id']}&action=reject&token={token}")
    assert resp.status_code == 404


def test_decision_with_wrong_token(client):
    add_plan()
    sub = order(client)
    upload_receipt(client, sub['id'])
    resp = client.post('/api/admin/decision', json={'id': sub['id'], 'action': 'approve', 'token': 'guess'})
    assert resp.status_code == 404
    assert reload(Subscription, sub['id']).status == 'pending_manual_verification'


def test_manual_payment_requires_receipt(client):
    add_plan()
    sub = order(client)
    resp = client.post('/api/payments/manual', data={'subscription_id': sub['id']}, content_type='multipart/form-data')
    assert resp.status_code == 400


# --- crypto & card ---

def test_nowpayments_status_confirms_finished_payment(client, fake_session):
    add_plan()
    add_marzneshin_panel()
    script_marzneshin_success(fake_session)
    fake_session.add('POST', 'nowpayments.io/v1/payment', FakeResponse(201, {'payment_id': 4455, 'pay_address': 'TXYZ', 'pay_amount': 5.0}))
    fake_session.add('GET', 'nowpayments.io/v1/payment/4455', FakeResponse(200, {'payment_status': 'finished'}))
    sub = order(client)

    resp = client.post('/api/payments/nowpayments/create', json={'subscription_id': sub['id']})
    assert resp.status_code == 200
    assert resp.get_json()['payment']['payment_id'] == '4455'

    resp = client.get('/api/payments/nowpayments/status/4455')
    assert resp.status_code == 200
    assert resp.get_json()['payment_status'] == 'finished'
    assert reload(Subscription, sub['id']).status == 'active'


def test_nowpayments_expired_payment_fails_order(client, fake_session):
    add_plan()
    fake_session.add('POST', 'nowpayments.io/v1/payment', FakeResponse(201, {'payment_id': 4455}))
    fake_session.add('GET', 'nowpayments.io/v1/payment/4455', FakeResponse(200, {'payment_status': 'expired'}))
    sub = order(client)
    client.post('/api/payments/nowpayments/create', json={'subscription_id': sub['id']})

    client.get('/api/payments/nowpayments/status/4455')

    assert reload(Subscription, sub['id']).status == 'failed'


class FakeStripeSessions:
    def __init__(self):
        self.metadata = {}

    def create(self, **kwargs):
        self.metadata = kwargs['metadata']
        return {'id': 'cs_test_1', 'url': 'https://checkout.stripe.com/c/cs_test_1'}

    def retrieve(self, session_id, api_key=None):
        return {'id': session_id, 'payment_status': 'paid', 'metadata': self.metadata}


def test_stripe_checkout_and_verify(client, fake_session, monkeypatch):
    add_plan()
    add_marzneshin_panel()
    script_marzneshin_success(fake_session)
    sessions = FakeStripeSessions()
    monkeypatch.setattr(app_module, 'get_stripe_client', lambda: SimpleNamespace(checkout=SimpleNamespace(Session=sessions)))
    sub = order(client)

    resp = client.post('/api/payments/stripe/checkout', json={'subscription_id': sub['id']})
    assert resp.status_code == 200
    assert resp.get_json()['session_id'] == 'cs_test_1'

    resp = client.post('/api/payments/stripe/verify', json={'session_id': 'cs_test_1'})
    assert resp.status_code == 200
    stored = reload(Subscription, sub['id'])
    assert stored.status == 'active'
    assert stored.payment_method == 'stripe'


# --- state machine ---

def test_transition_rules(client):
    add_plan()
    sub = order(client)
    with pytest.raises(IllegalTransition):
        transition_subscription(sub['id'], 'active')
    with pytest.raises(IllegalTransition):
        transition_subscription(sub['id'], 'expired', subscription_url='https://x')

    transition_subscription(sub['id'], 'cancelled')
    with pytest.raises(IllegalTransition):
        transition_subscription(sub['id'], 'paid')
    assert reload(Subscription, sub['id']).status == 'cancelled'


# --- admin panel operations ---

def test_admin_endpoints_require_login(client):
    resp = client.post('/api/vpn/create-user', json={'username': 'amy_1', 'dataLimitGB': 5, 'durationDays': 7})
    assert resp.status_code == 401


def test_admin_create_user(admin_client, fake_session):
    add_marzneshin_panel()
    script_marzneshin_success(fake_session, username='amy_1', sub_path='/sub/amy_1/x')

    resp = admin_client.post('/api/vpn/create-user', json={'username': 'amy_1', 'dataLimitGB': 5, 'durationDays': 7})

    body = resp.get_json()
    assert resp.status_code == 200, body
    assert body['data']['panel_name'] == 'mz-1'
    assert body['data']['subscription_url'] == 'https://mz.example.com/sub/amy_1/x'


def test_admin_create_user_taken_username_keeps_panel_online(admin_client, fake_session):
    panel = add_marzneshin_panel()
    fake_session.add('POST', 'mz.example.com/api/admins/token', FakeResponse(200, {'access_token': 'tok'}))
    fake_session.add('GET', 'mz.example.com/api/services', FakeResponse(200, {'items': [{'id': 1, 'name': 'UserInfo'}]}))
    fake_session.add('POST', 'mz.example.com/api/users', FakeResponse(409, {'detail': 'User already exists'}))

    resp = admin_client.post('/api/vpn/create-user', json={'username': 'amy_1', 'dataLimitGB': 5, 'durationDays': 7})

    assert resp.status_code == 409
    assert reload(PanelServer, panel.id).health_status == 'online'


def test_unreachable_panel_is_marked_offline(admin_client, fake_session):
    panel = add_marzneshin_panel()
    resp = admin_client.post('/api/vpn/create-user', json={'username': 'amy_1', 'dataLimitGB': 5, 'durationDays': 7})
    assert resp.status_code == 502
    assert reload(PanelServer, panel.id).health_status == 'offline'


def test_panel_selection_prefers_online(flask_app):
    add_marzneshin_panel('down', health='offline')
    add_marzneshin_panel('up', health='online')
    assert app_module.select_panel('marzneshin').name == 'up'


def test_search_users_collects_per_panel_errors(admin_client, fake_session):
    add_marzneshin_panel('good', panel_url='https://good.example.com')
    add_marzneshin_panel('bad', panel_url='https://bad.example.com')
    fake_session.add('POST', 'good.example.com/api/admins/token', FakeResponse(200, {'access_token': 'tok'}))
    fake_session.add('GET', 'good.example.com/api/users', FakeResponse(200, {'items': [{'username': 'alice_1', 'enabled': True}]}))

    resp = admin_client.post('/api/panels/search-users', json={'searchQuery': 'ali'})

    body = resp.get_json()
    assert resp.status_code == 200
    assert body['results'][0]['users'][0]['username'] == 'alice_1'
    assert body['errors'][0]['panel_name'] == 'bad'

    assert admin_client.post('/api/panels/search-users', json={'searchQuery': 'a'}).status_code == 400


def test_webhook_test_endpoint_logs_delivery(admin_client, fake_session):
    fake_session.add('POST', 'hooks.example.com', FakeResponse(200, {'ok': True}))
    resp = admin_client.post('/api/notifications/webhook-test', json={})
    assert resp.status_code == 200
    assert resp.get_json()['success'] is True
    assert fake_session.calls_to('hooks.example.com')[0]['json']['type'] == 'webhook_test'
    assert WebhookLog.query.count() == 1


# --- input validation ---

@pytest.mark.parametrize('bad', ['1.5', '-10', 'abc'])
def test_order_rejects_malformed_numbers(client, bad):
    add_plan()
    for field in ('data_limit_gb', 'duration_days'):
        body = {'username': 'alice_1', 'mobile': '09121234567', 'plan_id': 'default', 'data_limit_gb': 10, 'duration_days': 30}
        body[field] = bad
        resp = client.post('/api/subscriptions', json=body)
        assert resp.status_code == 400, resp.get_json()
        assert resp.get_json()['details']['field'] == field
    assert Subscription.query.count() == 0


def test_order_accepts_persian_digits(client):
    add_plan()
    sub = order(client, data_limit_gb='۱۰', duration_days='۳۰')
    assert sub['data_limit_gb'] == 10
    assert sub['duration_days'] == 30
    assert sub['price_toman'] == 8000


@pytest.mark.parametrize('bad', ['1.5', '-8000', 'abc'])
def test_zarinpal_request_rejects_malformed_amount(client, fake_session, bad):
    add_plan()
    script_zarinpal(fake_session)
    sub = order(client)
    resp = client.post('/api/payments/zarinpal/request', json={'subscription_id': sub['id'], 'amount': bad})
    assert resp.status_code == 400
    assert fake_session.calls_to('payment/request.json') == []


@pytest.mark.parametrize('bad', ['1.5', '-10', 'abc'])
def test_admin_create_user_rejects_malformed_numbers(admin_client, fake_session, bad):
    add_marzneshin_panel()
    resp = admin_client.post('/api/vpn/create-user', json={'username': 'amy_1', 'dataLimitGB': bad, 'durationDays': 7})
    assert resp.status_code == 400
    resp = admin_client.post('/api/vpn/create-user', json={'username': 'amy_1', 'dataLimitGB': 5, 'durationDays': bad})
    assert resp.status_code == 400
    assert fake_session.calls == []


def test_non_string_panel_type_is_a_bad_request(admin_client, fake_session):
    add_marzneshin_panel()
    resp = admin_client.post('/api/vpn/create-user', json={'username': 'amy_1', 'dataLimitGB': 5, 'durationDays': 7, 'panelType': 5})
    assert resp.status_code == 400
    resp = admin_client.post('/api/vpn/subscription', json={'username': 'amy_1', 'panelType': ['marzban']})
    assert resp.status_code == 400
    assert fake_session.calls == []


def test_search_users_rejects_bad_panel_ids(admin_client, fake_session):
    add_marzneshin_panel()
    for panel_ids in (['abc'], [1, 'x'], ['-1']):
        resp = admin_client.post('/api/panels/search-users', json={'searchQuery': 'ali', 'panelIds': panel_ids})
        assert resp.status_code == 400
    assert fake_session.calls == []


def test_create_plan_validates_panel_mappings(admin_client):
    panel = add_marzneshin_panel()
    for panels in ([{'panel_id': 'abc'}], [{'panel_id': 999}], [{}], ['1']):
        resp = admin_client.post('/api/plans', json={'plan_id': 'gold', 'name_en': 'Gold', 'panels': panels})
        assert resp.status_code == 400, panels
    assert SubscriptionPlan.query.count() == 0

    resp = admin_client.post('/api/plans', json={
        'plan_id': 'gold', 'name_en': 'Gold', 'price_per_gb': '۹۰۰',
        'panels': [{'panel_id': str(panel.id), 'is_primary': True}],
    })
    assert resp.status_code == 201, resp.get_json()
    plan = SubscriptionPlan.query.filter_by(plan_id='gold').one()
    assert plan.price_per_gb == 900
    assert PlanPanelMapping.query.filter_by(plan_id=plan.id, panel_id=panel.id).count() == 1


# --- provisioning terms ---

def test_provisioned_limit_and_expiry_follow_the_order(client, fake_session):
    add_plan('free', price_per_gb=0)
    add_marzneshin_panel()
    script_marzneshin_success(fake_session, expire_date=None)

    before = datetime.utcnow()
    sub = order(client, plan_id='free', data_limit_gb=10, duration_days=30)
    after = datetime.utcnow()

    assert sub['status'] == 'active'
    payload = fake_session.calls_to('mz.example.com/api/users', 'POST')[0]['json']
    assert payload['data_limit'] == 10 * 1073741824
    stored = reload(Subscription, sub['id'])
    assert before + timedelta(days=30) - timedelta(seconds=1) <= stored.expire_at
    assert stored.expire_at <= after + timedelta(days=30) + timedelta(seconds=5)


# --- admin approval ---

def test_manual_approval_provisions_once(client, fake_session):
    add_plan()
    add_marzneshin_panel()
    script_marzneshin_success(fake_session)
    sub = order(client, email='alice@example.com')
    upload_receipt(client, sub['id'])
    token = reload(Subscription, sub['id']).admin_decision_token

    resp = client.post('/api/admin/decision', json={'id': sub['id'], 'action': 'approve', 'token': token})
    body = resp.get_json()
    assert resp.status_code == 200, body
    assert body['partial'] is False
    stored = reload(Subscription, sub['id'])
    assert stored.status == 'active'
    assert stored.admin_decision == 'approved'
    assert stored.subscription_url == 'https://mz.example.com/sub/alice_1/abc'
    assert EmailNotification.query.filter_by(email_type='user_confirmation').count() == 1

    resp = client.post('/api/admin/decision', json={'id': sub['id'], 'action': 'approve', 'token': token})
    assert resp.status_code == 404
    assert len(fake_session.calls_to('mz.example.com/api/users', 'POST')) == 1
    assert reload(Subscription, sub['id']).status == 'active'


# --- renewal ---

def script_renewal(session, username='alice_1', expire_date='2030-02-01T00:00:00'):
    session.add('GET', f'mz.example.com/api/users/{username}', FakeResponse(200, {
        'username': username,
        'subscription_url': f'/sub/{username}/abc',
        'data_limit': 10 * 1024 ** 3,
        'expire_date': '2030-01-01T00:00:00',
    }))
    session.add('PATCH', f'mz.example.com/api/users/{username}', FakeResponse(200, {
        'username': username, 'expire_date': expire_date,
    }))


def active_free_subscription(client, fake_session):
    add_plan('free', price_per_gb=0)
    add_marzneshin_panel()
    script_marzneshin_success(fake_session)
    return order(client, plan_id='free')


def renew(client, **overrides):
    body = {'username': 'alice_1', 'mobile': '09121234567', 'data_limit_gb': 5, 'duration_days': 30}
    body.update(overrides)
    return client.post('/api/subscriptions/renew', json=body)


def test_free_renewal_extends_the_panel_user(client, fake_session):
    previous = active_free_subscription(client, fake_session)
    script_renewal(fake_session)

    resp = renew(client)

    body = resp.get_json()
    assert resp.status_code == 201, body
    renewal = body['subscription']
    assert renewal['status'] == 'active'
    assert renewal['is_renewal'] is True
    assert renewal['panel_id'] == previous['panel_id']
    assert renewal['username'] == 'alice_1'
    patch = fake_session.calls_to('mz.example.com/api/users/alice_1', 'PATCH')[0]['json']
    assert patch['data_limit'] == 15 * 1024 ** 3
    assert patch['expire_after'] == 30
    assert len(fake_session.calls_to('mz.example.com/api/users', 'POST')) == 1
    assert reload(Subscription, renewal['id']).expire_at == datetime(2030, 2, 1)
    assert UserCreationLog.query.filter_by(action='renewal:update_user', success=True).count() == 1


def test_paid_renewal_waits_for_payment(client, fake_session):
    active_free_subscription(client, fake_session)
    add_plan()
    script_renewal(fake_session)
    authority = script_zarinpal(fake_session)

    resp = renew(client, plan_id='default')
    body = resp.get_json()
    assert resp.status_code == 201, body
    assert body['requires_payment'] is True
    renewal = body['subscription']
    assert renewal['price_toman'] == 4000
    assert renewal['status'] == 'pending'
    assert fake_session.calls_to('/api/users/alice_1', 'PATCH') == []

    resp = client.post('/api/payments/zarinpal/request', json={'subscription_id': renewal['id']})
    assert resp.status_code == 200, resp.get_json()
    resp = client.get(f'/api/payments/zarinpal/verify?Authority={authority}&Status=OK')
    assert resp.status_code == 200

    assert reload(Subscription, renewal['id']).status == 'active'
    assert len(fake_session.calls_to('/api/users/alice_1', 'PATCH')) == 1


def test_renewal_limits_and_lookup(client, fake_session):
    active_free_subscription(client, fake_session)
    assert renew(client, data_limit_gb=501).status_code == 400
    assert renew(client, data_limit_gb=0).status_code == 400
    assert renew(client, duration_days=181).status_code == 400
    assert renew(client, duration_days='1.5').status_code == 400
    assert renew(client, mobile='09129999999').status_code == 404
    assert renew(client, username='nobody_1').status_code == 404
    assert Subscription.query.count() == 1


def test_renewal_of_user_missing_on_panel(client, fake_session):
    active_free_subscription(client, fake_session)
    fake_session.add('GET', 'mz.example.com/api/users/alice_1', FakeResponse(404, {'detail': 'User not found'}))
    assert renew(client).status_code == 404
    assert Subscription.query.count() == 1


# --- panel connection test ---

def test_panel_connection_test_records_health(admin_client, fake_session):
    panel = add_marzneshin_panel(health='unknown')
    fake_session.add('POST', 'mz.example.com/api/admins/token', FakeResponse(200, {'access_token': 'tok'}))
    fake_session.add('GET', 'mz.example.com/api/services', FakeResponse(200, {'items': [{'id': 1, 'name': 'UserInfo'}]}))

    resp = admin_client.post(f'/api/panels/{panel.id}/test')

    body = resp.get_json()
    assert resp.status_code == 200, body
    assert body['data'] == {'panel_type': 'marzneshin', 'authenticated': True, 'services': 1}
    stored = reload(PanelServer, panel.id)
    assert stored.health_status == 'online'
    assert stored.last_health_check is not None
    assert fake_session.calls_to('mz.example.com/api/users') == []


def test_panel_connection_test_marks_unreachable_panel_offline(admin_client, fake_session):
    panel = add_marzneshin_panel(health='online')
    resp = admin_client.post(f'/api/panels/{panel.id}/test')
    body = resp.get_json()
    assert resp.status_code == 400
    assert body['success'] is False
    assert body['panel']['health_status'] == 'offline'
    assert reload(PanelServer, panel.id).last_health_check is not None
    assert admin_client.post('/api/panels/999/test').status_code == 404


# --- helpers ---

def test_input_helpers():
    assert app_module.parse_whole_number('۸٬۰۰۰') == 8000
    assert app_module.parse_whole_number(' 1,250 ') == 1250
    assert app_module.parse_whole_number(12.0) == 12
    for bad in ('1.5', '-10', 'abc', '1,250 تومان', '', 1.5, -3, True):
        assert app_module.parse_whole_number(bad) is None
    assert app_module.normalize_mobile('+98 912 123 4567') == '09121234567'
    assert app_module.normalize_mobile('0912') is None
    assert app_module.format_jalali(None) is None
