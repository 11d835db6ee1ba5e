import os
import tempfile

import pytest
import requests

_TMP = tempfile.mkdtemp(prefix='storefront-tests-')
os.environ['DATABASE_URL'] = f"sqlite:///{os.path.join(_TMP, 'test.db')}"
os.environ['RECEIPTS_DIR'] = os.path.join(_TMP, 'receipts')
os.environ['RATELIMIT_ENABLED'] = '0'
os.environ['DISABLE_BACKGROUND_THREADS'] = '1'
os.environ.setdefault('SESSION_SECRET', 'test-secret')

import app as app_module  # noqa: E402


class FakeResponse:
    def __init__(self, status_code=200, json_data=None, text=None):
        self.status_code = status_code
        self._json = json_data
        if text is None:
            text = '' if json_data is None else repr(json_data)
        self.text = text

    def json(self):
        if self._json is None:
            raise ValueError('No JSON object could be decoded')
        return self._json


class FakeSession:
    """Scripted stand-in for ``requests.Session``.

    Routes match on method plus a URL fragment, longest fragment first.
    A route with several responses hands them out in order and repeats the last.
    """

    def __init__(self):
        self.routes = []
        self.calls = []

    def add(self, method, fragment, *responses):
        self.routes.append((method.upper(), fragment, list(responses)))
        return self

    def request(self, method, url, **kwargs):
        method = method.upper()
        self.calls.append(dict(kwargs, method=method, url=url))
        candidates = [r for r in self.routes if r[0] == method and r[1] in url]
        if not candidates:
            raise requests.ConnectionError(f"No fake route for {method} {url}")
        _, _, queue = max(candidates, key=lambda r: len(r[1]))
        resp = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(resp, Exception):
            raise resp
        return resp

    def get(self, url, **kwargs):
        return self.request('GET', url, **kwargs)

    def post(self, url, **kwargs):
        return self.request('POST', url, **kwargs)

    def calls_to(self, fragment, method=None):
        return [c for c in self.calls if fragment in c['url'] and (method is None or c['method'] == method.upper())]


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def flask_app(monkeypatch, fake_session):
    flask_app = app_module.app
    flask_app.config.update(
        TESTING=True,
        PUBLIC_BASE_URL='https://shop.example.com',
        ZARINPAL_MERCHANT_ID='merchant-1234-5678',
        NOWPAYMENTS_API_KEY='np-key',
        STRIPE_SECRET_KEY='sk_test_123',
        RESEND_API_KEY='re_test',
        ADMIN_NOTIFY_EMAIL='owner@example.com',
        WEBHOOK_URL='https://hooks.example.com/orders',
        DEFAULT_PANEL_TYPE='marzneshin',
    )
    monkeypatch.setattr(app_module, 'get_http_session', lambda: fake_session)
    with flask_app.app_context():
        app_module.db.drop_all()
        app_module.db.create_all()
        yield flask_app
        app_module.db.session.remove()


@pytest.fixture
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture
def admin_client(client):
    with client.session_transaction() as sess:
        sess['admin_id'] = 1
        sess['admin_username'] = 'admin'
    return client


def reload(model_cls, pk):
    app_module.db.session.expire_all()
    return app_module.db.session.get(model_cls, pk)


def add_marzneshin_panel(name='mz-1', health='online', **overrides):
    fields = dict(
        name=name,
        type='marzneshin',
        panel_url='https://mz.example.com',
        username='root',
        password='secret',
        is_active=True,
        health_status=health,
    )
    fields.update(overrides)
    panel = app_module.PanelServer(**fields)
    app_module.db.session.add(panel)
    app_module.db.session.commit()
    return panel


def script_marzneshin_success(session, username='alice_1', sub_path='/sub/alice_1/abc', expire_date='2030-01-01T00:00:00'):
    session.add('POST', 'mz.example.com/api/admins/token', FakeResponse(200, {'access_token': 'tok'}))
    session.add('GET', 'mz.example.com/api/services', FakeResponse(200, {'items': [
        {'id': 1, 'name': 'UserInfo'}, {'id': 2, 'name': 'GermanyDirect'}, {'id': 9, 'name': 'Other'},
    ]}))
    session.add('POST', 'mz.example.com/api/users', FakeResponse(200, {
        'username': username,
        'subscription_url': sub_path,
        'expire_date': expire_date,
        'data_limit': 10 * 1024 ** 3,
    }))
    session.add('POST', 'hooks.example.com', FakeResponse(200, {'ok': True}))
    session.add('POST', 'api.resend.com', FakeResponse(200, {'id': 'email-1'}))
    return session
