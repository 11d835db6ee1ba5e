import json
import time
import logging
from datetime import datetime, timedelta, timezone

import requests

from errors import AuthError, ConfigurationError, NotFound, PanelRejected, PanelUnavailable, UsernameTaken

logger = logging.getLogger(__name__)

GB = 1024 ** 3
SECONDS_PER_DAY = 86400

AUTH_TIMEOUT = 15
CREATE_TIMEOUT = 20
CONFIG_TIMEOUT = 30

# Marzneshin services attached to every new user when present on the panel
REQUIRED_SERVICE_NAMES = [
    'UserInfo',
    'FinlandTunnel',
    'GermanyDirect',
    'GermanyTunnel',
    'NetherlandsDirect',
    'NetherlandsTunnel',
    'TurkeyDirect',
    'TurkeyTunnel',
    'UkDirect',
    'UkTunnel',
    'UsDirect',
    'UsTunnel',
    'PolandTunnel',
]


def load_json_field(value, default):
    if value is None or value == '':
        return default
    if isinstance(value, (dict, list)):
        return value
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError):
        return default
    return parsed if isinstance(parsed, type(default)) else default


def format_panel_detail(resp):
    """Turn a panel error body into one readable line.

    FastAPI validation arrays become ``loc: msg`` pairs.
    """
    try:
        body = resp.json()
    except ValueError:
        return (resp.text or '')[:300] or f"HTTP {resp.status_code}"
    detail = body.get('detail') if isinstance(body, dict) else body
    if isinstance(detail, list):
        parts = []
        for item in detail:
            if not isinstance(item, dict):
                parts.append(str(item))
                continue
            loc = '.'.join(str(p) for p in item.get('loc') or [])
            msg = item.get('msg') or ''
            parts.append(f"{loc}: {msg}" if loc else msg)
        return '; '.join(p for p in parts if p) or f"HTTP {resp.status_code}"
    if isinstance(detail, str):
        return detail
    return json.dumps(detail)[:300] if detail else f"HTTP {resp.status_code}"


def _iso_to_unix(value):
    if not value:
        return None
    if isinstance(value, (int, float)):
        return int(value)
    try:
        dt = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


class BasePanelClient:
    panel_type = None

    def __init__(self, panel, session=None, timeout=10, log_sink=None):
        self.panel = panel
        self.panel_id = getattr(panel, 'id', None)
        self.name = getattr(panel, 'name', None) or f"panel-{self.panel_id}"
        raw = (getattr(panel, 'panel_url', '') or '').strip().rstrip('/')
        if raw and '://' not in raw:
            raw = f"http://{raw}"
        self.base_url = raw
        self.username = getattr(panel, 'username', None)
        self.password = getattr(panel, 'password', None)
        if not all([self.base_url, self.username, self.password]):
            raise ConfigurationError(f"Panel {self.name} is missing url or credentials")
        self.config = load_json_field(getattr(panel, 'panel_config_data', None), {})
        self.session = session or requests.Session()
        self.timeout = timeout
        self.log_sink = log_sink
        self.access_token = None

    # --- transport ---

    def _request(self, method, path, timeout=None, headers=None, **kwargs):
        url = f"{self.base_url}{path}"
        all_headers = {'accept': 'application/json'}
        if self.access_token:
            all_headers['Authorization'] = f"Bearer {self.access_token}"
        all_headers.update(headers or {})
        try:
            return self.session.request(method, url, headers=all_headers, timeout=timeout or self.timeout, **kwargs)
        except requests.Timeout as e:
            raise PanelUnavailable(f"Panel {self.name} timed out", details={'url': url}) from e
        except requests.RequestException as e:
            raise PanelUnavailable(f"Panel {self.name} is unreachable: {e}", details={'url': url}) from e

    def _json(self, resp):
        try:
            return resp.json()
        except ValueError as e:
            raise PanelUnavailable(
                f"Panel {self.name} returned a non-JSON response",
                details={'status': resp.status_code, 'raw_response': (resp.text or '')[:300]},
            ) from e

    def _raise_for_status(self, resp):
        status = resp.status_code
        if status < 400:
            return
        detail = format_panel_detail(resp)
        details = {'status': status, 'raw_response': (resp.text or '')[:300]}
        if status in (401, 403):
            raise AuthError(f"Panel {self.name} rejected credentials", details=details)
        if status == 409:
            raise UsernameTaken(f"This username is already taken: {detail}", details=details)
        if status >= 500:
            raise PanelUnavailable(f"Panel {self.name} error {status}", details=details)
        raise PanelRejected(detail, details=details)

    def _report(self, action, request_data, response_data=None, error=None):
        if not self.log_sink:
            return
        try:
            self.log_sink(
                action=action,
                panel=self.panel,
                request_data=request_data,
                response_data=response_data,
                success=error is None,
                error_message=error,
            )
        except Exception:
            logger.exception(f"Failed to record {action} log for panel {self.name}")

    def _subscription_url(self, username, value):
        if not value:
            return f"{self.base_url}/sub/{username}"
        if value.startswith('http://') or value.startswith('https://'):
            return value
        return f"{self.base_url}{value if value.startswith('/') else '/' + value}"

    # --- public contract ---

    def authenticate(self):
        raise NotImplementedError

    def _logged(self, action, request_data, call, summarize=None):
        """Run one panel call and hand its outcome to the log sink, success or not."""
        request_data = dict(request_data, panel_url=self.base_url)
        try:
            result = call()
        except Exception as e:
            self._report(action, request_data, error=f"{e.__class__.__name__}: {e}")
            raise
        self._report(action, request_data, response_data=summarize(result) if summarize else result)
        return result

    def create_user(self, username, data_limit_gb, duration_days, notes=''):
        result = self._logged(
            'create_user',
            {'username': username, 'data_limit_gb': data_limit_gb, 'duration_days': duration_days, 'notes': notes or ''},
            lambda: self._create_user(username, data_limit_gb, int(duration_days), notes or ''),
        )
        logger.info(f"Created user {username} on {self.panel_type} panel {self.name}")
        return result

    def update_user(self, username, data_limit_gb, duration_days):
        """Renew an existing user: add traffic on top of the current limit and extend the expiry."""
        result = self._logged(
            'update_user',
            {'username': username, 'data_limit_gb': data_limit_gb, 'duration_days': duration_days},
            lambda: self._update_user(username, data_limit_gb, int(duration_days)),
        )
        logger.info(f"Renewed user {username} on {self.panel_type} panel {self.name}")
        return result

    def get_user(self, username):
        return self._logged('get_user', {'username': username}, lambda: self._get_user(username))

    def search_users(self, query):
        return self._logged(
            'search_users', {'query': query},
            lambda: self._search_users(query),
            summarize=lambda users: {'count': len(users), 'usernames': [u.get('username') for u in users]},
        )

    def fetch_config(self):
        return self._logged('fetch_config', {}, self._fetch_config)

    def check_connection(self):
        """Log in and make one cheap authenticated read."""
        def call():
            self.access_token = None
            self.authenticate()
            result = {'panel_type': self.panel_type, 'authenticated': True}
            result.update(self._check_access())
            return result
        return self._logged('check_connection', {}, call)

    def _create_user(self, username, data_limit_gb, duration_days, notes):
        raise NotImplementedError

    def _update_user(self, username, data_limit_gb, duration_days):
        raise NotImplementedError

    def _get_user(self, username):
        raise NotImplementedError

    def _search_users(self, query):
        raise NotImplementedError

    def _fetch_config(self):
        raise NotImplementedError

    def _check_access(self):
        raise NotImplementedError

    def _renewal_terms(self, current, data_limit_gb, duration_days):
        """Work out the new limit and expiry from the user's current state."""
        previous = int(current.get('data_limit') or 0)
        added = int(float(data_limit_gb) * GB)
        expire = max(int(time.time()), int(current.get('expire') or 0)) + duration_days * SECONDS_PER_DAY
        return previous, added, expire


class MarzbanClient(BasePanelClient):
    panel_type = 'marzban'

    def authenticate(self):
        if self.access_token:
            return self.access_token
        resp = self._request(
            'POST', '/api/admin/token',
            data={'username': self.username, 'password': self.password, 'grant_type': 'password'},
            headers={'Content-Type': 'application/x-www-form-urlencoded'},
            timeout=AUTH_TIMEOUT,
        )
        if resp.status_code in (400, 401, 403, 422):
            raise AuthError(f"Marzban login failed for {self.name}: {resp.status_code}")
        self._raise_for_status(resp)
        token = self._json(resp).get('access_token')
        if not token:
            raise AuthError(f"Marzban panel {self.name} returned no access token")
        self.access_token = token
        return token

    def _resolve_proxies(self):
        proxies = self.config.get('proxies') or {}
        inbounds = self.config.get('inbounds') or {}
        if proxies:
            return proxies, inbounds

        enabled = [str(p).lower() for p in load_json_field(getattr(self.panel, 'enabled_protocols', None), [])]
        resp = self._request('GET', '/api/inbounds')
        self._raise_for_status(resp)
        for protocol, items in (self._json(resp) or {}).items():
            if enabled and protocol.lower() not in enabled:
                continue
            tags = [i.get('tag') for i in items or [] if isinstance(i, dict) and i.get('tag')]
            if tags:
                inbounds[protocol] = tags
                proxies[protocol] = {}
        if not proxies:
            raise PanelRejected(f"No enabled inbounds found on panel {self.name}")
        return proxies, inbounds

    def _create_user(self, username, data_limit_gb, duration_days, notes):
        self.authenticate()
        data_limit = int(float(data_limit_gb) * GB)
        expire = int(time.time()) + duration_days * SECONDS_PER_DAY
        payload = {
            'username': username,
            'data_limit': data_limit,
            'expire': expire,
            'data_limit_reset_strategy': 'no_reset',
            'status': 'active',
            'note': notes,
        }
        if self.config.get('type') == 'beta':
            payload['proxy_settings'] = self.config.get('proxy_settings') or {}
            payload['group_ids'] = self.config.get('group_ids') or []
        else:
            proxies, inbounds = self._resolve_proxies()
            payload['proxies'] = proxies
            if inbounds:
                payload['inbounds'] = inbounds

        resp = self._request('POST', '/api/user', json=payload, timeout=CREATE_TIMEOUT)
        self._raise_for_status(resp)
        body = self._json(resp)
        return {
            'username': body.get('username') or username,
            'subscription_url': self._subscription_url(username, body.get('subscription_url')),
            'expire': body.get('expire') or expire,
            'data_limit': body.get('data_limit') or data_limit,
        }

    def _normalize_user(self, body):
        username = body.get('username')
        return {
            'username': username,
            'subscription_url': self._subscription_url(username, body.get('subscription_url')),
            'expire': body.get('expire'),
            'data_limit': body.get('data_limit'),
            'status': body.get('status'),
            'used_traffic': body.get('used_traffic') or 0,
        }

    def _update_user(self, username, data_limit_gb, duration_days):
        current = self._get_user(username)
        previous, added, expire = self._renewal_terms(current, data_limit_gb, duration_days)
        payload = {'data_limit': previous + added, 'expire': expire, 'status': 'active'}
        resp = self._request('PUT', f"/api/user/{username}", json=payload, timeout=CREATE_TIMEOUT)
        self._raise_for_status(resp)
        body = self._json(resp)
        return {
            'username': username,
            'subscription_url': self._subscription_url(username, body.get('subscription_url') or current.get('subscription_url')),
            'expire': body.get('expire') or expire,
            'data_limit': previous + added,
            'previous_data_limit': previous,
            'added_data_limit': added,
        }

    def _get_user(self, username):
        self.authenticate()
        resp = self._request('GET', f"/api/user/{username}")
        if resp.status_code == 404:
            raise NotFound(f"User {username} not found on panel {self.name}")
        self._raise_for_status(resp)
        return self._normalize_user(self._json(resp))

    def _search_users(self, query):
        self.authenticate()
        resp = self._request('GET', '/api/users', params={'search': query, 'limit': 50})
        self._raise_for_status(resp)
        body = self._json(resp)
        users = body.get('users', []) if isinstance(body, dict) else body
        return [self._normalize_user(u) for u in users or []]

    def _check_access(self):
        resp = self._request('GET', '/api/system')
        self._raise_for_status(resp)
        body = self._json(resp) or {}
        return {'version': body.get('version'), 'total_users': body.get('total_user')}

    def _fetch_config(self):
        """Read the template user and return the proxy layout new users copy."""
        self.authenticate()
        template = self.config.get('template_username') or 'reza'
        resp = self._request('GET', f"/api/user/{template}", timeout=CONFIG_TIMEOUT)
        if resp.status_code == 404:
            raise NotFound(f"Template user {template} not found on panel {self.name}")
        self._raise_for_status(resp)
        body = self._json(resp)
        if 'group_ids' in body:
            return {
                'type': 'beta',
                'template_username': template,
                'proxy_settings': body.get('proxy_settings') or body.get('proxies') or {},
                'group_ids': body.get('group_ids') or [],
            }
        return {
            'type': 'standard',
            'template_username': template,
            'proxies': body.get('proxies') or {},
            'inbounds': body.get('inbounds') or {},
        }


class MarzneshinClient(BasePanelClient):
    panel_type = 'marzneshin'

    def authenticate(self):
        if self.access_token:
            return self.access_token
        creds = {'username': self.username, 'password': self.password, 'grant_type': 'password'}
        resp = self._request(
            'POST', '/api/admins/token',
            data=creds,
            headers={'Content-Type': 'application/x-www-form-urlencoded'},
            timeout=AUTH_TIMEOUT,
        )
        if resp.status_code in (400, 415, 422):
            logger.info(f"Marzneshin {self.name} refused form login ({resp.status_code}), retrying as JSON")
            resp = self._request('POST', '/api/admins/token', json=creds, timeout=AUTH_TIMEOUT)
        if resp.status_code in (400, 401, 403, 422):
            raise AuthError(f"Marzneshin login failed for {self.name}: {resp.status_code}")
        self._raise_for_status(resp)
        token = self._json(resp).get('access_token')
        if not token:
            raise AuthError(f"Marzneshin panel {self.name} returned no access token")
        self.access_token = token
        return token

    def _list_services(self):
        resp = self._request('GET', '/api/services', params={'size': 100})
        self._raise_for_status(resp)
        body = self._json(resp)
        return body.get('items', []) if isinstance(body, dict) else (body or [])

    def _resolve_service_ids(self):
        services = self._list_services()
        if not services:
            raise PanelRejected(f"Panel {self.name} has no services configured")
        wanted = self.config.get('service_names') or REQUIRED_SERVICE_NAMES
        ids = [s['id'] for s in services if s.get('name') in wanted and s.get('id') is not None]
        if not ids:
            logger.warning(f"None of the required services exist on {self.name}; attaching all services")
            ids = [s['id'] for s in services if s.get('id') is not None]
        return ids

    def _create_user(self, username, data_limit_gb, duration_days, notes):
        self.authenticate()
        service_ids = self._resolve_service_ids()
        data_limit = int(float(data_limit_gb) * GB)
        expire_dt = datetime.now(timezone.utc) + timedelta(days=duration_days)
        expire_date = expire_dt.strftime('%Y-%m-%d')
        base = {
            'username': username,
            'service_ids': service_ids,
            'data_limit': data_limit,
            'data_limit_reset_strategy': 'no_reset',
            'note': notes,
        }
        # the accepted expire schema differs between panel versions
        strategies = [
            ('fixed_date', {'expire_strategy': 'fixed_date', 'expire_date': expire_date}),
            ('fixed_date_alt', {'expire_strategy': 'fixed_date', 'expire': expire_date}),
            ('start_on_first_use', {'expire_strategy': 'start_on_first_use', 'usage_duration': duration_days * SECONDS_PER_DAY}),
            ('never', {'expire_strategy': 'never'}),
        ]
        last_detail = None
        for name, extra in strategies:
            payload = dict(base, **extra)
            resp = self._request('POST', '/api/users', json=payload, timeout=CREATE_TIMEOUT)
            if resp.status_code in (400, 422):
                last_detail = format_panel_detail(resp)
                logger.warning(f"Marzneshin {self.name} rejected strategy {name}: {last_detail}")
                continue
            self._raise_for_status(resp)
            body = self._json(resp)
            expire = _iso_to_unix(body.get('expire_date'))
            if expire is None and name != 'never':
                expire = int(expire_dt.timestamp())
            return {
                'username': body.get('username') or username,
                'subscription_url': self._subscription_url(username, body.get('subscription_url')),
                'expire': expire,
                'data_limit': body.get('data_limit') or data_limit,
                'expire_strategy': name,
            }
        raise PanelRejected(
            f"Panel {self.name} rejected every expire strategy: {last_detail}",
            details={'last_error': last_detail},
        )

    def _normalize_user(self, body):
        username = body.get('username')
        status = 'active' if body.get('enabled', True) and not body.get('expired') else 'disabled'
        return {
            'username': username,
            'subscription_url': self._subscription_url(username, body.get('subscription_url')),
            'expire': _iso_to_unix(body.get('expire_date')),
            'data_limit': body.get('data_limit'),
            'status': body.get('status') or status,
            'used_traffic': body.get('used_traffic') or 0,
        }

    def _update_user(self, username, data_limit_gb, duration_days):
        current = self._get_user(username)
        previous, added, expire = self._renewal_terms(current, data_limit_gb, duration_days)
        total = previous + added
        expire_date = datetime.fromtimestamp(expire, timezone.utc).strftime('%Y-%m-%dT%H:%M:%S')
        strategies = [
            ('expire_after', {
                'expire_strategy': 'expire_after',
                'expire_after': duration_days,
                'usage_duration': duration_days * SECONDS_PER_DAY,
            }),
            ('fixed_date', {'expire_strategy': 'fixed_date', 'expire_date': expire_date}),
        ]
        last_detail = None
        for name, extra in strategies:
            payload = dict({'data_limit': total}, **extra)
            resp = self._request('PATCH', f"/api/users/{username}", json=payload, timeout=CREATE_TIMEOUT)
            if resp.status_code in (400, 422):
                last_detail = format_panel_detail(resp)
                logger.warning(f"Marzneshin {self.name} rejected renewal strategy {name}: {last_detail}")
                continue
            self._raise_for_status(resp)
            body = self._json(resp)
            return {
                'username': username,
                'subscription_url': current['subscription_url'],
                'expire': _iso_to_unix(body.get('expire_date')) or expire,
                'data_limit': total,
                'previous_data_limit': previous,
                'added_data_limit': added,
                'expire_strategy': name,
            }
        raise PanelRejected(
            f"Panel {self.name} rejected the renewal: {last_detail}",
            details={'last_error': last_detail},
        )

    def _get_user(self, username):
        self.authenticate()
        resp = self._request('GET', f"/api/users/{username}")
        if resp.status_code == 404:
            raise NotFound(f"User {username} not found on panel {self.name}")
        self._raise_for_status(resp)
        return self._normalize_user(self._json(resp))

    def _search_users(self, query):
        self.authenticate()
        resp = self._request('GET', '/api/users', params={'username': query, 'size': 50})
        self._raise_for_status(resp)
        body = self._json(resp)
        users = body.get('items', []) if isinstance(body, dict) else body
        return [self._normalize_user(u) for u in users or []]

    def _check_access(self):
        return {'services': len(self._list_services())}

    def _fetch_config(self):
        self.authenticate()
        services = [{'id': s.get('id'), 'name': s.get('name')} for s in self._list_services()]
        resp = self._request('GET', '/api/inbounds', params={'size': 100}, timeout=CONFIG_TIMEOUT)
        self._raise_for_status(resp)
        body = self._json(resp)
        inbounds = body.get('items', []) if isinstance(body, dict) else (body or [])
        return {
            'type': 'marzneshin',
            'services': services,
            'service_names': [s['name'] for s in services if s.get('name') in REQUIRED_SERVICE_NAMES],
            'inbounds': [{'id': i.get('id'), 'tag': i.get('tag'), 'protocol': i.get('protocol')} for i in inbounds],
        }


PANEL_CLIENTS = {
    'marzban': MarzbanClient,
    'marzneshin': MarzneshinClient,
}


def get_panel_client(panel, **kwargs):
    panel_type = (getattr(panel, 'type', '') or '').strip().lower()
    client_cls = PANEL_CLIENTS.get(panel_type)
    if not client_cls:
        raise ConfigurationError(f"Unsupported panel type: {panel_type or 'unset'}")
    return client_cls(panel, **kwargs)
