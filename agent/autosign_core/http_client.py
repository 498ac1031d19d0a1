"""
HTTP sessions with connection pooling and retry, plus the per-account
platform clients.

Every request goes through PlatformClient.request(), which is the only
place that turns transport results into the error taxonomy:

  requests.RequestException          → TransientFetchFailure
  401 / 403                          → AuthExpired
  3xx toward the identity/login page → AuthExpired
"""

import os
import threading

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import log
from .constants import API_TIMEOUT, BRUTEFORCE_BATCH_SIZE, DEFAULT_UA, IDENTITY_HOST
from .errors import AuthExpired, ConfigurationError, TransientFetchFailure

_retry_strategy = Retry(
    total=3,
    backoff_factor=1,                           # Wait 1s, 2s, 4s between retries
    status_forcelist=[502, 503, 504],
    allowed_methods=["HEAD", "GET", "POST", "PUT"],
    raise_on_status=False,
)


def _get_ca_bundle():
    """CA bundle path: env var → certifi → requests default."""
    env_ca = os.environ.get("REQUESTS_CA_BUNDLE") or os.environ.get("SSL_CERT_FILE")
    if env_ca and os.path.isfile(env_ca):
        return env_ca
    try:
        import certifi
        return certifi.where()
    except ImportError:
        return True


def create_session(pool_maxsize=BRUTEFORCE_BATCH_SIZE):
    """Create a requests.Session with pooling sized for a brute-force batch."""
    session = requests.Session()
    adapter = HTTPAdapter(
        pool_connections=2,
        pool_maxsize=pool_maxsize,
        max_retries=_retry_strategy,
    )
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.verify = _get_ca_bundle()
    return session


def reset_session(session):
    """Close and recreate an HTTP session (drops stale connections and cookies)."""
    try:
        session.close()
    except Exception as e:
        log.debug("Session close failed: %s", e)
    return create_session()


# Shared session for notification webhooks.
http = create_session(pool_maxsize=4)


def classify_response(resp):
    """Raise AuthExpired for responses that mean the session is gone."""
    if resp.status_code in (401, 403):
        raise AuthExpired(f"authentication rejected (HTTP {resp.status_code})")
    if 300 <= resp.status_code < 400:
        location = resp.headers.get("location", "") or ""
        if IDENTITY_HOST in location or "login" in location.lower():
            log.info("Redirected to SSO: status=%d location=%s",
                     resp.status_code, location[:100])
            raise AuthExpired(f"redirect to SSO (HTTP {resp.status_code})")
    return resp


class PlatformClient:
    """Base client: one requests.Session per account, redirects handled by us."""

    can_refresh = False

    def __init__(self, session=None, timeout=API_TIMEOUT):
        self.session = session or create_session()
        self.timeout = timeout

    def _prepare(self, headers):
        """Hook for subclasses to attach credentials."""

    def request(self, method, url, **kwargs):
        headers = dict(kwargs.pop("headers", None) or {})
        headers.setdefault("User-Agent", DEFAULT_UA)
        self._prepare(headers)
        kwargs.setdefault("timeout", self.timeout)
        kwargs.setdefault("allow_redirects", False)
        try:
            resp = self.session.request(method, url, headers=headers, **kwargs)
        except requests.RequestException as e:
            raise TransientFetchFailure(f"{method} {url} failed: {e}") from e
        return classify_response(resp)

    def refresh(self) -> bool:
        """Re-establish credentials. Returns True if the client is usable again."""
        return False

    def close(self):
        try:
            self.session.close()
        except Exception as e:
            log.debug("Session close failed: %s", e)


class CookieClient(PlatformClient):
    """Uses a session cookie obtained once at authorization time.

    The password that produced it is gone, so it cannot refresh.
    """

    def __init__(self, cookie, **kwargs):
        if not cookie:
            raise ConfigurationError("cookie-only mode needs a session cookie")
        super().__init__(**kwargs)
        self.cookie = cookie

    def _prepare(self, headers):
        headers.setdefault("Cookie", self.cookie)


class PasswordClient(PlatformClient):
    """Logs in lazily with stored credentials and can log in again on expiry.

    The SSO exchange itself is delegated to `authenticator(session, username,
    password)`, which must leave the session holding valid platform cookies
    or raise.
    """

    can_refresh = True

    def __init__(self, username, password, authenticator, **kwargs):
        if not username or not password:
            raise ConfigurationError("password mode needs a username and a password")
        if authenticator is None:
            raise ConfigurationError("password mode needs an SSO authenticator")
        super().__init__(**kwargs)
        self.username = username
        self._password = password
        self._authenticator = authenticator
        self._logged_in = False
        self._login_lock = threading.Lock()

    def _login(self):
        self._authenticator(self.session, self.username, self._password)
        self._logged_in = True
        log.info("[%s] SSO login completed", self.username)

    def request(self, method, url, **kwargs):
        if not self._logged_in:
            with self._login_lock:
                if not self._logged_in:
                    try:
                        self._login()
                    except requests.RequestException as e:
                        raise TransientFetchFailure(f"SSO login failed: {e}") from e
        return super().request(method, url, **kwargs)

    def refresh(self) -> bool:
        with self._login_lock:
            self._logged_in = False
            self.session = reset_session(self.session)
            try:
                self._login()
                return True
            except Exception as e:
                log.warning("[%s] SSO re-login failed: %s", self.username, e)
                return False
