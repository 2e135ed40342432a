"""Vendor login flows.

Two authenticators produce :class:`~envibridge.credentials.Credential`
objects for the :class:`~envibridge.credentials.CredentialStore`:

* :class:`FormLoginAuthenticator`: a single URL-encoded form POST that
  returns ``{"data": {"token": ...}}`` (Envi heaters).
* :class:`OAuthHandshakeAuthenticator`: a browser-emulating handshake that
  scrapes an HTML login form, submits it, captures the authorization code from
  the redirect and exchanges it for an access/refresh token pair (purifier
  cloud).

Each authenticator opens its own short-lived HTTP session, so login cookies
never leak into the long-lived API session.
"""

from __future__ import annotations

import abc
import contextlib
import logging
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from html.parser import HTMLParser
from http.cookies import SimpleCookie

import aiohttp
from yarl import URL

from envibridge._constants import (
    BROWSER_USER_AGENT,
    DEFAULT_REQUEST_TIMEOUT,
    ENVI_API_BASE,
    ENVI_LOGIN_FIELDS,
    PURIFIER_AUTH_PARAMS,
    PURIFIER_CLIENT_FIELDS,
    PURIFIER_LOGIN_INIT_URL,
    PURIFIER_REFRESH_URL,
    PURIFIER_TOKEN_URL,
)
from envibridge.credentials import AccountCredentials, Credential
from envibridge.errors import (
    AuthenticationError,
    AuthorizationExpired,
    BridgeError,
    CommunicationFailure,
    HandshakeStep,
    ProtocolError,
)

_LOGGER = logging.getLogger(__name__)

HTTP_FOUND = 302


class Authenticator(abc.ABC):
    """Performs a vendor login for one account."""

    def __init__(
        self, account: AccountCredentials, *, timeout: float = DEFAULT_REQUEST_TIMEOUT
    ) -> None:
        self._account = account
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    @property
    def username(self) -> str:
        return self._account.username

    @abc.abstractmethod
    async def authenticate(self, previous: Credential) -> Credential:
        """Log in and return a complete credential.

        *previous* is the store's current (rejected or empty) credential;
        authenticators that support refresh tokens may use it.
        """


# ---------------------------------------------------------------------------
# Simple backend
# ---------------------------------------------------------------------------


class FormLoginAuthenticator(Authenticator):
    """Direct username/password form login."""

    def __init__(
        self,
        account: AccountCredentials,
        *,
        login_url: str = f"{ENVI_API_BASE}/auth/login",
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        super().__init__(account, timeout=timeout)
        self._login_url = login_url

    async def authenticate(self, previous: Credential) -> Credential:
        form = {
            "username": self._account.username,
            "password": self._account.password,
            **ENVI_LOGIN_FIELDS,
        }
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self._login_url, data=form, timeout=self._timeout
                ) as resp:
                    if not 200 <= resp.status < 300:
                        raise AuthenticationError(f"Login failed: HTTP {resp.status}")
                    body = await resp.json(content_type=None)
        except (aiohttp.ClientError, TimeoutError) as err:
            raise AuthenticationError(f"Login request failed: {err}") from err
        except ValueError as err:
            raise AuthenticationError("Login response is not JSON") from err

        data = body.get("data") if isinstance(body, Mapping) else None
        token = data.get("token") if isinstance(data, Mapping) else None
        if not isinstance(token, str) or not token:
            raise AuthenticationError("Login response has no data.token")

        _LOGGER.info("Logged in as %s", self._account.username)
        return Credential(access_token=token)


# ---------------------------------------------------------------------------
# Complex backend
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LoginPage:
    """Result of :attr:`HandshakeStep.INIT_PAGE`."""

    url: str
    html: str
    cookie_header: str


@dataclass(frozen=True)
class LoginForm:
    """Result of :attr:`HandshakeStep.EXTRACT_FORM`."""

    action: str
    method: str


@dataclass(frozen=True)
class AuthorizationCode:
    """Result of :attr:`HandshakeStep.EXTRACT_CODE`."""

    code: str
    redirect_url: str


class _FormCollector(HTMLParser):
    def __init__(self) -> None:
        super().__init__()
        self.forms: list[dict[str, str | None]] = []

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag == "form":
            self.forms.append(dict(attrs))


def parse_login_form(page: LoginPage) -> LoginForm:
    """Find the login ``<form>`` in *page* and resolve its action URL.

    A form whose ``id`` or ``name`` mentions "login" wins; otherwise the
    first form on the page is used.  A form without ``action`` posts back to
    the page itself.
    """
    collector = _FormCollector()
    collector.feed(page.html)
    collector.close()
    if not collector.forms:
        raise ProtocolError("Login page has no <form>", step=HandshakeStep.EXTRACT_FORM)

    form = collector.forms[0]
    for candidate in collector.forms:
        label = f"{candidate.get('id') or ''} {candidate.get('name') or ''}".lower()
        if "login" in label:
            form = candidate
            break

    action = URL(page.url).join(URL(form.get("action") or ""))
    method = (form.get("method") or "POST").upper()
    return LoginForm(action=str(action), method=method)


def parse_authorization_code(location: str | None, base_url: str) -> AuthorizationCode:
    """Pull the ``code`` parameter out of the login redirect."""
    if not location:
        raise ProtocolError("Login redirect has no Location", step=HandshakeStep.EXTRACT_CODE)
    url = URL(base_url).join(URL(location))
    code = url.query.get("code")
    if not code:
        raise ProtocolError(
            "Login redirect carries no authorization code", step=HandshakeStep.EXTRACT_CODE
        )
    return AuthorizationCode(code=code, redirect_url=str(url.with_query(None).with_fragment(None)))


def collect_cookies(cookies: SimpleCookie) -> str:
    """Serialise a response's parsed cookies as one ``Cookie`` header value."""
    return "; ".join(f"{morsel.key}={morsel.value}" for morsel in cookies.values())


def parse_token_pair(body: object, *, step: HandshakeStep | None = None) -> tuple[str, str]:
    """Extract ``(accessToken, refreshToken)`` from a ``{"data": {...}}`` envelope."""
    data = body.get("data") if isinstance(body, Mapping) else None
    if not isinstance(data, Mapping):
        raise ProtocolError("Token response has no data object", step=step)
    access = data.get("accessToken")
    refresh = data.get("refreshToken")
    if not isinstance(access, str) or not access or not isinstance(refresh, str):
        raise ProtocolError("Token response is missing accessToken/refreshToken", step=step)
    return access, refresh


@contextlib.contextmanager
def _network_errors(step: HandshakeStep | None) -> Iterator[None]:
    try:
        yield
    except (aiohttp.ClientError, TimeoutError) as err:
        label = step.value if step is not None else "Token refresh"
        raise CommunicationFailure(f"{label} request failed: {err}") from err


class OAuthHandshakeAuthenticator(Authenticator):
    """Browser-emulating OAuth login against the purifier cloud.

    InitPage, ExtractForm, SubmitLogin, ExtractCode and ExchangeToken run
    strictly in order, each consuming the previous step's
    result.  The credential is returned only after the token exchange
    succeeds, so a failure part-way never exposes half a login.

    Refresh tokens are used only when *use_refresh_token* is set; the vendor
    rate-limits the refresh endpoint, so any refresh failure falls back to
    the full handshake.
    """

    def __init__(
        self,
        account: AccountCredentials,
        *,
        init_url: str = PURIFIER_LOGIN_INIT_URL,
        token_url: str = PURIFIER_TOKEN_URL,
        refresh_url: str = PURIFIER_REFRESH_URL,
        use_refresh_token: bool = False,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        super().__init__(account, timeout=timeout)
        self._init_url = init_url
        self._token_url = token_url
        self._refresh_url = refresh_url
        self._use_refresh_token = use_refresh_token

    async def authenticate(self, previous: Credential) -> Credential:
        if self._use_refresh_token and previous.refresh_token:
            try:
                return await self.refresh(previous.refresh_token)
            except BridgeError as err:
                _LOGGER.warning("Token refresh failed, falling back to full login: %s", err)
        return await self.login()

    async def login(self) -> Credential:
        """Run the full handshake."""
        async with aiohttp.ClientSession(cookie_jar=aiohttp.DummyCookieJar()) as session:
            page = await self._fetch_login_page(session)
            form = parse_login_form(page)
            location = await self._submit_login(session, page, form)
            code = parse_authorization_code(location, form.action)
            access, refresh = await self._exchange_code(session, code)
        _LOGGER.info("Logged in as %s", self._account.username)
        return Credential(access_token=access, refresh_token=refresh, issued_implicitly=True)

    async def refresh(self, refresh_token: str) -> Credential:
        """Trade *refresh_token* for a new token pair.

        Raises :class:`AuthorizationExpired` if the endpoint rejects it.
        """
        with _network_errors(None):
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self._refresh_url,
                    json={"refreshToken": refresh_token},
                    timeout=self._timeout,
                ) as resp:
                    if not 200 <= resp.status < 300:
                        raise AuthorizationExpired(f"Refresh token rejected: HTTP {resp.status}")
                    body = await _read_json(resp, None)
        access, refresh = parse_token_pair(body)
        _LOGGER.debug("Refreshed access token")
        return Credential(access_token=access, refresh_token=refresh)

    # -- steps --------------------------------------------------------------

    async def _fetch_login_page(self, session: aiohttp.ClientSession) -> LoginPage:
        step = HandshakeStep.INIT_PAGE
        with _network_errors(step):
            async with session.get(
                self._init_url,
                params=PURIFIER_AUTH_PARAMS,
                headers={"User-Agent": BROWSER_USER_AGENT, "Accept": "text/html"},
                timeout=self._timeout,
            ) as resp:
                if resp.status != 200:
                    raise ProtocolError(f"Login page returned HTTP {resp.status}", step=step)
                html = await resp.text()
                cookies = collect_cookies(resp.cookies)
                url = str(resp.url)
        _LOGGER.debug("Fetched login page %s", URL(url).with_query(None))
        return LoginPage(url=url, html=html, cookie_header=cookies)

    async def _submit_login(
        self, session: aiohttp.ClientSession, page: LoginPage, form: LoginForm
    ) -> str | None:
        step = HandshakeStep.SUBMIT_LOGIN
        fields = {
            "username": self._account.username,
            "password": self._account.password,
            **PURIFIER_CLIENT_FIELDS,
        }
        headers = {"User-Agent": BROWSER_USER_AGENT, "Referer": page.url}
        if page.cookie_header:
            headers["Cookie"] = page.cookie_header
        payload: dict[str, object] = (
            {"params": fields} if form.method == "GET" else {"data": fields}
        )
        with _network_errors(step):
            async with session.request(
                form.method,
                form.action,
                headers=headers,
                allow_redirects=False,
                timeout=self._timeout,
                **payload,  # type: ignore[arg-type]
            ) as resp:
                if resp.status != HTTP_FOUND:
                    raise ProtocolError(
                        f"Expected a 302 after submitting credentials, got HTTP {resp.status} "
                        "(wrong username/password or the login page changed)",
                        step=step,
                    )
                return resp.headers.get("Location")

    async def _exchange_code(
        self, session: aiohttp.ClientSession, code: AuthorizationCode
    ) -> tuple[str, str]:
        step = HandshakeStep.EXCHANGE_TOKEN
        with _network_errors(step):
            async with session.post(
                self._token_url,
                json={"authCode": code.code, "redirectUrl": code.redirect_url},
                timeout=self._timeout,
            ) as resp:
                if not 200 <= resp.status < 300:
                    raise ProtocolError(f"Token exchange returned HTTP {resp.status}", step=step)
                body = await _read_json(resp, step)
        return parse_token_pair(body, step=step)


async def _read_json(resp: aiohttp.ClientResponse, step: HandshakeStep | None) -> object:
    try:
        return await resp.json(content_type=None)
    except ValueError as err:
        raise ProtocolError("Response body is not JSON", step=step) from err
