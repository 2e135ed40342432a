"""In-memory credential holder with single-flight re-authentication."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credential:
    """Access credential for one account session.

    Validity is never tracked locally; an expired token is discovered when the
    API rejects it.
    """

    access_token: str = ""
    refresh_token: str | None = None
    issued_implicitly: bool = False
    """True when the token came from the browser-emulating code exchange."""

    def without_access_token(self) -> Credential:
        """Return a copy with the access token cleared and the refresh token kept."""
        return Credential("", self.refresh_token, self.issued_implicitly)


@dataclass(frozen=True)
class AccountCredentials:
    """Username and password from configuration."""

    username: str
    password: str

    def __repr__(self) -> str:
        return f"AccountCredentials(username={self.username!r}, password='***')"


class CredentialStore:
    """Owns the current :class:`Credential` for one account.

    All writes go through :meth:`replace`, :meth:`invalidate` or a completed
    authentication.  Concurrent callers of :meth:`authenticate_if_needed`
    share a single in-flight authentication task, so N requests that all see
    an expired token trigger one login, and a failed login is reported to
    every waiter.
    """

    def __init__(
        self,
        authenticate: Callable[[Credential], Awaitable[Credential]],
        credential: Credential | None = None,
    ) -> None:
        self._authenticate = authenticate
        self._credential = credential or Credential()
        self._pending: asyncio.Task[Credential] | None = None

    def get(self) -> Credential:
        """Current credential (the access token may be empty)."""
        return self._credential

    def replace(self, credential: Credential) -> None:
        """Swap in a complete new credential."""
        self._credential = credential

    def invalidate(self, rejected: Credential) -> None:
        """Clear the access token if *rejected* is still the current credential.

        A rejection that arrives after another request already re-authenticated
        refers to an old token and is ignored.
        """
        if self._credential is rejected and rejected.access_token:
            _LOGGER.debug("Clearing rejected access token")
            self._credential = rejected.without_access_token()

    @property
    def authenticating(self) -> bool:
        """True while an authentication task is running."""
        return self._pending is not None

    async def authenticate_if_needed(self) -> Credential:
        """Return a credential with an access token, logging in at most once.

        If the current credential has an access token it is returned as-is.
        Otherwise the in-flight authentication is awaited, or a new one is
        started.  The task is shielded so a cancelled waiter does not abort
        the login for everyone else.
        """
        if self._credential.access_token:
            return self._credential
        if self._pending is None:
            self._pending = asyncio.create_task(self._run_authentication())
        return await asyncio.shield(self._pending)

    async def _run_authentication(self) -> Credential:
        try:
            credential = await self._authenticate(self._credential)
            # Only a fully successful login is ever visible to readers.
            self._credential = credential
            return credential
        finally:
            self._pending = None
