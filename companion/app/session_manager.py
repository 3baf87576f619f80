"""Credential lifecycle for the Orin companion: login, proactive refresh, authenticated requests."""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

import httpx
from pydantic import ValidationError

from .backend.credential_store import ORIN_ID_KEY, REFRESH_TOKEN_KEY, CredentialStore, FileCredentialStore
from .backend.http_client import (
    LOGIN_PATH,
    REFRESH_PATH,
    SIGNUP_PATH,
    ApiHttpClient,
    TokenResponse,
    error_message,
)
from .config import Settings, get_settings
from .errors import ApiError, AuthError, AuthErrorKind, NetworkError
from .state import Credential

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class SessionManager:
    """Owns the credential: stores it, keeps it fresh, and signs outbound requests.

    One instance is built per process and handed to every component that
    needs authenticated calls. All refreshes funnel through a single
    in-flight task so concurrent callers share one network round trip.
    """

    def __init__(
        self,
        *,
        settings: Optional[Settings] = None,
        store: Optional[CredentialStore] = None,
        http_client: Optional[ApiHttpClient] = None,
        clock: Clock = time.time,
    ) -> None:
        self.settings = settings or get_settings()
        self._store = store if store is not None else FileCredentialStore(self.settings.auth.credential_file)
        self._http = http_client or ApiHttpClient(self.settings)
        self._clock = clock
        self._skew = self.settings.auth.refresh_skew_seconds

        self._refresh_task: Optional[asyncio.Task[Credential]] = None
        self._timer_task: Optional[asyncio.Task[None]] = None
        # Bumped whenever the credential is cleared; an in-flight refresh from an
        # older generation must not write tokens back.
        self._generation = 0

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def store(self) -> CredentialStore:
        return self._store

    @property
    def credential(self) -> Optional[Credential]:
        return self._store.load_credential()

    @property
    def access_token(self) -> Optional[str]:
        credential = self.credential
        return credential.access_token if credential else None

    @property
    def orin_id(self) -> Optional[str]:
        return self._store.get(ORIN_ID_KEY)

    @property
    def refresh_in_flight(self) -> bool:
        return self._refresh_task is not None

    def is_valid(self) -> bool:
        credential = self.credential
        return credential is not None and self._clock() < credential.expiry_at

    def refresh_at(self) -> Optional[float]:
        """Epoch seconds at which the proactive refresh is due."""
        credential = self.credential
        if credential is None:
            return None
        return credential.expiry_at - self._skew

    def remember_orin_id(self, orin_id: Optional[str]) -> None:
        if orin_id:
            self._store.set(ORIN_ID_KEY, orin_id)
        else:
            self._store.remove(ORIN_ID_KEY)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Resume refresh scheduling for a credential persisted by an earlier run."""
        if self.credential is not None:
            logger.info("session.start: restoring persisted credential")
            self.schedule_refresh()
        else:
            logger.info("session.start: no persisted credential")

    async def aclose(self) -> None:
        self._cancel_timer()
        task = self._refresh_task
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Error stopping refresh task: %s", e)
        self._refresh_task = None
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Login / signup / logout
    # ------------------------------------------------------------------

    async def login(self, email: str, password: str) -> TokenResponse:
        logger.info("session.login: requesting tokens")
        response = await self._http.post_json(LOGIN_PATH, {"email": email, "password": password})
        if not response.is_success:
            message = error_message(response, "message", "Login failed")
            logger.warning("session.login: rejected with HTTP %d", response.status_code)
            raise AuthError(AuthErrorKind.INVALID_CREDENTIALS, message)
        tokens = self._parse_tokens(response)
        if tokens is None:
            raise ApiError(response.status_code, "Unexpected login response")
        self._clear_credential()
        self._store_tokens(tokens)
        logger.info("session.login: credential stored")
        return tokens

    async def signup(self, email: str, password: str) -> None:
        logger.info("session.signup: creating account")
        response = await self._http.post_json(SIGNUP_PATH, {"email": email, "password": password})
        if not response.is_success:
            message = error_message(response, "error", "Signup failed")
            logger.warning("session.signup: rejected with HTTP %d", response.status_code)
            raise AuthError(AuthErrorKind.SIGNUP_REJECTED, message)

    async def signup_and_login(self, email: str, password: str) -> TokenResponse:
        await self.signup(email, password)
        return await self.login(email, password)

    def logout(self) -> None:
        logger.info("session.logout")
        self._clear_credential()

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def schedule_refresh(self, *, allow_immediate: bool = True) -> None:
        """Arm the one-shot refresh timer for ``expiry - skew``; fire now if that has passed.

        With ``allow_immediate=False`` (used right after a refresh) a token that
        is already inside the skew window is refreshed halfway to its expiry
        instead, so a short-lived token cannot spin the refresh loop.
        """
        self._cancel_timer()
        credential = self.credential
        if credential is None:
            return
        now = self._clock()
        delay = credential.expiry_at - self._skew - now
        if delay <= 0 and allow_immediate:
            logger.info("session.schedule_refresh: token inside skew window, refreshing now")
            delay = 0.0
        elif delay <= 0:
            delay = max(credential.expiry_at - now, 0.0) / 2
            logger.info("session.schedule_refresh: short-lived token, refresh in %.1fs", delay)
        else:
            logger.debug("session.schedule_refresh: refresh in %.1fs", delay)
        self._timer_task = asyncio.create_task(self._refresh_after(delay), name="credential-refresh-timer")

    async def refresh(self) -> Credential:
        """Refresh the credential, joining the in-flight attempt if there is one."""
        task = self._refresh_task
        if task is None:
            task = asyncio.create_task(self._perform_refresh(), name="credential-refresh")
            task.add_done_callback(_consume_outcome)
            self._refresh_task = task
        else:
            logger.debug("session.refresh: joining in-flight refresh")
        # Shielded so one cancelled caller does not cancel the attempt for everyone.
        return await asyncio.shield(task)

    async def _perform_refresh(self) -> Credential:
        generation = self._generation
        try:
            previous = self.credential
            refresh_token = self._store.get(REFRESH_TOKEN_KEY)
            if not refresh_token:
                raise AuthError(AuthErrorKind.NO_REFRESH_TOKEN, "No refresh token available")
            logger.info("session.refresh: requesting new tokens")
            try:
                response = await self._http.post_json(REFRESH_PATH, {"refreshToken": refresh_token})
            except NetworkError as e:
                raise AuthError(AuthErrorKind.REFRESH_FAILED, "Token refresh failed", log_message=str(e)) from e
            if not response.is_success:
                raise AuthError(
                    AuthErrorKind.REFRESH_FAILED,
                    "Token refresh failed",
                    log_message=f"refresh rejected with HTTP {response.status_code}",
                )
            tokens = self._parse_tokens(response)
            if tokens is None:
                raise AuthError(AuthErrorKind.REFRESH_FAILED, "Token refresh failed", log_message="malformed refresh body")
            if generation != self._generation:
                raise AuthError(
                    AuthErrorKind.REFRESH_FAILED,
                    "Session ended during refresh",
                    log_message="credential cleared while refresh was in flight",
                )
            credential = self._store_tokens(tokens, previous=previous)
            logger.info("session.refresh: credential renewed")
            return credential
        except AuthError as e:
            logger.warning("session.refresh: %s (%s)", e.kind.value, e)
            if generation == self._generation:
                self._clear_credential()
            raise
        finally:
            if self._refresh_task is asyncio.current_task():
                self._refresh_task = None

    async def _refresh_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._timer_task is asyncio.current_task():
            self._timer_task = None
        try:
            await self.refresh()
        except AuthError as e:
            logger.warning("session.refresh_timer: proactive refresh failed - %s", e.user_message)
        except Exception as e:
            logger.exception("session.refresh_timer: unexpected error - %s", e)

    # ------------------------------------------------------------------
    # Authenticated requests
    # ------------------------------------------------------------------

    async def authenticated_request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Send ``method path`` with the bearer token.

        A 401 triggers one refresh and one retry. A second 401 (or a failed
        refresh) clears the credential and raises ``AuthError(AUTH_REQUIRED)``.
        Every other response comes back untouched.
        """
        if not self.is_valid():
            await self._refresh_or_require_auth()

        token = self.access_token
        if not token:
            self._clear_credential()
            raise AuthError(AuthErrorKind.AUTH_REQUIRED, "Authentication required")

        response = await self._http.request(
            method, path, json=json, headers=_with_bearer(headers, token), params=params
        )
        if response.status_code != httpx.codes.UNAUTHORIZED:
            return response

        logger.info("session.request: %s %s unauthorized, refreshing once", method, path)
        await self._refresh_or_require_auth()
        generation = self._generation
        token = self.access_token
        retry = await self._http.request(
            method, path, json=json, headers=_with_bearer(headers, token or ""), params=params
        )
        if retry.status_code == httpx.codes.UNAUTHORIZED:
            logger.warning("session.request: %s %s unauthorized after refresh, logging out", method, path)
            self._clear_if_current(generation)
            raise AuthError(AuthErrorKind.AUTH_REQUIRED, "Authentication required")
        return retry

    async def _refresh_or_require_auth(self) -> None:
        generation = self._generation
        try:
            await self.refresh()
        except AuthError as e:
            self._clear_if_current(generation)
            raise AuthError(AuthErrorKind.AUTH_REQUIRED, "Authentication required", log_message=str(e)) from e

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _parse_tokens(self, response: httpx.Response) -> Optional[TokenResponse]:
        try:
            return TokenResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.error("session: malformed token body - %s", e)
            return None

    def _store_tokens(self, tokens: TokenResponse, *, previous: Optional[Credential] = None) -> Credential:
        expiry_at = self._clock() + tokens.access_token_expires_in / 1000.0
        if previous is not None:
            expiry_at = max(expiry_at, previous.expiry_at)
        credential = Credential(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expiry_at=expiry_at,
            orin_id=tokens.orin_id or (previous.orin_id if previous else None),
        )
        self._store.save_credential(credential)
        self.schedule_refresh(allow_immediate=previous is None)
        return credential

    def _clear_credential(self) -> None:
        self._generation += 1
        # A refresh still in flight belongs to the old session; new callers start their own.
        self._refresh_task = None
        self._store.clear()
        self._cancel_timer()

    def _clear_if_current(self, generation: int) -> None:
        if generation == self._generation:
            self._clear_credential()
        else:
            logger.info("session: credential replaced while request was pending, keeping it")

    def _cancel_timer(self) -> None:
        timer = self._timer_task
        self._timer_task = None
        if timer is None or timer.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if timer is not current:
            timer.cancel()


def _with_bearer(headers: Optional[Dict[str, str]], token: str) -> Dict[str, str]:
    merged = dict(headers or {})
    merged["Authorization"] = f"Bearer {token}"
    return merged


def _consume_outcome(task: asyncio.Task[Any]) -> None:
    # Callers may all have been cancelled; keep asyncio from reporting the error as unretrieved.
    if not task.cancelled():
        task.exception()


__all__ = ["SessionManager"]
