"""
token_service.py — Jobber OAuth token storage and refresh

Business Rules:
- A token is "valid" only if it stays valid for `token_refresh_buffer_min`
  (default 5) minutes from now
- Refreshes are serialized with an asyncio.Lock; a caller that waited on the
  lock re-reads the row and reuses a token another caller just refreshed
- A rejected refresh (revoked / expired refresh token) raises AuthError and
  is never retried; only network failures to the token endpoint are retried
  (3 attempts, exponential backoff)
- The new access token, refresh token and expiries are committed together;
  access-token expiry always moves forward

Called by: services/sync_orchestrator.py, graphql_client.py (401 recovery), cli.py
Depends on: models.OAuthToken, config (jobber_client_id/secret, token URL)
"""

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
from loguru import logger

from ..config import settings
from ..errors import AuthError
from ..models import OAuthToken
from ..utils import parse_datetime, safe_float

DEFAULT_EXPIRES_IN = 3600
REFRESH_ATTEMPTS = 3
REFRESH_BACKOFF_BASE = 2  # seconds: 2, 4


def _utc(dt):
    """Make a naive datetime UTC-aware (no-op if already aware)."""
    if dt is None:
        return None
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


class TokenManager:
    """Hands out access tokens for one account, refreshing them in place."""

    def __init__(self, account: str, session_factory=None, http: httpx.AsyncClient | None = None,
                 buffer_minutes: int | None = None, clock=None, sleep=asyncio.sleep):
        if session_factory is None:
            from ..database import SessionLocal

            session_factory = SessionLocal
        self.account = account
        self.session_factory = session_factory
        self._http = http
        self.buffer = timedelta(minutes=buffer_minutes if buffer_minutes is not None
                                else settings.token_refresh_buffer_min)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep
        self._lock = asyncio.Lock()

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            from ..http_client import http

            self._http = http
        return self._http

    def _load(self, db) -> OAuthToken:
        token = db.get(OAuthToken, self.account)
        if token is None:
            raise AuthError(
                f"No Jobber token stored for account '{self.account}'. "
                "Connect the integration (or run `fieldsync-sync seed-token`) first."
            )
        return token

    def _is_fresh(self, token: OAuthToken) -> bool:
        expires_at = _utc(token.access_token_expires_at)
        return bool(token.access_token) and expires_at is not None and \
            expires_at - self._clock() >= self.buffer

    async def get_valid_access_token(self, force_refresh: bool = False) -> str:
        """Return an access token valid for at least the buffer window."""
        db = self.session_factory()
        try:
            token = self._load(db)
            if not force_refresh and self._is_fresh(token):
                return token.access_token
            stale_access = token.access_token
        finally:
            db.close()

        async with self._lock:
            db = self.session_factory()
            try:
                token = self._load(db)
                # Another caller refreshed while we waited on the lock
                if token.access_token != stale_access and self._is_fresh(token):
                    return token.access_token
                if not force_refresh and self._is_fresh(token):
                    return token.access_token
                return await self._refresh(db, token)
            finally:
                db.close()

    async def _refresh(self, db, token: OAuthToken) -> str:
        now = self._clock()
        remaining = _utc(token.access_token_expires_at) - now if token.access_token_expires_at else None
        logger.info(
            "Refreshing Jobber token for {} ({})",
            self.account,
            "expired" if remaining is None or remaining.total_seconds() <= 0 else "expiring soon",
        )

        if not settings.jobber_client_id or not settings.jobber_client_secret:
            raise AuthError("JOBBER_CLIENT_ID / JOBBER_CLIENT_SECRET are not configured")
        refresh_expires = _utc(token.refresh_token_expires_at)
        if refresh_expires is not None and refresh_expires <= now:
            raise AuthError(
                f"Refresh token for '{self.account}' expired at {refresh_expires.isoformat()}. "
                "Reconnect the Jobber integration."
            )

        payload = await self._request_refresh(token.refresh_token)

        access = payload.get("access_token")
        if not access:
            raise AuthError("Token refresh response missing access_token")
        expires_in = safe_float(payload.get("expires_in")) or DEFAULT_EXPIRES_IN
        new_expiry = now + timedelta(seconds=expires_in)
        old_expiry = _utc(token.access_token_expires_at)
        if old_expiry is not None and new_expiry <= old_expiry:
            new_expiry = old_expiry + timedelta(seconds=expires_in)

        token.access_token = access
        token.refresh_token = payload.get("refresh_token") or token.refresh_token
        token.access_token_expires_at = new_expiry
        token.refresh_token_expires_at = _refresh_expiry(payload, now) or token.refresh_token_expires_at
        token.updated_at = now
        try:
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("Failed to persist refreshed Jobber token for {}", self.account)
            raise
        logger.info("Token refreshed for {}, valid until {}", self.account, new_expiry.isoformat())
        return access

    async def _request_refresh(self, refresh_token: str) -> dict:
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": settings.jobber_client_id,
            "client_secret": settings.jobber_client_secret,
        }
        last_error: Exception | None = None
        for attempt in range(REFRESH_ATTEMPTS):
            try:
                r = await self._client().post(
                    settings.jobber_token_url,
                    data=data,
                    headers={"Accept": "application/json"},
                    timeout=15,
                )
            except (httpx.TimeoutException, httpx.TransportError) as e:
                last_error = e
                if attempt < REFRESH_ATTEMPTS - 1:
                    wait = REFRESH_BACKOFF_BASE ** (attempt + 1)
                    logger.warning("Token endpoint unreachable, retry in {}s: {}", wait, e)
                    await self._sleep(wait)
                continue

            if r.status_code >= 500:
                last_error = RuntimeError(f"token endpoint returned {r.status_code}")
                if attempt < REFRESH_ATTEMPTS - 1:
                    await self._sleep(REFRESH_BACKOFF_BASE ** (attempt + 1))
                continue
            if r.status_code != 200:
                raise AuthError(_rejection_message(r))
            try:
                return r.json()
            except ValueError as e:
                raise AuthError("Token refresh returned invalid JSON") from e

        raise AuthError(f"Token endpoint unavailable after {REFRESH_ATTEMPTS} attempts: {last_error}")

    def save_token(self, access_token: str, refresh_token: str, expires_in: int,
                   refresh_expires_in: int | None = None) -> OAuthToken:
        """Create or overwrite the stored token (stands in for the OAuth handshake)."""
        now = self._clock()
        db = self.session_factory()
        try:
            token = db.get(OAuthToken, self.account)
            if token is None:
                token = OAuthToken(account=self.account, created_at=now)
                db.add(token)
            token.access_token = access_token
            token.refresh_token = refresh_token
            token.access_token_expires_at = now + timedelta(seconds=expires_in)
            token.refresh_token_expires_at = (
                now + timedelta(seconds=refresh_expires_in) if refresh_expires_in else None
            )
            token.updated_at = now
            db.commit()
            logger.info("Stored Jobber token for {}", self.account)
            return token
        finally:
            db.close()


def _refresh_expiry(payload: dict, now: datetime) -> datetime | None:
    seconds = safe_float(payload.get("refresh_token_expires_in"))
    if seconds:
        return now + timedelta(seconds=seconds)
    return parse_datetime(payload.get("refresh_token_expires_at"))


def _rejection_message(r: httpx.Response) -> str:
    msg = f"Token refresh failed: {r.status_code}"
    try:
        body = r.json()
    except ValueError:
        return f"{msg} - {r.text[:200]}"
    error = body.get("error") if isinstance(body, dict) else None
    if error == "invalid_grant":
        return "Refresh token is invalid or expired. Reconnect the Jobber integration."
    if error == "unauthorized_client":
        return "App is not authorized. Reconnect the Jobber integration."
    if isinstance(body, dict) and body.get("error_description"):
        return f"Token refresh failed: {body['error_description']}"
    return f"{msg} - {r.text[:200]}"
