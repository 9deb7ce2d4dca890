"""eBay OAuth2 connection lifecycle (authorization code + PKCE).

Connection states per user::

    disconnected -> authorizing -> connected -> expired | disconnected
    expired      -> authorizing

``get_valid_access_token`` is the single entry point the marketplace client
uses for auth. It refreshes transparently when the access token is close to
expiry and flips the connection to ``expired`` when eBay rejects the refresh
token, raising :class:`AuthError` so the UI can prompt a reconnect.
"""
from __future__ import annotations

import asyncio
import base64
import hashlib
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode

import httpx
from sqlalchemy.orm import Session

from price_reducer.config import settings
from price_reducer.errors import AuthError, ConflictError, CredentialDecryptError, TransientError, ValidationError
from price_reducer.models.ebay import EbayAuthorizationUrl, EbayConnectionStatus, EbayTokenResponse
from price_reducer.models_sqlalchemy import SessionLocal
from price_reducer.models_sqlalchemy.models import ConnectionStatus, MarketplaceCredential, OAuthState
from price_reducer.services.credential_vault import CredentialVault, VaultCredentials, credential_vault
from price_reducer.utils import crypto
from price_reducer.utils.dates import to_utc, utc_now
from price_reducer.utils.logger import logger, marketplace_logger, token_fingerprint

_ALLOWED_TRANSITIONS = {
    ConnectionStatus.DISCONNECTED.value: {ConnectionStatus.AUTHORIZING.value},
    ConnectionStatus.AUTHORIZING.value: {ConnectionStatus.CONNECTED.value, ConnectionStatus.DISCONNECTED.value},
    ConnectionStatus.CONNECTED.value: {ConnectionStatus.EXPIRED.value, ConnectionStatus.DISCONNECTED.value},
    ConnectionStatus.EXPIRED.value: {ConnectionStatus.AUTHORIZING.value, ConnectionStatus.DISCONNECTED.value},
}


def generate_code_verifier() -> str:
    """base64url of 32 random bytes, no padding (43 chars)."""
    return base64.urlsafe_b64encode(secrets.token_bytes(32)).rstrip(b"=").decode("ascii")


def code_challenge_for(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def _hash_state(state: str) -> str:
    return hashlib.sha256(state.encode("utf-8")).hexdigest()


def _transition(row: MarketplaceCredential, new_status: str) -> str:
    """Apply a connection status change. Returns the previous status."""
    old_status = row.connection_status or ConnectionStatus.DISCONNECTED.value
    if new_status == old_status:
        return old_status
    if new_status not in _ALLOWED_TRANSITIONS.get(old_status, set()):
        raise ConflictError(
            f"Connection cannot move from '{old_status}' to '{new_status}'",
            code="invalid_connection_transition",
        )
    row.connection_status = new_status
    return old_status


class EbayOAuthService:

    def __init__(
        self,
        vault: CredentialVault = credential_vault,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.vault = vault
        self._transport = transport
        self._refresh_locks: Dict[str, asyncio.Lock] = {}

    @property
    def authorize_url(self) -> str:
        return f"{settings.ebay_auth_base_url}/oauth2/authorize"

    @property
    def token_url(self) -> str:
        return f"{settings.ebay_api_base_url}/identity/v1/oauth2/token"

    @property
    def revoke_url(self) -> str:
        return f"{settings.ebay_api_base_url}/identity/v1/oauth2/revoke"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(settings.MARKETPLACE_TIMEOUT_SECONDS, connect=5.0),
            transport=self._transport,
        )

    def _credential_row(self, db: Session, user_id: str) -> MarketplaceCredential:
        row = db.query(MarketplaceCredential).filter(MarketplaceCredential.user_id == user_id).first()
        if row is None:
            row = MarketplaceCredential(user_id=user_id, connection_status=ConnectionStatus.DISCONNECTED.value)
            db.add(row)
        return row

    @staticmethod
    def _app_credentials(creds: Optional[VaultCredentials]) -> Tuple[str, str]:
        """Per-user developer credentials, falling back to the platform app."""
        if creds is not None and creds.app_id and creds.client_secret:
            return creds.app_id, creds.client_secret
        if settings.ebay_client_id and settings.ebay_cert_id:
            return settings.ebay_client_id, settings.ebay_cert_id
        raise ValidationError(
            "eBay application credentials are not configured",
            code="missing_app_credentials",
        )

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def start_authorization(
        self,
        db: Session,
        user_id: str,
        *,
        now: Optional[datetime] = None,
    ) -> EbayAuthorizationUrl:
        now = now or utc_now()
        creds = self.vault.get(db, user_id)
        client_id, _ = self._app_credentials(creds)
        if not settings.ebay_runame:
            raise ValidationError("eBay RuName is not configured", code="missing_runame")

        # Old, never-completed attempts for this user are useless now.
        db.query(OAuthState).filter(OAuthState.user_id == user_id).delete(synchronize_session=False)

        verifier = generate_code_verifier()
        state = secrets.token_urlsafe(32)
        expires_at = now + timedelta(minutes=settings.OAUTH_STATE_TTL_MINUTES)
        db.add(
            OAuthState(
                state_hash=_hash_state(state),
                user_id=user_id,
                _code_verifier=crypto.encrypt(verifier),
                created_at=now,
                expires_at=expires_at,
            )
        )

        row = self._credential_row(db, user_id)
        if row.connection_status in (ConnectionStatus.DISCONNECTED.value, ConnectionStatus.EXPIRED.value):
            _transition(row, ConnectionStatus.AUTHORIZING.value)
        db.commit()

        params = {
            "client_id": client_id,
            "redirect_uri": settings.ebay_runame,
            "response_type": "code",
            "scope": " ".join(settings.ebay_scopes),
            "state": state,
            "code_challenge": code_challenge_for(verifier),
            "code_challenge_method": "S256",
        }
        url = f"{self.authorize_url}?{urlencode(params)}"

        marketplace_logger.log_event(
            "authorization_url_generated",
            f"Generated eBay authorization URL ({settings.EBAY_ENVIRONMENT})",
            user_id=user_id,
            request_data={"client_id": client_id, "scopes": settings.ebay_scopes},
        )
        return EbayAuthorizationUrl(authorization_url=url, expires_at=expires_at)

    async def handle_callback(
        self,
        db: Session,
        code: str,
        state: str,
        *,
        now: Optional[datetime] = None,
    ) -> EbayConnectionStatus:
        now = now or utc_now()
        if not code or not state:
            raise ValidationError("OAuth callback requires both code and state", code="invalid_callback")

        presented = _hash_state(state)
        pending = db.query(OAuthState).filter(OAuthState.state_hash == presented).first()
        if pending is None:
            self._reject_state()

        user_id = pending.user_id
        verifier = crypto.decrypt(pending._code_verifier)
        expired = to_utc(pending.expires_at) < now

        # Single use: whichever callback deletes the row first wins.
        consumed = (
            db.query(OAuthState)
            .filter(OAuthState.state_hash == presented)
            .delete(synchronize_session=False)
        )
        if consumed != 1:
            db.rollback()
            self._reject_state()
        db.commit()

        if expired:
            self._abandon_authorization(db, user_id)
            raise AuthError("OAuth state has expired, start the connection again", code="state_expired")

        creds = self.vault.get(db, user_id)
        client_id, client_secret = self._app_credentials(creds)

        try:
            token = await self._token_request(
                client_id,
                client_secret,
                {
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": settings.ebay_runame,
                    "code_verifier": verifier,
                },
                user_id=user_id,
                event="token_exchange",
            )
        except AuthError:
            self._abandon_authorization(db, user_id)
            raise

        self.vault.store_tokens(
            db,
            user_id,
            access_token=token.access_token,
            expires_in=token.expires_in,
            refresh_token=token.refresh_token,
            refresh_token_expires_in=token.refresh_token_expires_in,
            now=now,
        )

        identity = await self._fetch_identity(token.access_token, user_id=user_id)
        row = self._credential_row(db, user_id)
        if identity:
            row.ebay_user_id = identity.get("userId")
            row.ebay_username = identity.get("username")
        # A re-consent while already connected is a no-op transition.
        _transition(row, ConnectionStatus.CONNECTED.value)
        row.connected_at = now
        db.commit()
        db.refresh(row)

        logger.info(
            "[token_manager] Connected user_id=%s ebay_username=%s token_hash=%s",
            user_id,
            row.ebay_username,
            token_fingerprint(token.access_token),
        )
        return self.vault.get_connection_status(db, user_id)

    @staticmethod
    def _reject_state() -> None:
        marketplace_logger.log_event(
            "oauth_state_rejected", "Unknown or already used OAuth state", status="error",
            error="invalid_state",
        )
        raise AuthError("Invalid or already used OAuth state", code="invalid_state")

    def _abandon_authorization(self, db: Session, user_id: str) -> None:
        row = self._credential_row(db, user_id)
        if row.connection_status == ConnectionStatus.AUTHORIZING.value:
            _transition(row, ConnectionStatus.DISCONNECTED.value)
            db.commit()

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    @staticmethod
    def _needs_refresh(creds: VaultCredentials, now: datetime) -> bool:
        if not creds.access_token or creds.access_token_expires_at is None:
            return True
        margin = timedelta(minutes=settings.TOKEN_REFRESH_MARGIN_MINUTES)
        return to_utc(creds.access_token_expires_at) - now < margin

    @staticmethod
    def _require_connected(creds: Optional[VaultCredentials], user_id: str) -> VaultCredentials:
        if creds is None or creds.connection_status in (
            ConnectionStatus.DISCONNECTED.value,
            ConnectionStatus.AUTHORIZING.value,
        ):
            raise AuthError(f"eBay account is not connected for user {user_id}", code="not_connected")
        if creds.connection_status == ConnectionStatus.EXPIRED.value:
            raise AuthError("eBay connection has expired, please reconnect", code="connection_expired")
        return creds

    async def get_valid_access_token(
        self,
        db: Session,
        user_id: str,
        *,
        force_refresh: bool = False,
        now: Optional[datetime] = None,
    ) -> str:
        now = now or utc_now()
        creds = self._require_connected(self.vault.get(db, user_id), user_id)
        if not force_refresh and not self._needs_refresh(creds, now):
            return creds.access_token

        lock = self._refresh_locks.setdefault(user_id, asyncio.Lock())
        async with lock:
            db.expire_all()
            latest = self._require_connected(self.vault.get(db, user_id), user_id)
            # Another caller refreshed while we waited for the lock.
            if latest.access_token != creds.access_token and not self._needs_refresh(latest, now):
                return latest.access_token
            if not force_refresh and not self._needs_refresh(latest, now):
                return latest.access_token
            return await self._refresh(db, latest, now)

    async def _refresh(self, db: Session, creds: VaultCredentials, now: datetime) -> str:
        user_id = creds.user_id
        if not creds.refresh_token:
            self._mark_expired(db, user_id, "No refresh token stored")
            raise AuthError("eBay connection has no refresh token, please reconnect", code="connection_expired")

        client_id, client_secret = self._app_credentials(creds)
        try:
            token = await self._token_request(
                client_id,
                client_secret,
                {
                    "grant_type": "refresh_token",
                    "refresh_token": creds.refresh_token,
                    "scope": " ".join(settings.ebay_scopes),
                },
                user_id=user_id,
                event="token_refresh",
            )
        except AuthError as exc:
            self._mark_expired(db, user_id, exc.message)
            raise AuthError(
                "eBay rejected the refresh token, please reconnect",
                code="refresh_token_revoked",
            ) from exc

        self.vault.store_tokens(
            db,
            user_id,
            access_token=token.access_token,
            expires_in=token.expires_in,
            refresh_token=token.refresh_token,
            refresh_token_expires_in=token.refresh_token_expires_in,
            now=now,
        )
        db.commit()
        logger.info(
            "[token_manager] Refreshed access token user_id=%s token_hash=%s",
            user_id,
            token_fingerprint(token.access_token),
        )
        return token.access_token

    def _mark_expired(self, db: Session, user_id: str, reason: str) -> None:
        row = self._credential_row(db, user_id)
        if row.connection_status == ConnectionStatus.CONNECTED.value:
            _transition(row, ConnectionStatus.EXPIRED.value)
        row.refresh_error = reason
        db.commit()
        marketplace_logger.log_event(
            "connection_expired", "Refresh failed, connection marked expired",
            user_id=user_id, status="error", error=reason,
        )

    async def _token_request(
        self,
        client_id: str,
        client_secret: str,
        data: Dict[str, str],
        *,
        user_id: str,
        event: str,
    ) -> EbayTokenResponse:
        encoded = base64.b64encode(f"{client_id}:{client_secret}".encode()).decode()
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Authorization": f"Basic {encoded}",
        }
        marketplace_logger.log_event(
            f"{event}_request",
            f"POST {self.token_url} grant_type={data.get('grant_type')}",
            user_id=user_id,
            request_data=data,
        )

        try:
            async with self._client() as client:
                response = await client.post(self.token_url, headers=headers, data=data)
        except httpx.TimeoutException as exc:
            raise TransientError(f"eBay token endpoint timed out: {exc}", code="timeout") from exc
        except httpx.HTTPError as exc:
            raise TransientError(f"eBay token endpoint unreachable: {exc}", code="network_error") from exc

        body: Any
        try:
            body = response.json()
        except ValueError:
            body = {"raw": response.text[:500]}

        if response.status_code == 429 or response.status_code >= 500:
            marketplace_logger.log_event(
                f"{event}_response", f"Transient failure {response.status_code}",
                user_id=user_id, status="error", error=str(body)[:300],
            )
            raise TransientError(
                f"eBay token endpoint returned {response.status_code}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            error_code = body.get("error") if isinstance(body, dict) else None
            description = body.get("error_description") if isinstance(body, dict) else None
            marketplace_logger.log_event(
                f"{event}_response", f"Token request rejected {response.status_code}",
                user_id=user_id, status="error", error=f"{error_code}: {description}",
            )
            raise AuthError(
                f"eBay token request rejected: {description or error_code or response.status_code}",
                code=error_code or "token_rejected",
            )

        marketplace_logger.log_event(
            f"{event}_response", "Token request succeeded", user_id=user_id,
            response_data={"expires_in": body.get("expires_in"), "access_token": body.get("access_token")},
        )
        return EbayTokenResponse(**body)

    async def _fetch_identity(self, access_token: str, *, user_id: str) -> Optional[Dict[str, Any]]:
        """Commerce Identity lookup for the username. Failure is not fatal."""
        url = f"{settings.ebay_apiz_base_url}/commerce/identity/v1/user/"
        try:
            async with self._client() as client:
                response = await client.get(url, headers={"Authorization": f"Bearer {access_token}"})
        except httpx.HTTPError as exc:
            logger.warning("[token_manager] Identity lookup failed user_id=%s error=%s", user_id, exc)
            return None
        if response.status_code != 200:
            logger.warning(
                "[token_manager] Identity lookup returned %s user_id=%s", response.status_code, user_id
            )
            return None
        return response.json()

    # ------------------------------------------------------------------
    # Disconnect
    # ------------------------------------------------------------------

    async def disconnect(self, db: Session, user_id: str) -> EbayConnectionStatus:
        """Drop tokens locally and try to revoke upstream. App credentials stay."""
        try:
            creds = self.vault.get(db, user_id)
        except CredentialDecryptError as exc:
            logger.warning("[token_manager] Skipping upstream revoke, secrets unreadable user_id=%s: %s", user_id, exc)
            creds = None

        if creds is not None and creds.refresh_token:
            await self._revoke(creds)

        row = self._credential_row(db, user_id)
        self.vault.clear_tokens(db, user_id)
        _transition(row, ConnectionStatus.DISCONNECTED.value)
        row.refresh_error = None
        row.ebay_user_id = None
        row.ebay_username = None
        db.query(OAuthState).filter(OAuthState.user_id == user_id).delete(synchronize_session=False)
        db.commit()

        marketplace_logger.log_event("disconnected", "eBay connection removed", user_id=user_id)
        return self.vault.get_connection_status(db, user_id)

    async def _revoke(self, creds: VaultCredentials) -> None:
        try:
            client_id, client_secret = self._app_credentials(creds)
        except ValidationError:
            return
        encoded = base64.b64encode(f"{client_id}:{client_secret}".encode()).decode()
        try:
            async with self._client() as client:
                response = await client.post(
                    self.revoke_url,
                    headers={
                        "Content-Type": "application/x-www-form-urlencoded",
                        "Authorization": f"Basic {encoded}",
                    },
                    data={"token": creds.refresh_token, "token_type_hint": "refresh_token"},
                )
        except httpx.HTTPError as exc:
            logger.warning("[token_manager] Upstream revoke failed user_id=%s error=%s", creds.user_id, exc)
            return
        if response.status_code >= 400:
            logger.warning(
                "[token_manager] Upstream revoke returned %s user_id=%s", response.status_code, creds.user_id
            )


ebay_oauth_service = EbayOAuthService()


async def run_token_refresh_job(
    session_factory=SessionLocal,
    *,
    service: Optional[EbayOAuthService] = None,
    within_minutes: int = 15,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Refresh connected credentials that expire within ``within_minutes``.

    Per-account errors are collected, never raised.
    """
    service = service or ebay_oauth_service
    now = now or utc_now()
    cutoff = now + timedelta(minutes=within_minutes)

    db = session_factory()
    try:
        user_ids = [
            row.user_id
            for row in db.query(MarketplaceCredential)
            .filter(
                MarketplaceCredential.connection_status == ConnectionStatus.CONNECTED.value,
                MarketplaceCredential.access_token_expires_at < cutoff,
            )
            .all()
        ]

        refreshed = 0
        errors = []
        for user_id in user_ids:
            try:
                await service.get_valid_access_token(db, user_id, force_refresh=True, now=now)
                refreshed += 1
            except (AuthError, TransientError, ValidationError) as exc:
                logger.warning("[token_refresh] user_id=%s failed: %s", user_id, exc)
                errors.append({"user_id": user_id, "code": exc.code, "message": exc.message})
                db.rollback()

        return {
            "status": "completed",
            "accounts_checked": len(user_ids),
            "accounts_refreshed": refreshed,
            "errors": errors,
            "timestamp": now.isoformat(),
        }
    finally:
        db.close()
