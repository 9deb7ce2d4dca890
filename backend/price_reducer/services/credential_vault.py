"""Encrypted storage for per-user eBay credentials and tokens.

Only the token lifecycle manager should call :meth:`CredentialVault.get`;
everything else uses :meth:`CredentialVault.get_connection_status`, which
never carries secrets.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from price_reducer.models.ebay import EbayConnectionStatus
from price_reducer.models_sqlalchemy.models import ConnectionStatus, MarketplaceCredential
from price_reducer.utils import crypto
from price_reducer.utils.dates import to_utc, utc_now
from price_reducer.utils.logger import logger


@dataclass
class VaultCredentials:
    user_id: str
    app_id: Optional[str]
    dev_id: Optional[str]
    connection_status: str
    client_secret: Optional[str] = field(default=None, repr=False)
    access_token: Optional[str] = field(default=None, repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    access_token_expires_at: Optional[datetime] = None
    refresh_token_expires_at: Optional[datetime] = None
    ebay_user_id: Optional[str] = None
    ebay_username: Optional[str] = None


class CredentialVault:

    def _row(self, db: Session, user_id: str) -> Optional[MarketplaceCredential]:
        return db.query(MarketplaceCredential).filter(MarketplaceCredential.user_id == user_id).first()

    def _get_or_create_row(self, db: Session, user_id: str) -> MarketplaceCredential:
        row = self._row(db, user_id)
        if row is None:
            row = MarketplaceCredential(user_id=user_id, connection_status=ConnectionStatus.DISCONNECTED.value)
            db.add(row)
        return row

    def get(self, db: Session, user_id: str) -> Optional[VaultCredentials]:
        row = self._row(db, user_id)
        if row is None:
            return None
        return VaultCredentials(
            user_id=row.user_id,
            app_id=row.app_id,
            dev_id=row.dev_id,
            connection_status=row.connection_status,
            client_secret=crypto.decrypt(row._client_secret),
            access_token=crypto.decrypt(row._access_token),
            refresh_token=crypto.decrypt(row._refresh_token),
            access_token_expires_at=to_utc(row.access_token_expires_at),
            refresh_token_expires_at=to_utc(row.refresh_token_expires_at),
            ebay_user_id=row.ebay_user_id,
            ebay_username=row.ebay_username,
        )

    def put(
        self,
        db: Session,
        user_id: str,
        *,
        app_id: str,
        client_secret: str,
        dev_id: Optional[str] = None,
    ) -> EbayConnectionStatus:
        """Store developer credentials. Existing tokens are left alone."""
        row = self._get_or_create_row(db, user_id)
        row.app_id = app_id
        row._client_secret = crypto.encrypt(client_secret)
        row.dev_id = dev_id
        db.commit()
        db.refresh(row)
        logger.info("[vault] Stored app credentials user_id=%s app_id=%s", user_id, app_id)
        return self._project(row)

    def store_tokens(
        self,
        db: Session,
        user_id: str,
        *,
        access_token: str,
        expires_in: int,
        refresh_token: Optional[str] = None,
        refresh_token_expires_in: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Persist a token response. Does not commit; callers own the transaction."""
        now = now or utc_now()
        row = self._get_or_create_row(db, user_id)
        row._access_token = crypto.encrypt(access_token)
        row.access_token_expires_at = now + timedelta(seconds=int(expires_in))
        if refresh_token:
            row._refresh_token = crypto.encrypt(refresh_token)
            if refresh_token_expires_in:
                row.refresh_token_expires_at = now + timedelta(seconds=int(refresh_token_expires_in))
        row.last_refreshed_at = now
        row.refresh_error = None

    def rotate_refresh_token(
        self,
        db: Session,
        user_id: str,
        new_token: str,
        *,
        expires_at: Optional[datetime] = None,
    ) -> None:
        row = self._row(db, user_id)
        if row is None:
            raise LookupError(f"No credentials stored for user {user_id}")
        row._refresh_token = crypto.encrypt(new_token)
        if expires_at is not None:
            row.refresh_token_expires_at = expires_at
        db.commit()
        logger.info("[vault] Rotated refresh token user_id=%s", user_id)

    def clear_tokens(self, db: Session, user_id: str) -> None:
        """Drop access and refresh tokens. App credentials survive. Does not commit."""
        row = self._row(db, user_id)
        if row is None:
            return
        row._access_token = None
        row._refresh_token = None
        row.access_token_expires_at = None
        row.refresh_token_expires_at = None

    def get_connection_status(self, db: Session, user_id: str) -> EbayConnectionStatus:
        row = self._row(db, user_id)
        if row is None:
            return EbayConnectionStatus(status=ConnectionStatus.DISCONNECTED.value, connected=False)
        return self._project(row)

    @staticmethod
    def _project(row: MarketplaceCredential) -> EbayConnectionStatus:
        return EbayConnectionStatus(
            status=row.connection_status,
            connected=row.connection_status == ConnectionStatus.CONNECTED.value,
            ebay_user_id=row.ebay_user_id,
            ebay_username=row.ebay_username,
            app_id=row.app_id,
            has_client_secret=row._client_secret is not None,
            access_token_expires_at=to_utc(row.access_token_expires_at),
            refresh_token_expires_at=to_utc(row.refresh_token_expires_at),
            last_refreshed_at=to_utc(row.last_refreshed_at),
            refresh_error=row.refresh_error,
        )


credential_vault = CredentialVault()
