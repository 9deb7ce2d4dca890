from pydantic_settings import BaseSettings
from typing import List, Optional
import os
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    SECRET_KEY: str = "your-secret-key-change-in-production"
    JWT_SECRET: Optional[str] = None
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 300
    DEBUG: bool = False

    # Process-wide key material for the credential vault. Never derived from
    # user input; rotate by introducing a new ciphertext prefix version.
    ENCRYPTION_KEY: str = "change-me-encryption-key"

    @property
    def secret_key(self) -> str:
        return self.JWT_SECRET or self.SECRET_KEY

    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./price_reducer.db")
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    EBAY_ENVIRONMENT: str = "sandbox"
    EBAY_MARKETPLACE_ID: str = "EBAY_US"
    EBAY_CURRENCY: str = "USD"
    EBAY_SITE_ID: str = "0"
    EBAY_COMPATIBILITY_LEVEL: str = "1193"

    EBAY_SANDBOX_CLIENT_ID: Optional[str] = None
    EBAY_SANDBOX_DEV_ID: Optional[str] = None
    EBAY_SANDBOX_CERT_ID: Optional[str] = None
    EBAY_SANDBOX_RUNAME: Optional[str] = None

    EBAY_PRODUCTION_CLIENT_ID: Optional[str] = None
    EBAY_PRODUCTION_DEV_ID: Optional[str] = None
    EBAY_PRODUCTION_CERT_ID: Optional[str] = None
    EBAY_PRODUCTION_RUNAME: Optional[str] = None

    # Space-separated OAuth scopes requested on connect.
    EBAY_SCOPES: str = (
        "https://api.ebay.com/oauth/api_scope "
        "https://api.ebay.com/oauth/api_scope/sell.inventory "
        "https://api.ebay.com/oauth/api_scope/sell.account "
        "https://api.ebay.com/oauth/api_scope/commerce.identity.readonly"
    )

    # Token lifecycle
    TOKEN_REFRESH_MARGIN_MINUTES: int = 5
    OAUTH_STATE_TTL_MINUTES: int = 10

    # Reduction scheduler
    REDUCTION_MAX_CONCURRENCY: int = 5
    REDUCTION_LOCK_STALE_MINUTES: int = 15

    # Marketplace client
    MARKETPLACE_MAX_ATTEMPTS: int = 3
    MARKETPLACE_BACKOFF_SECONDS: float = 1.0
    MARKETPLACE_BACKOFF_MAX_SECONDS: float = 10.0
    MARKETPLACE_CALLS_PER_MINUTE: int = 120
    MARKETPLACE_TIMEOUT_SECONDS: float = 20.0

    # Listing synchronizer
    SYNC_FRESHNESS_HOURS: int = 4
    SYNC_PAGE_SIZE: int = 200
    DEFAULT_MINIMUM_PRICE_RATIO: float = 0.6

    # Market analysis
    MARKET_ANALYSIS_MAX_AGE_HOURS: int = 6
    MARKET_ANALYSIS_SAMPLE_SIZE: int = 50

    # Keepa catalog provider
    KEEPA_API_KEY: Optional[str] = None
    KEEPA_BASE_URL: str = "https://api.keepa.com"
    KEEPA_DOMAIN: int = 1
    KEEPA_MIN_TOKENS: int = 1

    class Config:
        env_file = None
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def is_sandbox(self) -> bool:
        return self.EBAY_ENVIRONMENT == "sandbox"

    @property
    def ebay_client_id(self) -> Optional[str]:
        if self.is_sandbox:
            return self.EBAY_SANDBOX_CLIENT_ID
        return self.EBAY_PRODUCTION_CLIENT_ID

    @property
    def ebay_cert_id(self) -> Optional[str]:
        if self.is_sandbox:
            return self.EBAY_SANDBOX_CERT_ID
        return self.EBAY_PRODUCTION_CERT_ID

    @property
    def ebay_dev_id(self) -> Optional[str]:
        if self.is_sandbox:
            return self.EBAY_SANDBOX_DEV_ID
        return self.EBAY_PRODUCTION_DEV_ID

    @property
    def ebay_runame(self) -> Optional[str]:
        if self.is_sandbox:
            return self.EBAY_SANDBOX_RUNAME
        return self.EBAY_PRODUCTION_RUNAME

    @property
    def ebay_api_base_url(self) -> str:
        if self.is_sandbox:
            return "https://api.sandbox.ebay.com"
        return "https://api.ebay.com"

    @property
    def ebay_apiz_base_url(self) -> str:
        """Host for the Commerce Identity API (note the ``apiz`` subdomain)."""
        if self.is_sandbox:
            return "https://apiz.sandbox.ebay.com"
        return "https://apiz.ebay.com"

    @property
    def ebay_auth_base_url(self) -> str:
        if self.is_sandbox:
            return "https://auth.sandbox.ebay.com"
        return "https://auth.ebay.com"

    @property
    def ebay_scopes(self) -> List[str]:
        return [s for s in self.EBAY_SCOPES.split() if s]


settings = Settings()
