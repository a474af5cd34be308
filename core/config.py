# ==================================================================================
# core/config.py — LeadZone Configuration (Stripe + Airtable + SendGrid + Pydantic v2)
# ==================================================================================
import json
import logging
import sys
from typing import Dict, List, Optional

from fastapi import Request
from pydantic import EmailStr, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

MIN_JWT_SECRET_LENGTH = 32


class Settings(BaseSettings):
    # ------------------------
    # DATABASE CONFIG
    # ------------------------
    DATABASE_URL: Optional[str] = None

    # ------------------------
    # ENVIRONMENT SETTINGS
    # ------------------------
    ENVIRONMENT: str = "development"  # 'development' | 'staging' | 'production'
    DEBUG: bool = False

    # ------------------------
    # TOKEN / SECURITY CONFIG
    # ------------------------
    JWT_SECRET: str = Field(min_length=MIN_JWT_SECRET_LENGTH)
    JWT_ALGORITHM: str = "HS256"
    INTERNAL_TOOL_TOKEN_ISSUER: str = "leadzone-internal-tool"
    INTERNAL_TOOL_TOKEN_AUDIENCE: str = "leadzone-internal-api"
    INTERNAL_TOOL_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 30
    PORTAL_PREVIEW_TOKEN_EXPIRE_MINUTES: int = 30
    PORTAL_SESSION_TOKEN_EXPIRE_MINUTES: int = 60 * 12
    INTERNAL_TOOL_PASSWORD: Optional[str] = None

    # Operator HTTP Basic credentials for the internal endpoints
    INTERNAL_BASIC_AUTH_USER: Optional[str] = None
    INTERNAL_BASIC_AUTH_PASS: Optional[str] = None
    INTERNAL_BASIC_AUTH_REALM: str = "LeadZone Internal"

    # ------------------------
    # STRIPE / BILLING CONFIG
    # ------------------------
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_API_VERSION: Optional[str] = None
    LEADGEN_STRIPE_ACTIVE: bool = False
    STRIPE_DEFAULT_LEAD_PRODUCT_ID: Optional[str] = None
    STRIPE_DEFAULT_LEAD_PRICE_ID: Optional[str] = None
    STRIPE_PAID_IN_FULL_PRICE_ID: Optional[str] = None
    STRIPE_UPFRONT_BUNDLE_PRICE_ID: Optional[str] = None
    STRIPE_CARD_VERIFICATION_PRICE_ID: Optional[str] = None
    STRIPE_CURRENCY: str = "usd"

    # ------------------------
    # SENDGRID EMAIL CONFIG
    # ------------------------
    SENDGRID_API_KEY: Optional[str] = None
    MAIL_FROM: Optional[EmailStr] = None
    OPS_NOTIFICATION_EMAILS: str = ""  # comma separated

    # ------------------------
    # AIRTABLE (CRM REGISTRY) CONFIG
    # ------------------------
    AIRTABLE_API_KEY: Optional[str] = None
    AIRTABLE_API_URL: str = "https://api.airtable.com/v0"
    AIRTABLE_CLIENT_BASE_ID: Optional[str] = None
    AIRTABLE_CLIENT_TABLE_ID: Optional[str] = None
    AIRTABLE_CLIENT_NAME_FIELD: str = "Business Name"
    AIRTABLE_CLIENT_STATUS_FIELD: str = "Status"
    AIRTABLE_CLIENT_TARGET_ZIPS_FIELD: str = "Target ZIP Codes"
    AIRTABLE_ACTIVE_CLIENT_STATUS_NAMES: str = "3. Ready to Launch,4. Launched"
    AIRTABLE_PORTAL_KEY_MAP_JSON: str = ""
    AIRTABLE_TIMEOUT_SECONDS: float = 10.0
    AIRTABLE_MAX_PAGES: int = 200

    # ------------------------
    # RATE LIMITING
    # ------------------------
    RATE_LIMIT_STORAGE_URI: str = "memory://"
    RATE_LIMIT_AUTH: str = "5/minute"
    RATE_LIMIT_AUDIT: str = "3/minute"
    RATE_LIMIT_DEFAULT: str = "30/minute"

    # ------------------------
    # FRONTEND CONFIG
    # ------------------------
    FRONTEND_URL: str = "http://localhost:3000"

    @field_validator("JWT_SECRET")
    @classmethod
    def _reject_blank_secret(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("JWT_SECRET must not be blank")
        return value

    @field_validator("AIRTABLE_PORTAL_KEY_MAP_JSON")
    @classmethod
    def _validate_portal_key_map(cls, value: str) -> str:
        if value.strip():
            parsed = json.loads(value)
            if not isinstance(parsed, dict):
                raise ValueError("AIRTABLE_PORTAL_KEY_MAP_JSON must be a JSON object")
        return value

    @property
    def IS_PRODUCTION(self) -> bool:
        """Convenience helper to check if running in production"""
        return self.ENVIRONMENT.lower() == "production"

    @property
    def STRIPE_SUCCESS_URL(self) -> str:
        return f"{self.FRONTEND_URL}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}"

    @property
    def STRIPE_CANCEL_URL(self) -> str:
        return f"{self.FRONTEND_URL}/checkout/cancel"

    @property
    def OPS_RECIPIENTS(self) -> List[str]:
        return [e.strip().lower() for e in self.OPS_NOTIFICATION_EMAILS.split(",") if e.strip()]

    @property
    def AIRTABLE_ACTIVE_STATUSES(self) -> List[str]:
        return [s.strip() for s in self.AIRTABLE_ACTIVE_CLIENT_STATUS_NAMES.split(",") if s.strip()]

    @property
    def AIRTABLE_PORTAL_KEY_MAP(self) -> Dict[str, str]:
        """businessName -> portalKey overrides for registry rows."""
        if not self.AIRTABLE_PORTAL_KEY_MAP_JSON.strip():
            return {}
        parsed = json.loads(self.AIRTABLE_PORTAL_KEY_MAP_JSON)
        return {
            str(name): str(portal_key).strip()
            for name, portal_key in parsed.items()
            if isinstance(portal_key, str) and portal_key.strip()
        }

    @property
    def OPERATOR_BASIC_AUTH_CONFIGURED(self) -> bool:
        return bool(self.INTERNAL_BASIC_AUTH_USER and self.INTERNAL_BASIC_AUTH_PASS)

    @property
    def OPERATOR_AUTH_CONFIGURED(self) -> bool:
        return self.OPERATOR_BASIC_AUTH_CONFIGURED or bool(self.INTERNAL_TOOL_PASSWORD)

    # ------------------------
    # Pydantic v2 Settings
    # ------------------------
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


# ------------------------
# Settings Loader
# ------------------------
def load_settings() -> Settings:
    """Build settings once at process start; invalid config stops the process."""
    try:
        settings = Settings()
    except ValidationError as e:
        logger.error("❌ Environment configuration error — missing or invalid settings!\n%s", e)
        sys.exit(1)
    logger.info(f"✅ Environment variables loaded. Environment: {settings.ENVIRONMENT}, Debug: {settings.DEBUG}")
    return settings


def get_settings(request: Request) -> Settings:
    return request.app.state.settings
