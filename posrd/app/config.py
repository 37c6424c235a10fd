import os
from decimal import Decimal
from typing import List, Optional


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = os.getenv('DATABASE_URL', 'postgresql://localhost/posrd')
        # Comma-separated list of allowed CORS origins for the web front end.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"

        # ITBIS is 18% by law; the env override exists for tests and future rate changes.
        self.itbis_rate = Decimal(os.getenv("ITBIS_RATE", "0.18").strip() or "0.18")
        self.session_days = max(1, _env_int("SESSION_DAYS", 7))

        self.logo_max_mb = max(1, min(_env_int("LOGO_MAX_MB", 5), 20))
        self.logo_dir = os.getenv("LOGO_DIR", "").strip() or os.path.join(os.getcwd(), "uploads", "logos")

        self.dgii_rnc_url = (
            os.getenv("DGII_RNC_URL", "").strip()
            or "https://dgii.gov.do/app/WebApps/Consultas/RNC/DGII_RNC.zip"
        )
        self.dgii_rnc_timeout_seconds = max(10, _env_int("DGII_RNC_TIMEOUT_SECONDS", 300))
        # Day, month and DGII period boundaries are taken on this calendar.
        self.business_timezone = os.getenv("BUSINESS_TIMEZONE", "").strip() or "America/Santo_Domingo"
        self.rnc_sync_timezone = os.getenv("RNC_SYNC_TIMEZONE", "").strip() or self.business_timezone

        self.whatsapp_api_url = (
            os.getenv("WHATSAPP_API_URL", "").strip() or "https://graph.facebook.com/v19.0"
        )
        self.whatsapp_api_token: Optional[str] = os.getenv("WHATSAPP_API_TOKEN", "").strip() or None
        self.whatsapp_phone_number_id: Optional[str] = os.getenv("WHATSAPP_PHONE_NUMBER_ID", "").strip() or None

        self.smtp_host: Optional[str] = os.getenv("SMTP_HOST", "").strip() or None
        self.smtp_port = _env_int("SMTP_PORT", 587)
        self.smtp_user: Optional[str] = os.getenv("SMTP_USER", "").strip() or None
        self.smtp_password: Optional[str] = os.getenv("SMTP_PASSWORD", "") or None
        self.smtp_from = os.getenv("SMTP_FROM", "").strip() or self.smtp_user or "no-reply@localhost"
        self.smtp_starttls = (os.getenv("SMTP_STARTTLS", "1").strip().lower() not in {"0", "false", "no"})

    @property
    def is_dev(self) -> bool:
        return self.env in {"local", "dev"}

    @property
    def whatsapp_enabled(self) -> bool:
        return bool(self.whatsapp_api_token and self.whatsapp_phone_number_id)

    @property
    def smtp_enabled(self) -> bool:
        return bool(self.smtp_host)


settings = Settings()
