from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database / auth configuration
    DATABASE_URL: str | None = None
    JWT_SECRET: str | None = None

    # Fernet key (urlsafe base64, 32 bytes) used to encrypt stored CRM passwords
    CREDENTIAL_ENCRYPTION_KEY: str | None = None

    # Outbound CRM traffic
    CRM_HTTP_TIMEOUT: float = 15.0  # per request, seconds
    CRM_PIPELINE_TIMEOUT: float = 60.0  # login + create, or login + lookup
    CRM_TEST_TIMEOUT: float = 30.0  # connection test (login only)
    CRM_MAX_REDIRECTS: int = 5
    CRM_USER_AGENT: str = (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/136.0.0.0 Safari/537.36"
    )

    # Where downloaded CRM invoice PDFs are stored
    CRM_PDF_DIR: str = "uploads/crm-invoices"

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )


settings = Settings()
