from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    supabase_url: str
    supabase_service_role_key: str
    jwt_secret: str
    database_url: str | None = None
    jwt_algorithm: str = "HS256"
    jwt_expiration_minutes: int = 60
    log_level: str = "INFO"
    calendly_webhook_signing_key: str | None = None
    calendly_webhook_signature_mode: str = "permissive_audit"  # permissive_audit | enforce
    calendly_webhook_signature_tolerance_seconds: int = 300
    hub_daily_rate_default: float = 100.0
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    stripe_api_base_url: str = "https://api.stripe.com"
    stripe_webhook_signature_tolerance_seconds: int = 300
    stripe_timeout_seconds: float = 12.0
    public_app_url: str = "https://eaton-console.vercel.app"
    checkout_line_item_description: str = "Payment for Eaton Academic services"

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
