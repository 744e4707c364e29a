from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator

APP_ENVIRONMENTS = ("development", "production", "test")
WOMPI_ENVIRONMENTS = ("sandbox", "production")


class Settings(BaseSettings):
    database_url: str = Field(alias="DATABASE_URL")
    app_env: str = Field(default="development", alias="APP_ENV")

    stripe_secret_key: str | None = Field(default=None, alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: str | None = Field(default=None, alias="STRIPE_WEBHOOK_SECRET")
    stripe_webhook_tolerance_seconds: int = Field(default=300, alias="STRIPE_WEBHOOK_TOLERANCE_SECONDS")
    stripe_price_id_pro: str | None = Field(default=None, alias="STRIPE_PRICE_ID_PRO")
    stripe_price_id_pro_annual: str | None = Field(default=None, alias="STRIPE_PRICE_ID_PRO_ANNUAL")
    stripe_price_id_premium: str | None = Field(default=None, alias="STRIPE_PRICE_ID_PREMIUM")
    stripe_price_id_premium_annual: str | None = Field(default=None, alias="STRIPE_PRICE_ID_PREMIUM_ANNUAL")

    wompi_public_key: str | None = Field(default=None, alias="WOMPI_PUBLIC_KEY")
    wompi_private_key: str | None = Field(default=None, alias="WOMPI_PRIVATE_KEY")
    wompi_events_secret: str | None = Field(default=None, alias="WOMPI_EVENTS_SECRET")
    wompi_acceptance_token: str | None = Field(default=None, alias="WOMPI_ACCEPTANCE_TOKEN")
    wompi_environment: str = Field(default="sandbox", alias="WOMPI_ENVIRONMENT")
    wompi_payment_link_pro_monthly: str | None = Field(default=None, alias="WOMPI_PAYMENT_LINK_PRO_MONTHLY")
    wompi_payment_link_pro_annual: str | None = Field(default=None, alias="WOMPI_PAYMENT_LINK_PRO_ANNUAL")
    wompi_payment_link_premium_monthly: str | None = Field(default=None, alias="WOMPI_PAYMENT_LINK_PREMIUM_MONTHLY")
    wompi_payment_link_premium_annual: str | None = Field(default=None, alias="WOMPI_PAYMENT_LINK_PREMIUM_ANNUAL")
    wompi_settle_recheck_seconds: float = Field(default=3.0, alias="WOMPI_SETTLE_RECHECK_SECONDS")
    amount_match_tolerance_cop: int = Field(default=1000, alias="AMOUNT_MATCH_TOLERANCE_COP")

    smtp_server: str = Field(default="smtp.gmail.com", alias="SMTP_SERVER")
    smtp_port: int = Field(default=587, alias="SMTP_PORT")
    sender_email: str | None = Field(default=None, alias="SENDER_EMAIL")
    sender_password: str | None = Field(default=None, alias="SENDER_PASSWORD")
    telegram_bot_token: str | None = Field(default=None, alias="TELEGRAM_BOT_TOKEN")
    telegram_chat_id: str | None = Field(default=None, alias="TELEGRAM_CHAT_ID")

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
    )

    @property
    def DATABASE_URL(self) -> str:
        return self.database_url

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def wompi_api_url(self) -> str:
        if self.wompi_environment == "production":
            return "https://production.wompi.co/v1"
        return "https://sandbox.wompi.co/v1"

    @field_validator("app_env")
    @classmethod
    def validate_app_env(cls, value: str) -> str:
        cleaned = (value or "").strip().lower()
        if cleaned not in APP_ENVIRONMENTS:
            raise ValueError(f"APP_ENV must be one of {', '.join(APP_ENVIRONMENTS)}")
        return cleaned

    @field_validator("wompi_environment")
    @classmethod
    def validate_wompi_environment(cls, value: str) -> str:
        cleaned = (value or "").strip().lower()
        if cleaned not in WOMPI_ENVIRONMENTS:
            raise ValueError("WOMPI_ENVIRONMENT must be sandbox or production")
        return cleaned

    @field_validator("stripe_webhook_secret", "wompi_events_secret")
    @classmethod
    def validate_webhook_secret(cls, value: str | None) -> str | None:
        if value is None or value == "":
            return None
        if len(value) < 16:
            raise ValueError("webhook signing secrets must be at least 16 chars long")
        return value


settings = Settings()

engine = create_engine(settings.database_url, pool_pre_ping=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


class Base(DeclarativeBase):
    pass


# Dependency
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_settings() -> Settings:
    return settings
