"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BusinessInfo(BaseModel):
    """Business details printed on receipts."""

    name: str = "WhatsApp Order Bot"
    address: Optional[str] = "123 Business Street, City, Country"
    phone: Optional[str] = "+1234567890"
    email: Optional[str] = "orders@business.com"
    tax_id: Optional[str] = "TAX123456789"

    model_config = {"frozen": True}


class BankAccountDetails(BaseModel):
    """Account customers transfer into for bank_transfer payments."""

    account_name: str = "Business Account"
    account_number: str = "1234567890"
    bank_name: str = "Main Bank"
    routing_number: Optional[str] = None

    model_config = {"frozen": True}


class CardProcessorDetails(BaseModel):
    """Hosted card processor customers are redirected to."""

    merchant_id: str = "MERCHANT123"
    processor_url: str = "https://payments.example.com"

    model_config = {"frozen": True}


class PaymentConfig(BaseModel):
    """
    Explicit configuration handed to the payment lifecycle manager.

    Replaces ambient environment lookups inside service methods.
    """

    timeout_minutes: int = 30
    currency_symbol: str = "₦"
    business: BusinessInfo = Field(default_factory=BusinessInfo)
    bank_account: BankAccountDetails = Field(default_factory=BankAccountDetails)
    card_processor: CardProcessorDetails = Field(default_factory=CardProcessorDetails)

    model_config = {"frozen": True}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(..., description="Database connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")
    database_connect_max_retries: int = Field(
        default=5, description="Connection attempts before the database is considered unavailable"
    )
    database_connect_retry_delay: float = Field(
        default=2.0, description="Fixed delay between connection attempts (seconds)"
    )

    # Redis / job store
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    job_store: str = Field(default="memory", description="Job record store (memory/redis)")
    job_store_prefix: str = Field(default="payment-jobs", description="Redis key prefix for job records")

    # Queue workers
    message_retry_concurrency: int = Field(default=2, description="Workers on message-retry")
    payment_verification_concurrency: int = Field(
        default=4, description="Workers on payment-verification"
    )
    receipt_generation_concurrency: int = Field(default=2, description="Workers on receipt-generation")

    # Evidence extraction
    ocr_provider: str = Field(default="tesseract", description="OCR provider (tesseract/google/azure)")
    ocr_preprocessing: str = Field(default="none", description="Image preprocessing (none/grayscale)")
    ocr_language: str = Field(default="eng", description="Tesseract language pack")
    ocr_timeout_seconds: float = Field(default=30.0, description="Remote OCR request timeout")
    google_vision_api_key: Optional[str] = Field(default=None, description="Google Cloud Vision API key")
    azure_vision_endpoint: Optional[str] = Field(default=None, description="Azure Computer Vision endpoint")
    azure_vision_key: Optional[str] = Field(default=None, description="Azure Computer Vision key")

    # Payment processing
    payment_timeout_minutes: int = Field(default=30, description="Payment instruction expiry (minutes)")
    currency_symbol: str = Field(default="₦", description="Currency symbol used in instructions")

    # Business information for receipts
    business_name: str = Field(default="WhatsApp Order Bot")
    business_address: Optional[str] = Field(default="123 Business Street, City, Country")
    business_phone: Optional[str] = Field(default="+1234567890")
    business_email: Optional[str] = Field(default="orders@business.com")
    business_tax_id: Optional[str] = Field(default="TAX123456789")

    # Payment accounts
    bank_account_name: str = Field(default="Business Account")
    bank_account_number: str = Field(default="1234567890")
    bank_name: str = Field(default="Main Bank")
    bank_routing_number: Optional[str] = Field(default=None)
    card_merchant_id: str = Field(default="MERCHANT123")
    card_processor_url: str = Field(default="https://payments.example.com")

    # Outbound messaging
    messaging_api_url: Optional[str] = Field(default=None, description="Messaging API send endpoint")
    messaging_api_token: Optional[str] = Field(default=None, description="Messaging API bearer token")

    # Application Configuration
    app_name: str = Field(default="payment-verification-engine", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("job_store")
    @classmethod
    def validate_job_store(cls, v: str) -> str:
        """Validate job store backend."""
        if v.lower() not in ("memory", "redis"):
            raise ValueError("Invalid job store. Must be one of: ['memory', 'redis']")
        return v.lower()

    @field_validator("payment_timeout_minutes")
    @classmethod
    def validate_timeout(cls, v: int) -> int:
        """Payment timeout must be positive."""
        if v <= 0:
            raise ValueError("payment_timeout_minutes must be positive")
        return v

    def payment_config(self) -> PaymentConfig:
        """Build the explicit payment configuration from settings."""
        return PaymentConfig(
            timeout_minutes=self.payment_timeout_minutes,
            currency_symbol=self.currency_symbol,
            business=BusinessInfo(
                name=self.business_name,
                address=self.business_address,
                phone=self.business_phone,
                email=self.business_email,
                tax_id=self.business_tax_id,
            ),
            bank_account=BankAccountDetails(
                account_name=self.bank_account_name,
                account_number=self.bank_account_number,
                bank_name=self.bank_name,
                routing_number=self.bank_routing_number,
            ),
            card_processor=CardProcessorDetails(
                merchant_id=self.card_merchant_id,
                processor_url=self.card_processor_url,
            ),
        )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()

