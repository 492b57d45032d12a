"""Configuration package for the payment verification engine."""
from .settings import (
    BankAccountDetails,
    BusinessInfo,
    CardProcessorDetails,
    PaymentConfig,
    Settings,
    get_settings,
)

__all__ = [
    "BankAccountDetails",
    "BusinessInfo",
    "CardProcessorDetails",
    "PaymentConfig",
    "Settings",
    "get_settings",
]
