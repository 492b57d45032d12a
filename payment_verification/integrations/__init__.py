"""External integrations: OCR providers and customer messaging."""
from .messaging import MessageSender, OutboundMessage
from .ocr_providers import (
    AzureVisionProvider,
    GoogleVisionProvider,
    OCRProvider,
    OCRResult,
    TesseractProvider,
)

__all__ = [
    "AzureVisionProvider",
    "GoogleVisionProvider",
    "MessageSender",
    "OCRProvider",
    "OCRResult",
    "OutboundMessage",
    "TesseractProvider",
]
