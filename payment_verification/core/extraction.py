"""
Text evidence extraction.

Wraps the configured OCR provider with optional preprocessing, timing and
failure classification. A preprocessing failure never aborts extraction:
the original image is used instead. A provider failure becomes
ExtractionFailedError, which the job orchestrator treats as retryable.
"""
import asyncio
import io
import time
from typing import Awaitable, Callable, Dict, Optional

import structlog
from PIL import Image, ImageFilter, ImageOps

from payment_verification.config import Settings, get_settings
from payment_verification.core.exceptions import ExtractionFailedError
from payment_verification.integrations.ocr_providers import (
    AzureVisionProvider,
    GoogleVisionProvider,
    OCRProvider,
    OCRResult,
    TesseractProvider,
)
from payment_verification.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

DEFAULT_PROVIDER = "tesseract"

Preprocessor = Callable[[bytes], Awaitable[bytes]]


async def no_preprocessing(image: bytes) -> bytes:
    return image


def _grayscale_sync(image: bytes) -> bytes:
    with Image.open(io.BytesIO(image)) as img:
        processed = ImageOps.autocontrast(ImageOps.grayscale(img)).filter(ImageFilter.SHARPEN)
        buffer = io.BytesIO()
        processed.save(buffer, format="PNG")
    return buffer.getvalue()


async def grayscale_preprocessing(image: bytes) -> bytes:
    """Grayscale, stretch contrast and sharpen; helps on phone photos of screens."""
    return await asyncio.to_thread(_grayscale_sync, image)


PREPROCESSORS: Dict[str, Preprocessor] = {
    "none": no_preprocessing,
    "grayscale": grayscale_preprocessing,
}


def create_provider(name: Optional[str], settings: Settings) -> OCRProvider:
    """
    Build the provider named by configuration.

    Unset or unrecognised names, and remote providers without credentials,
    fall back to the local engine.
    """
    resolved = (name or DEFAULT_PROVIDER).lower()

    if resolved == "google":
        if settings.google_vision_api_key:
            return GoogleVisionProvider(
                api_key=settings.google_vision_api_key,
                timeout_seconds=settings.ocr_timeout_seconds,
            )
        logger.warning("ocr_provider_missing_credentials", provider=resolved)
    elif resolved == "azure":
        if settings.azure_vision_endpoint and settings.azure_vision_key:
            return AzureVisionProvider(
                endpoint=settings.azure_vision_endpoint,
                key=settings.azure_vision_key,
                timeout_seconds=settings.ocr_timeout_seconds,
            )
        logger.warning("ocr_provider_missing_credentials", provider=resolved)
    elif resolved != DEFAULT_PROVIDER:
        logger.warning("ocr_provider_unrecognized", provider=resolved, fallback=DEFAULT_PROVIDER)

    return TesseractProvider(language=settings.ocr_language)


class TextExtractor:
    """
    Converts an image buffer into extracted text and a confidence number.

    Providers are built lazily per name and reused.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        providers: Optional[Dict[str, OCRProvider]] = None,
        preprocessor: Optional[Preprocessor] = None,
    ):
        self.settings = settings or get_settings()
        self._providers: Dict[str, OCRProvider] = dict(providers or {})
        if preprocessor is None:
            preprocessor = PREPROCESSORS.get(
                self.settings.ocr_preprocessing.lower(), no_preprocessing
            )
        self._preprocessor = preprocessor

    def get_provider(self, name: Optional[str] = None) -> OCRProvider:
        key = (name or self.settings.ocr_provider or DEFAULT_PROVIDER).lower()
        if key not in self._providers:
            self._providers[key] = create_provider(key, self.settings)
        return self._providers[key]

    async def _preprocess(self, image: bytes) -> bytes:
        try:
            return await self._preprocessor(image)
        except Exception as e:
            logger.warning("image_preprocessing_failed", error=str(e))
            return image

    async def extract(self, image: bytes, provider: Optional[str] = None) -> OCRResult:
        """
        Extract text from a receipt image.

        Args:
            image: Encoded image bytes
            provider: Optional provider name overriding configuration

        Returns:
            OCRResult: Extracted text and confidence

        Raises:
            ExtractionFailedError: If the provider call fails
        """
        ocr = self.get_provider(provider)
        processed = await self._preprocess(image)

        started = time.perf_counter()
        try:
            result = await ocr.recognize(processed)
        except Exception as e:
            metrics.record_extraction_error(ocr.name)
            logger.error("ocr_extraction_failed", provider=ocr.name, error=str(e))
            raise ExtractionFailedError(ocr.name, str(e)) from e

        metrics.record_extraction(ocr.name, time.perf_counter() - started)
        logger.info(
            "ocr_extraction_completed",
            provider=ocr.name,
            confidence=round(result.confidence, 2),
            text_length=len(result.text),
        )
        return result

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()
