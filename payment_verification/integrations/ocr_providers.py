"""
OCR providers for receipt images.

Every provider exposes one capability, ``recognize(image) -> OCRResult``.
Variants:
- tesseract: local engine through pytesseract (default)
- google:    Google Cloud Vision TEXT_DETECTION over REST
- azure:     Azure Computer Vision Read API over REST

Providers raise freely; the extractor turns failures into
ExtractionFailedError so the job orchestrator can retry them.
"""
import asyncio
import base64
import io
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
import pytesseract
import structlog
from PIL import Image

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class OCRResult:
    """Text recognised in an image plus the engine's confidence (0-100)."""

    text: str
    confidence: float


class OCRProvider(ABC):
    """Text recognition back end."""

    name: str = "base"

    @abstractmethod
    async def recognize(self, image: bytes) -> OCRResult:
        """Recognise text in an encoded image."""

    async def close(self) -> None:
        """Release network resources, if any."""


class TesseractProvider(OCRProvider):
    """Local Tesseract engine; runs in a worker thread."""

    name = "tesseract"

    # Assume a single uniform block of text, which suits bank receipts
    DEFAULT_CONFIG = "--psm 6"

    def __init__(self, language: str = "eng", config: str = DEFAULT_CONFIG):
        self.language = language
        self.config = config

    async def recognize(self, image: bytes) -> OCRResult:
        return await asyncio.to_thread(self._recognize_sync, image)

    def _recognize_sync(self, image: bytes) -> OCRResult:
        with Image.open(io.BytesIO(image)) as img:
            data = pytesseract.image_to_data(
                img,
                lang=self.language,
                config=self.config,
                output_type=pytesseract.Output.DICT,
            )

        lines: Dict[tuple, List[str]] = {}
        confidences: List[float] = []
        for i, word in enumerate(data["text"]):
            if not word or not word.strip():
                continue
            key = (data["block_num"][i], data["par_num"][i], data["line_num"][i])
            lines.setdefault(key, []).append(word)
            conf = float(data["conf"][i])
            if conf >= 0:
                confidences.append(conf)

        text = "\n".join(" ".join(words) for _, words in sorted(lines.items()))
        confidence = sum(confidences) / len(confidences) if confidences else 0.0

        logger.info("tesseract_ocr_completed", confidence=round(confidence, 2))
        return OCRResult(text=text, confidence=confidence)


class GoogleVisionProvider(OCRProvider):
    """Google Cloud Vision images:annotate with an API key."""

    name = "google"
    ENDPOINT = "https://vision.googleapis.com/v1/images:annotate"

    def __init__(
        self,
        api_key: str,
        timeout_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def recognize(self, image: bytes) -> OCRResult:
        body = {
            "requests": [
                {
                    "image": {"content": base64.b64encode(image).decode("ascii")},
                    "features": [{"type": "TEXT_DETECTION"}],
                }
            ]
        }
        response = await self._client.post(
            self.ENDPOINT, params={"key": self.api_key}, json=body
        )
        response.raise_for_status()
        annotation = response.json()["responses"][0]

        if "error" in annotation:
            raise RuntimeError(annotation["error"].get("message", "Google Vision error"))

        full_text = annotation.get("fullTextAnnotation") or {}
        pages = full_text.get("pages") or []
        page_confidences = [p["confidence"] for p in pages if "confidence" in p]
        confidence = (
            100.0 * sum(page_confidences) / len(page_confidences) if page_confidences else 0.0
        )

        logger.info("google_vision_ocr_completed", confidence=round(confidence, 2))
        return OCRResult(text=full_text.get("text", ""), confidence=confidence)

    async def close(self) -> None:
        await self._client.aclose()


class AzureVisionProvider(OCRProvider):
    """Azure Computer Vision Read API (submit, then poll the operation)."""

    name = "azure"
    READ_PATH = "/vision/v3.2/read/analyze"

    def __init__(
        self,
        endpoint: str,
        key: str,
        timeout_seconds: float = 30.0,
        poll_interval_seconds: float = 1.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.key = key
        self.timeout_seconds = timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def recognize(self, image: bytes) -> OCRResult:
        headers = {"Ocp-Apim-Subscription-Key": self.key}
        response = await self._client.post(
            f"{self.endpoint}{self.READ_PATH}",
            headers={**headers, "Content-Type": "application/octet-stream"},
            content=image,
        )
        response.raise_for_status()
        operation_url = response.headers["Operation-Location"]

        result = await self._poll(operation_url, headers)

        words_confidence: List[float] = []
        lines: List[str] = []
        for page in result.get("analyzeResult", {}).get("readResults", []):
            for line in page.get("lines", []):
                lines.append(line.get("text", ""))
                words_confidence.extend(w["confidence"] for w in line.get("words", []))

        confidence = (
            100.0 * sum(words_confidence) / len(words_confidence) if words_confidence else 0.0
        )
        logger.info("azure_vision_ocr_completed", confidence=round(confidence, 2))
        return OCRResult(text="\n".join(lines), confidence=confidence)

    async def _poll(self, operation_url: str, headers: Dict[str, str]) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout_seconds
        while True:
            response = await self._client.get(operation_url, headers=headers)
            response.raise_for_status()
            payload = response.json()
            status = payload.get("status")
            if status == "succeeded":
                return payload
            if status == "failed":
                raise RuntimeError("Azure Read operation failed")
            if loop.time() >= deadline:
                raise TimeoutError("Azure Read operation timed out")
            await asyncio.sleep(self.poll_interval_seconds)

    async def close(self) -> None:
        await self._client.aclose()
