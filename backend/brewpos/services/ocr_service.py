# Overview: OCR provider wrapper; turns a receipt image into text plus a 0-1 confidence.

from __future__ import annotations

import io
import logging
from dataclasses import dataclass

import pytesseract
from PIL import Image, UnidentifiedImageError
from flask import current_app


logger = logging.getLogger(__name__)


class OcrError(Exception):
    """Raised when text recognition fails or times out."""
    pass


@dataclass(frozen=True)
class OcrResult:
    text: str
    confidence: float  # normalized 0..1


class TesseractOcrProvider:
    """
    Tesseract-backed recognizer.

    Runs one image_to_data pass and rebuilds line-ordered text from the word
    boxes, so text and confidence come from the same recognition run.
    Tesseract reports word confidence 0-100 with -1 for non-word boxes.
    """

    def __init__(self, lang: str = "eng", timeout_seconds: float = 20.0):
        self.lang = lang
        self.timeout_seconds = timeout_seconds

    def recognize(self, image_bytes: bytes) -> OcrResult:
        try:
            with Image.open(io.BytesIO(image_bytes)) as image:
                image.load()
                data = pytesseract.image_to_data(
                    image.convert("RGB"),
                    lang=self.lang,
                    output_type=pytesseract.Output.DICT,
                    timeout=self.timeout_seconds,
                )
        except UnidentifiedImageError as exc:
            raise OcrError("Image could not be decoded") from exc
        except pytesseract.TesseractNotFoundError as exc:
            raise OcrError("Tesseract is not installed") from exc
        except pytesseract.TesseractError as exc:
            raise OcrError(f"Tesseract failed: {exc.message}") from exc
        except RuntimeError as exc:
            # pytesseract signals a killed subprocess on timeout with RuntimeError
            raise OcrError("Text recognition timed out") from exc
        except OSError as exc:
            raise OcrError("Image could not be read") from exc

        result = _result_from_data(data)
        logger.info("OCR finished: %d chars, confidence %.2f", len(result.text), result.confidence)
        return result


def _result_from_data(data: dict) -> OcrResult:
    lines: dict[tuple[int, int, int], list[str]] = {}
    confidences: list[float] = []

    for i, word in enumerate(data.get("text", [])):
        word = (word or "").strip()
        if not word:
            continue
        key = (data["block_num"][i], data["par_num"][i], data["line_num"][i])
        lines.setdefault(key, []).append(word)
        conf = float(data["conf"][i])
        if conf >= 0:
            confidences.append(conf)

    text = "\n".join(" ".join(words) for _, words in sorted(lines.items()))
    confidence = (sum(confidences) / len(confidences) / 100.0) if confidences else 0.0
    return OcrResult(text=text, confidence=round(confidence, 4))


def get_ocr_provider():
    """
    OCR provider for the current app.

    Deployments and tests may install their own object with a
    recognize(bytes) -> OcrResult method under app.extensions["ocr_provider"].
    """
    provider = current_app.extensions.get("ocr_provider")
    if provider is None:
        provider = TesseractOcrProvider(
            lang=current_app.config.get("OCR_LANG", "eng"),
            timeout_seconds=current_app.config.get("OCR_TIMEOUT_SECONDS", 20.0),
        )
        current_app.extensions["ocr_provider"] = provider
    return provider
