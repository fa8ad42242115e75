"""
Text Extraction Service
═══════════════════════

Turns uploaded file bytes into plain text for the chunker.

Strategy flow:
  1.  OCR service (Docling-style HTTP API), when DOCLING_OCR_URL is set
        POST {url}/process   multipart "file", optional Bearer key, 300 s
  2.  On any OCR failure (or empty OCR text) fall back by MIME type:
        application/pdf          → pypdf
        ...wordprocessingml...   → python-docx
        text/plain, text/markdown→ UTF-8 decode (latin-1 fallback)
  3.  Return ExtractionResult(text, method, metadata)
        method ∈ {"ocr", "pdf", "docx", "plain"}

OCR response shapes (ordered matchers, first non-empty wins):
  raw string body │ {"text"} │ {"content"} │ {"markdown"} │ {"pages": [{text|content}]}

Errors:
  ValidationError  the MIME type has no extraction path
  ProviderError    OCR failed and the fallback parser failed too
"""

from __future__ import annotations

import asyncio
import io
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence

import httpx

from studydocs.core.config import Settings
from studydocs.core.exceptions import ProviderError, ValidationError

logger = logging.getLogger(__name__)

PDF_MIME      = "application/pdf"
DOCX_MIME     = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
TEXT_MIMES    = frozenset({"text/plain", "text/markdown"})

METHOD_OCR    = "ocr"
METHOD_PDF    = "pdf"
METHOD_DOCX   = "docx"
METHOD_PLAIN  = "plain"

_ALNUM_RE = re.compile(r"[a-zA-Z0-9]")


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class ExtractionResult:
    """
    text      : extracted text, untouched (normalisation is the chunker's job)
    method    : "ocr" | "pdf" | "docx" | "plain"
    metadata  : word_count, char_count, plus pages / provider metadata if known
    """
    text:     str
    method:   str
    metadata: dict = field(default_factory=dict)


def count_words(text: str) -> int:
    return len(text.split())


def _result(text: str, method: str, extra: dict | None = None) -> ExtractionResult:
    metadata = {k: v for k, v in (extra or {}).items() if v is not None}
    metadata.update(word_count=count_words(text), char_count=len(text))
    return ExtractionResult(text=text, method=method, metadata=metadata)


# ---------------------------------------------------------------------------
# OCR response shape matchers
# ---------------------------------------------------------------------------

TextMatcher = Callable[[Any], Optional[str]]


def match_raw_string(payload: Any) -> Optional[str]:
    return payload if isinstance(payload, str) and payload else None


def _match_key(key: str) -> TextMatcher:
    def matcher(payload: Any) -> Optional[str]:
        if not isinstance(payload, dict):
            return None
        value = payload.get(key)
        return value if isinstance(value, str) and value else None
    matcher.__name__ = f"match_{key}"
    return matcher


match_text     = _match_key("text")
match_content  = _match_key("content")
match_markdown = _match_key("markdown")


def match_pages(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict) or not isinstance(payload.get("pages"), list):
        return None
    texts = []
    for page in payload["pages"]:
        if not isinstance(page, dict):
            continue
        text = page.get("text") or page.get("content")
        if isinstance(text, str) and text:
            texts.append(text)
    return "\n\n".join(texts) or None


OCR_TEXT_MATCHERS: tuple[TextMatcher, ...] = (
    match_raw_string,
    match_text,
    match_content,
    match_markdown,
    match_pages,
)


def extract_ocr_text(payload: Any, matchers: Sequence[TextMatcher] = OCR_TEXT_MATCHERS) -> Optional[str]:
    for matcher in matchers:
        text = matcher(payload)
        if text:
            return text
    return None


# ---------------------------------------------------------------------------
# Format parsers (blocking; run in a thread executor)
# ---------------------------------------------------------------------------

def _parse_pdf(data: bytes) -> tuple[str, int]:
    from pypdf import PdfReader

    reader = PdfReader(io.BytesIO(data))
    pages  = [page.extract_text() or "" for page in reader.pages]
    return "\n\n".join(pages), len(pages)


def _parse_docx(data: bytes) -> str:
    import docx

    document = docx.Document(io.BytesIO(data))
    return "\n".join(para.text for para in document.paragraphs if para.text.strip())


def _decode_text(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("latin-1", errors="replace")


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class TextExtractionService:
    """
    Usage:
        extractor = TextExtractionService(get_settings())
        result    = await extractor.extract(data, "notes.pdf", "application/pdf")
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._client   = client
        self._ocr_url  = settings.docling_ocr_url.rstrip("/")

        if not self._ocr_url:
            logger.warning("DOCLING_OCR_URL not configured; using format parsers only")

    async def extract(self, data: bytes, filename: str, mime_type: str) -> ExtractionResult:
        logger.info("Extracting text | file=%s mime=%s size=%d", filename, mime_type, len(data))

        ocr_error: Exception | None = None
        if self._ocr_url:
            try:
                return await self._extract_with_ocr(data, filename, mime_type)
            except ProviderError as exc:
                ocr_error = exc
                logger.warning("OCR failed, trying fallback | file=%s error=%s", filename, exc)

        return await self._extract_with_fallback(data, filename, mime_type, ocr_error)

    # ------------------------------------------------------------------
    # OCR
    # ------------------------------------------------------------------

    async def _extract_with_ocr(self, data: bytes, filename: str, mime_type: str) -> ExtractionResult:
        headers = {}
        if self._settings.docling_ocr_api_key:
            headers["Authorization"] = f"Bearer {self._settings.docling_ocr_api_key}"
        files = {"file": (filename, data, mime_type)}
        url   = f"{self._ocr_url}/process"

        try:
            if self._client is not None:
                response = await self._client.post(
                    url, files=files, headers=headers, timeout=self._settings.ocr_timeout_seconds,
                )
            else:
                async with httpx.AsyncClient(timeout=self._settings.ocr_timeout_seconds) as client:
                    response = await client.post(url, files=files, headers=headers)
            response.raise_for_status()
            payload = _decode_ocr_payload(response)
        except httpx.HTTPStatusError as exc:
            raise ProviderError(f"OCR request failed with HTTP {exc.response.status_code}") from exc
        except httpx.RequestError as exc:
            raise ProviderError(f"OCR request failed: {exc}") from exc

        text = extract_ocr_text(payload)
        if not text or not text.strip():
            raise ProviderError("OCR response contained no text")

        extra = payload if isinstance(payload, dict) else {}
        provider_meta = extra.get("metadata") if isinstance(extra.get("metadata"), dict) else {}
        pages = extra.get("pages")
        page_count = len(pages) if isinstance(pages, list) else pages if isinstance(pages, int) else None

        logger.info("OCR ok | file=%s chars=%d", filename, len(text))
        return _result(text, METHOD_OCR, {**provider_meta, "pages": page_count})

    async def health_check(self) -> bool:
        if not self._ocr_url:
            return False
        url = f"{self._ocr_url}/health"
        try:
            if self._client is not None:
                response = await self._client.get(url, timeout=self._settings.ocr_health_timeout_seconds)
            else:
                async with httpx.AsyncClient(timeout=self._settings.ocr_health_timeout_seconds) as client:
                    response = await client.get(url)
        except httpx.HTTPError as exc:
            logger.error("OCR health check failed: %s", exc)
            return False
        return response.status_code == 200

    # ------------------------------------------------------------------
    # Fallback parsers
    # ------------------------------------------------------------------

    async def _extract_with_fallback(
        self,
        data:      bytes,
        filename:  str,
        mime_type: str,
        ocr_error: Exception | None,
    ) -> ExtractionResult:
        if mime_type not in (PDF_MIME, DOCX_MIME) and mime_type not in TEXT_MIMES:
            if ocr_error is not None:
                raise ProviderError(
                    f"OCR failed for {filename} and {mime_type} has no fallback parser: {ocr_error}"
                ) from ocr_error
            raise ValidationError(f"Unsupported file type: {mime_type}")

        loop = asyncio.get_event_loop()
        try:
            if mime_type == PDF_MIME:
                text, pages = await loop.run_in_executor(None, _parse_pdf, data)
                result = _result(text, METHOD_PDF, {"pages": pages})
            elif mime_type == DOCX_MIME:
                text = await loop.run_in_executor(None, _parse_docx, data)
                result = _result(text, METHOD_DOCX)
            else:
                result = _result(_decode_text(data), METHOD_PLAIN)
        except Exception as exc:
            logger.error("All extraction methods failed | file=%s error=%s", filename, exc)
            raise ProviderError(f"Text extraction failed for {filename}: {exc}") from exc

        logger.info(
            "Fallback extraction ok | file=%s method=%s chars=%d",
            filename, result.method, len(result.text),
        )
        return result

    # ------------------------------------------------------------------
    # Quality gate
    # ------------------------------------------------------------------

    @staticmethod
    def is_text_valid(text: str, min_length: int = 10) -> bool:
        """At least min_length non-blank chars, more than half of them alphanumeric."""
        if not text or len(text.strip()) < min_length:
            return False
        return len(_ALNUM_RE.findall(text)) > min_length / 2


def _decode_ocr_payload(response: httpx.Response) -> Any:
    content_type = response.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError("OCR response is not valid JSON") from exc
    return response.text
