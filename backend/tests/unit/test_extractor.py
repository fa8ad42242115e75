"""
Unit Tests — TextExtractionService
═══════════════════════════════════
The OCR service is served by httpx.MockTransport; format parsers run for real
on documents built in the test (python-docx, pypdf).

Coverage targets:
  ✅ OCR response matchers in isolation and in priority order
  ✅ OCR first: multipart POST to /process with bearer key, method "ocr"
  ✅ OCR failure / empty OCR text → format fallback
  ✅ No OCR configured → fallback directly (plain, docx, pdf)
  ✅ Unsupported MIME → ValidationError, or ProviderError when OCR was tried
  ✅ health_check, is_text_valid
"""

from __future__ import annotations

import io

import httpx
import pytest

from studydocs.core.exceptions import ProviderError, ValidationError
from studydocs.processing.extractor import (
    DOCX_MIME,
    PDF_MIME,
    TextExtractionService,
    extract_ocr_text,
    match_content,
    match_markdown,
    match_pages,
    match_raw_string,
    match_text,
)

OCR_URL = "http://ocr.test"


@pytest.fixture
def ocr_settings(test_settings):
    return test_settings.model_copy(update={"docling_ocr_url": OCR_URL + "/", "docling_ocr_api_key": "ocr-key"})


def _service(settings, handler, calls: list | None = None) -> TextExtractionService:
    def _record(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        return handler(request)

    return TextExtractionService(settings, client=httpx.AsyncClient(transport=httpx.MockTransport(_record)))


def _docx_bytes(*paragraphs: str) -> bytes:
    import docx

    document = docx.Document()
    for paragraph in paragraphs:
        document.add_paragraph(paragraph)
    buffer = io.BytesIO()
    document.save(buffer)
    return buffer.getvalue()


def _blank_pdf_bytes(pages: int) -> bytes:
    from pypdf import PdfWriter

    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=612, height=792)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


@pytest.mark.unit
class TestOcrMatchers:

    def test_individual_matchers(self):
        assert match_raw_string("plain body") == "plain body"
        assert match_text({"text": "t"}) == "t"
        assert match_content({"content": "c"}) == "c"
        assert match_markdown({"markdown": "# m"}) == "# m"
        assert match_pages({"pages": [{"text": "p1"}, {"content": "p2"}, "junk", {}]}) == "p1\n\np2"

    @pytest.mark.parametrize("matcher", [match_raw_string, match_text, match_content, match_markdown, match_pages])
    def test_matchers_ignore_other_shapes(self, matcher):
        assert matcher({"unrelated": 1}) is None
        assert matcher(None) is None

    def test_priority_order(self):
        payload = {"content": "from content", "markdown": "from markdown", "text": "from text"}
        assert extract_ocr_text(payload) == "from text"
        assert extract_ocr_text({"markdown": "md", "pages": [{"text": "page"}]}) == "md"

    def test_no_match(self):
        assert extract_ocr_text({"pages": []}) is None
        assert extract_ocr_text("") is None


@pytest.mark.unit
class TestOcrExtraction:

    async def test_ocr_result_used_when_available(self, ocr_settings):
        calls: list[httpx.Request] = []
        service = _service(
            ocr_settings,
            lambda r: httpx.Response(200, json={"text": "Recognised text", "pages": [{}, {}], "metadata": {"lang": "en"}}),
            calls,
        )

        result = await service.extract(b"%PDF-1.4", "scan.pdf", PDF_MIME)

        assert result.method == "ocr"
        assert result.text == "Recognised text"
        assert result.metadata["pages"] == 2
        assert result.metadata["lang"] == "en"
        assert result.metadata["word_count"] == 2
        request = calls[0]
        assert str(request.url) == f"{OCR_URL}/process"
        assert request.headers["Authorization"] == "Bearer ocr-key"
        assert request.headers["content-type"].startswith("multipart/form-data")
        assert b'filename="scan.pdf"' in request.content

    async def test_plain_text_ocr_response(self, ocr_settings):
        service = _service(ocr_settings, lambda r: httpx.Response(200, text="raw ocr body"))

        result = await service.extract(b"img", "photo.png", "image/png")

        assert result.method == "ocr"
        assert result.text == "raw ocr body"

    async def test_ocr_http_error_falls_back(self, ocr_settings):
        service = _service(ocr_settings, lambda r: httpx.Response(502))

        result = await service.extract("notes in utf-8 ✓".encode(), "notes.txt", "text/plain")

        assert result.method == "plain"
        assert result.text == "notes in utf-8 ✓"

    async def test_empty_ocr_text_falls_back(self, ocr_settings):
        service = _service(ocr_settings, lambda r: httpx.Response(200, json={"text": ""}))

        result = await service.extract(b"fallback body", "notes.md", "text/markdown")

        assert result.method == "plain"

    async def test_ocr_failure_without_fallback_parser(self, ocr_settings):
        service = _service(ocr_settings, lambda r: httpx.Response(500))

        with pytest.raises(ProviderError):
            await service.extract(b"img", "photo.png", "image/png")

    async def test_health_check(self, ocr_settings):
        assert await _service(ocr_settings, lambda r: httpx.Response(200)).health_check() is True
        assert await _service(ocr_settings, lambda r: httpx.Response(503)).health_check() is False

    async def test_health_check_without_url(self, test_settings):
        assert await TextExtractionService(test_settings).health_check() is False


@pytest.mark.unit
class TestFallbackExtraction:

    async def test_plain_latin1(self, test_settings):
        result = await TextExtractionService(test_settings).extract("café".encode("latin-1"), "a.txt", "text/plain")
        assert result.text == "café"
        assert result.metadata["char_count"] == 4

    async def test_docx(self, test_settings):
        data = _docx_bytes("Mitosis overview", "", "Prophase comes first")

        result = await TextExtractionService(test_settings).extract(data, "notes.docx", DOCX_MIME)

        assert result.method == "docx"
        assert result.text == "Mitosis overview\nProphase comes first"

    async def test_pdf_page_count(self, test_settings):
        result = await TextExtractionService(test_settings).extract(_blank_pdf_bytes(2), "blank.pdf", PDF_MIME)

        assert result.method == "pdf"
        assert result.metadata["pages"] == 2

    async def test_corrupt_pdf_is_provider_error(self, test_settings):
        with pytest.raises(ProviderError):
            await TextExtractionService(test_settings).extract(b"not a pdf", "broken.pdf", PDF_MIME)

    async def test_unsupported_type_without_ocr(self, test_settings):
        with pytest.raises(ValidationError, match="Unsupported file type"):
            await TextExtractionService(test_settings).extract(b"img", "photo.png", "image/png")


@pytest.mark.unit
class TestIsTextValid:

    @pytest.mark.parametrize("text, expected", [
        ("Enough real words here.", True),
        ("short", False),
        ("", False),
        ("..........,,,,,,,,,,----", False),
        ("          a         ", False),
    ])
    def test_quality_gate(self, text, expected):
        assert TextExtractionService.is_text_valid(text) is expected

    def test_custom_min_length(self):
        assert TextExtractionService.is_text_valid("abc", min_length=3) is True
