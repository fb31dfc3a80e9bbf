"""
Plain-text extraction for documents stored in object storage.
"""

import io
import logging
import mimetypes

from pypdf import PdfReader
from pypdf.errors import PdfReadError

logger = logging.getLogger(__name__)

TEXT_TYPES = {"text/plain", "text/markdown", "text/csv", "application/json"}


def extract_text(content: bytes, file_name: str) -> str:
    """Text content of ``file_name``; empty string for unsupported types."""
    mime_type, _ = mimetypes.guess_type(file_name)
    lower = file_name.lower()

    if lower.endswith(".pdf") or mime_type == "application/pdf":
        try:
            reader = PdfReader(io.BytesIO(content))
        except PdfReadError as e:
            logger.warning("Unreadable PDF %s: %s", file_name, e)
            return ""
        pages_text = [page.extract_text() or "" for page in reader.pages]
        return "\n\n".join(pages_text).strip()

    if mime_type in TEXT_TYPES or lower.endswith((".md", ".txt")):
        return content.decode("utf-8", errors="replace").strip()

    logger.info("No text extractor for %s (%s)", file_name, mime_type)
    return ""
