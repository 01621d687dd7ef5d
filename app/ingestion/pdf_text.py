"""
Raw text extraction from uploaded PDFs using PyMuPDF.

Any failure (encrypted, corrupt, image-only PDFs) yields None so the caller
can record the document as unextractable instead of aborting ingestion.
"""
from typing import Optional
import logging

import fitz

logger = logging.getLogger(__name__)


def extract_pdf_text(pdf_bytes: bytes) -> Optional[str]:
    """
    Extract page text from PDF bytes.

    Returns:
        Page texts joined by blank lines, or None when nothing could be read.
    """
    if not pdf_bytes:
        return None

    try:
        with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
            if doc.needs_pass:
                logger.warning("PDF is password protected, skipping text extraction")
                return None
            pages = [page.get_text("text") for page in doc]
    except Exception as e:
        logger.warning(f"Unable to read PDF: {e}")
        return None

    text = "\n\n".join(page for page in pages if page and page.strip())
    if not text.strip():
        logger.info("PDF has no text layer (scanned or image-only)")
        return None

    logger.debug(f"Extracted {len(text)} chars from {len(pages)} pages")
    return text
