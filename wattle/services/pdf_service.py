"""PDF and image text extraction.

Embedded PDF text first; pages are rendered and OCR'd only when the embedded
text is not meaningful.
"""
import io
import logging
import os
import shutil
from typing import List, Tuple

import fitz  # PyMuPDF
import PyPDF2
import pytesseract
from PIL import Image

logger = logging.getLogger(__name__)

IMAGE_TYPES = ("image/jpeg", "image/png")

# Ensure pytesseract can find the tesseract binary on common hosts.
if shutil.which("tesseract") is None:
    for cand in ("/usr/bin/tesseract", "/usr/local/bin/tesseract"):
        if os.path.exists(cand):
            pytesseract.pytesseract.tesseract_cmd = cand
            break


def extract_pdf_text(data: bytes) -> str:
    reader = PyPDF2.PdfReader(io.BytesIO(data))
    parts: List[str] = []
    for page in reader.pages:
        parts.append(page.extract_text() or "")
    return "\n".join(parts).strip()


def text_is_meaningful(text: str) -> bool:
    s = (text or "").strip()
    if len(s) < 250:
        return False
    alpha = sum(1 for ch in s if ch.isalpha())
    ratio = alpha / max(len(s), 1)
    return ratio >= 0.25


def ocr_ready() -> Tuple[bool, str]:
    try:
        _ = pytesseract.get_tesseract_version()
    except Exception as e:
        return False, f"tesseract not available: {e}"
    return True, ""


def prep(img):
    """Grayscale plus a simple contrast stretch for scanned pages"""
    g = img.convert("L")
    return Image.eval(g, lambda x: 0 if x < 15 else (255 if x > 240 else x))


def ocr_image_bytes(data: bytes) -> str:
    img = Image.open(io.BytesIO(data))
    return (pytesseract.image_to_string(prep(img)) or "").strip()


def ocr_pdf_bytes(pdf_bytes: bytes, max_pages: int = 12) -> Tuple[str, str]:
    """Return OCR text and an error string"""
    try:
        doc = fitz.open(stream=pdf_bytes, filetype="pdf")
    except Exception as e:
        return "", f"Could not open PDF for OCR: {e}"

    parts: List[str] = []
    try:
        for i in range(min(len(doc), max_pages)):
            try:
                pix = doc.load_page(i).get_pixmap(dpi=220, alpha=False)
                img = prep(Image.open(io.BytesIO(pix.tobytes("png"))))
                parts.append(pytesseract.image_to_string(img, config="--psm 6") or "")
            except Exception as e:
                logger.warning(f"OCR failed on page {i + 1}: {e}")
                parts.append("")
    finally:
        doc.close()
    return "\n".join(parts).strip(), ""


def extract_text(data: bytes, content_type: str) -> Tuple[str, str]:
    """Returns text and an error string"""
    content_type = (content_type or "").lower()
    if "pdf" in content_type:
        try:
            extracted = extract_pdf_text(data)
        except Exception as e:
            logger.warning(f"PDF text extraction failed: {e}")
            extracted = ""
        if text_is_meaningful(extracted):
            return extracted, ""

        ok, msg = ocr_ready()
        if not ok:
            return extracted, f"OCR not available: {msg}"
        ocr_text, err = ocr_pdf_bytes(data)
        if err:
            return extracted, err
        best = ocr_text if text_is_meaningful(ocr_text) or len(ocr_text) > len(extracted) else extracted
        return best, ""

    if content_type in IMAGE_TYPES:
        ok, msg = ocr_ready()
        if not ok:
            return "", f"OCR not available: {msg}"
        try:
            return ocr_image_bytes(data), ""
        except Exception as e:
            return "", f"OCR failed: {e}"

    return "", "Unsupported file type"
