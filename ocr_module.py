"""
ocr_module.py
=============
Local OCR for photographed sign-in sheets.

  • PaddleOCR init tries multiple param signatures (handles 2.x / 2.7+ / 2.8+)
  • Upscales low-res photos automatically
  • Tokens on the same baseline are joined back into one line
  • Lines that cannot be a name (single chars, digits only, header words) are dropped
  • Failures surface as typed errors, never as an empty success

Supports: .jpg .jpeg .png .bmp .tiff
"""

import os
import re
import logging
import warnings
from pathlib import Path
from typing import List

import numpy as np
import cv2

from errors import ImageEncodingFailed, ImageUnavailable, NoTextFound, RequestFailed

warnings.filterwarnings("ignore")

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
)
logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────
MIN_TEXT_CONFIDENCE = 0.3
LETTER_PATTERN = re.compile(r"[A-Za-z]")

IGNORE_LINES = {
    "name", "names", "signature", "sign", "attendance", "sign in",
    "sign in sheet", "date", "roll", "roll no", "class", "section",
    "student", "students", "student name", "present", "absent",
}

IMAGE_EXTS = {".jpg", ".jpeg", ".png", ".bmp", ".tiff", ".tif"}


# ══════════════════════════════════════════════════════════════════════════════
# PaddleOCR singleton — version-safe
# ══════════════════════════════════════════════════════════════════════════════

_ocr_engine = None


def _get_ocr_engine():
    """
    Build PaddleOCR, trying progressively simpler constructor signatures.
    Supports PaddleOCR 2.x, 2.7+, 2.8+.
    """
    global _ocr_engine
    if _ocr_engine is not None:
        return _ocr_engine

    # Force CPU-only mode and disable problematic backends
    os.environ['FLAGS_use_mkldnn'] = '0'
    os.environ['CUDA_VISIBLE_DEVICES'] = ''

    try:
        from paddleocr import PaddleOCR  # noqa
    except ImportError as e:
        raise RequestFailed(
            "paddleocr not installed. Run: pip install paddleocr paddlepaddle"
        ) from e

    attempts = [
        dict(use_textline_orientation=True, lang="en"),
        dict(use_angle_cls=True, lang="en"),
        dict(lang="en"),
        dict(),
    ]

    last_err = None
    for kwargs in attempts:
        try:
            _ocr_engine = PaddleOCR(**kwargs)
            logger.info("PaddleOCR ready — params: %s", kwargs)
            return _ocr_engine
        except Exception as e:
            last_err = e
            continue

    raise RequestFailed(f"cannot init PaddleOCR after all attempts: {last_err}")


# ══════════════════════════════════════════════════════════════════════════════
# Image pre-processing
# ══════════════════════════════════════════════════════════════════════════════

def decode_image(image_bytes: bytes) -> np.ndarray:
    """Decode raw upload bytes into a BGR array."""
    if not image_bytes:
        raise ImageUnavailable()
    arr = np.frombuffer(image_bytes, dtype=np.uint8)
    try:
        img = cv2.imdecode(arr, cv2.IMREAD_COLOR)
    except cv2.error as e:
        raise ImageEncodingFailed(str(e)) from e
    if img is None:
        raise ImageEncodingFailed("unsupported or corrupt image data")
    return img


def _preprocess(img_bgr: np.ndarray) -> np.ndarray:
    """
    Grayscale → CLAHE contrast → light denoise → 3-channel BGR.
    Handwriting loses strokes under hard binarisation, so no threshold here.
    """
    gray = cv2.cvtColor(img_bgr, cv2.COLOR_BGR2GRAY)
    clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))
    enhanced = clahe.apply(gray)
    blurred = cv2.GaussianBlur(enhanced, (3, 3), 0)
    return cv2.cvtColor(blurred, cv2.COLOR_GRAY2BGR)


def _auto_upscale(img: np.ndarray, min_width: int = 1400) -> np.ndarray:
    """Upscale images narrower than min_width for better OCR accuracy."""
    h, w = img.shape[:2]
    if w < min_width:
        scale = min_width / w
        img = cv2.resize(img, None, fx=scale, fy=scale,
                         interpolation=cv2.INTER_CUBIC)
        logger.info("Upscaled image %.1fx → (%d×%d)", scale, img.shape[1], img.shape[0])
    return img


# ══════════════════════════════════════════════════════════════════════════════
# OCR runner — version-safe
# ══════════════════════════════════════════════════════════════════════════════

def _run_ocr(region: np.ndarray) -> list:
    """
    Run PaddleOCR on a BGR numpy region.
    Returns list of dicts sorted top→bottom, left→right.
    """
    ocr = _get_ocr_engine()

    try:
        result = ocr.ocr(region)
    except Exception as e:
        logger.warning("OCR call failed: %s", e)
        raise RequestFailed(str(e)) from e

    if not result or not result[0]:
        return []

    records = []
    for line in result[0]:
        if line is None:
            continue
        try:
            bbox, (text, conf) = line[0], line[1]
            records.append({
                "text": str(text).strip(),
                "confidence": float(conf),
                "y": float(bbox[0][1]),
                "x": float(bbox[0][0]),
            })
        except (TypeError, ValueError, IndexError):
            logger.debug("Skipping malformed OCR entry: %r", line)
            continue

    records.sort(key=lambda r: (r["y"], r["x"]))
    return records


def _group_rows(records: list, y_tol: int = 14) -> list:
    """Cluster OCR records into horizontal rows using Y-coordinate proximity."""
    if not records:
        return []
    rows, cur, cur_y = [], [records[0]], records[0]["y"]
    for rec in records[1:]:
        if abs(rec["y"] - cur_y) <= y_tol:
            cur.append(rec)
        else:
            rows.append(sorted(cur, key=lambda r: r["x"]))
            cur, cur_y = [rec], rec["y"]
    rows.append(sorted(cur, key=lambda r: r["x"]))
    return rows


def _is_name_line(text: str) -> bool:
    if len(text) <= 1 or not LETTER_PATTERN.search(text):
        return False
    return text.strip().lower().rstrip(":") not in IGNORE_LINES


# ══════════════════════════════════════════════════════════════════════════════
# Public API
# ══════════════════════════════════════════════════════════════════════════════

def extract_lines(img: np.ndarray, y_tol: int = 14) -> List[str]:
    """OCR a decoded image and return candidate name lines, top to bottom."""
    records = [r for r in _run_ocr(img) if r["confidence"] >= MIN_TEXT_CONFIDENCE]
    lines = []
    for row in _group_rows(records, y_tol=y_tol):
        text = " ".join(r["text"] for r in row if r["text"]).strip()
        if _is_name_line(text):
            lines.append(text)
    return lines


def recognize_text(image_bytes: bytes, preprocess: bool = True) -> List[str]:
    """
    Read every plausible name line from a photographed sign-in sheet.

    Raises
    ------
    ImageUnavailable     no image bytes given
    ImageEncodingFailed  bytes are not a decodable image
    RequestFailed        the OCR engine could not be built or crashed
    NoTextFound          nothing name-like was read
    """
    img = _auto_upscale(decode_image(image_bytes))
    if preprocess:
        img = _preprocess(img)

    lines = extract_lines(img)
    if not lines:
        raise NoTextFound()

    logger.info("Local OCR read %d candidate lines", len(lines))
    logger.debug("OCR lines: %s", lines)
    return lines


def load_image_bytes(file_path: str) -> bytes:
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"Not found: {file_path}")
    if path.suffix.lower() not in IMAGE_EXTS:
        raise ValueError(f"Unsupported extension: {path.suffix}")
    return path.read_bytes()


# CLI
if __name__ == "__main__":
    import sys
    if len(sys.argv) < 2:
        print("Usage: python ocr_module.py <image>")
        sys.exit(1)
    for ln in recognize_text(load_image_bytes(sys.argv[1])):
        print(ln)
