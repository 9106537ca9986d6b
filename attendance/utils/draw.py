from __future__ import annotations

from functools import lru_cache
from typing import Sequence, Tuple

import warnings

import cv2
import numpy as np
from PIL import Image, ImageDraw, ImageFont

from attendance.config import FONT_LIST

KNOWN_COLOR = (102, 163, 33)  # BGR green
UNKNOWN_COLOR = (0, 0, 255)  # BGR red

TextItem = Tuple[str, Tuple[int, int], int, Tuple[int, int, int]]


@lru_cache(maxsize=64)
def _font(font_size: int) -> Tuple[ImageFont.ImageFont, bool]:
    """First loadable font from FONT_LIST at `font_size`; (font, has_unicode)."""
    for path in FONT_LIST:
        try:
            return ImageFont.truetype(path, int(font_size)), True
        except OSError:
            continue
    return ImageFont.load_default(), False


@lru_cache(maxsize=1)
def _warn_missing_unicode_font() -> None:
    warnings.warn(
        "No font from FONT_LIST could be loaded; accented names may render incorrectly. "
        "Install fonts-dejavu or add a font path to attendance/config.py FONT_LIST.",
        RuntimeWarning,
    )


def _put_text_cv2(img: np.ndarray, items: Sequence[TextItem]) -> None:
    for text, org, font_size, bgr in items:
        cv2.putText(
            img,
            str(text),
            (int(org[0]), int(org[1]) + int(font_size)),
            cv2.FONT_HERSHEY_SIMPLEX,
            max(0.3, int(font_size) / 24.0),
            tuple(int(c) for c in bgr),
            1,
            cv2.LINE_AA,
        )


def draw_texts(img: np.ndarray, items: Sequence[TextItem]) -> None:
    """Draw (text, (x, y), font_size_px, bgr) items onto a BGR frame in place.

    All items go through one PIL round trip; OpenCV's Hershey font is the
    fallback when PIL fails (non-ASCII characters are lost there).
    """
    if img is None or not items:
        return
    fonts = [_font(int(size)) for (_, _, size, _) in items]
    if not all(ok for _, ok in fonts) and any(ord(ch) > 127 for (t, _, _, _) in items for ch in str(t)):
        _warn_missing_unicode_font()

    try:
        pil_img = Image.fromarray(cv2.cvtColor(img, cv2.COLOR_BGR2RGB))
        draw = ImageDraw.Draw(pil_img)
        for (text, org, _, bgr), (font, _) in zip(items, fonts):
            draw.text((int(org[0]), int(org[1])), str(text), font=font, fill=(int(bgr[2]), int(bgr[1]), int(bgr[0])))
        img[:] = cv2.cvtColor(np.array(pil_img), cv2.COLOR_RGB2BGR)
    except (OSError, ValueError, cv2.error):
        _put_text_cv2(img, items)


@lru_cache(maxsize=4096)
def measure_text(text: str, font_size: int = 14) -> Tuple[int, int]:
    """Pixel (width, height) of `text` in the overlay font."""
    font, _ = _font(int(font_size))
    left, top, right, bottom = font.getbbox(str(text))
    return int(right - left), int(bottom - top)


def draw_face_label(image: np.ndarray, bbox: Sequence[int], text: str, known: bool) -> None:
    """Box plus a filled label tab above it."""
    x1, y1, x2, y2 = [int(v) for v in bbox]
    color = KNOWN_COLOR if known else UNKNOWN_COLOR
    cv2.rectangle(image, (x1, y1), (x2, y2), color, 2)

    font_size = 18
    text_w, text_h = measure_text(str(text), font_size)
    pad_x, pad_y = 6, 4
    bg_y1 = max(0, y1 - text_h - pad_y * 2)
    cv2.rectangle(image, (x1, bg_y1), (x1 + text_w + pad_x * 2, y1), (0, 0, 0), -1)
    draw_texts(image, [(str(text), (x1 + pad_x, bg_y1 + pad_y), font_size, (255, 255, 255))])


def draw_status(image: np.ndarray, text: str) -> None:
    draw_texts(image, [(str(text), (10, 10), 18, (255, 255, 255))])
