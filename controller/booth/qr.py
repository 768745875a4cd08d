"""Render pairing links as scannable QR codes."""
from __future__ import annotations

import io

import qrcode
import qrcode.image.svg
from qrcode.constants import ERROR_CORRECT_M


def render_pairing_qr(url: str, *, box_size: int = 10, border: int = 2) -> str:
    """Return the pairing URL as a standalone SVG document."""
    if not url:
        raise ValueError("pairing url must not be empty")
    qr = qrcode.QRCode(version=None, error_correction=ERROR_CORRECT_M, box_size=box_size, border=border)
    qr.add_data(url)
    qr.make(fit=True)
    img = qr.make_image(image_factory=qrcode.image.svg.SvgPathImage)
    buffer = io.BytesIO()
    img.save(buffer)
    return buffer.getvalue().decode("utf-8")


__all__ = ["render_pairing_qr"]
