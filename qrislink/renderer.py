"""QR image renderer for dynamic QRIS payloads."""
from __future__ import annotations

import base64
import io
from typing import Any

import qrcode
from PIL import Image, ImageDraw, ImageFont


def generate_qr_image(data: str, title: str = "qrislink", caption: str | None = None) -> Image.Image:
    """Generate QR image framed with a title label and an optional caption line."""

    qr = qrcode.QRCode(version=None, error_correction=qrcode.constants.ERROR_CORRECT_M, box_size=10, border=4)
    qr.add_data(data)
    qr.make(fit=True)

    qr_img = qr.make_image(fill_color="black", back_color="white").convert("RGBA")
    width, height = qr_img.size

    lines = [title.upper()] + ([caption] if caption else [])
    line_height = 20
    label_height = 20 + line_height * len(lines)
    margin = 40
    canvas_width = width + margin * 2
    canvas_height = height + margin * 2 + label_height

    canvas = Image.new("RGBA", (canvas_width, canvas_height), color="#F5F7FA")
    canvas.paste(qr_img, (margin, margin))

    draw = ImageDraw.Draw(canvas)
    font = ImageFont.load_default()
    draw.rectangle(
        [(margin // 2, margin + height), (canvas_width - margin // 2, margin + height + label_height)],
        fill="#FFFFFF",
    )
    text_y = margin + height + 10
    for line in lines:
        left, top, right, bottom = draw.textbbox((0, 0), line, font=font)
        text_x = (canvas_width - (right - left)) // 2
        draw.text((text_x, text_y), line, fill="#1F2937", font=font)
        text_y += line_height

    return canvas


def qr_image_to_png_bytes(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def render_qr_payload(payload: str, title: str = "qrislink", caption: str | None = None) -> dict[str, Any]:
    """Render payload into PNG bytes and base64 string."""

    image = generate_qr_image(payload, title=title, caption=caption)
    png_bytes = qr_image_to_png_bytes(image)
    return {
        "png_bytes": png_bytes,
        "png_base64": base64.b64encode(png_bytes).decode("ascii"),
    }
