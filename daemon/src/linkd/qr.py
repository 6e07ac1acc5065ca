"""QR code rendering for linking.

Renders the QR payload issued by the transport for display in a
terminal, as PNG bytes, or as a data: URL for browsers.
"""

import base64
import io

import qrcode
from qrcode.main import QRCode


class QrRenderer:
    """Render a linking QR payload.

    The payload is opaque: whatever string the transport issued is
    encoded as-is.
    """

    def __init__(self, payload: str, box_size: int = 10, border: int = 2):
        """Initialize renderer.

        Args:
            payload: QR payload string from the transport.
            box_size: Pixels per QR module in image output.
            border: Quiet zone width in modules.
        """
        if not payload:
            raise ValueError("QR payload must not be empty")
        self.payload = payload
        self.box_size = box_size
        self.border = border

    def _create_qr(self) -> QRCode:
        """Create QR code object.

        Returns:
            QRCode instance with payload data.
        """
        qr = qrcode.QRCode(
            version=None,  # Auto-size
            error_correction=qrcode.constants.ERROR_CORRECT_H,
            box_size=self.box_size,
            border=self.border,
        )
        qr.add_data(self.payload)
        qr.make(fit=True)
        return qr

    def to_terminal(self) -> str:
        """Generate ASCII art for terminal display.

        Returns:
            String with QR code using Unicode block characters.
        """
        qr = self._create_qr()

        output = io.StringIO()
        qr.print_ascii(out=output, invert=True)
        return output.getvalue()

    def to_png(self) -> bytes:
        """Render the QR code as PNG bytes."""
        qr = self._create_qr()
        img = qr.make_image(fill_color="black", back_color="white")

        buffer = io.BytesIO()
        img.save(buffer, format="PNG")
        return buffer.getvalue()

    def to_data_url(self) -> str:
        """Render the QR code as a PNG data: URL."""
        return png_data_url(self.to_png())


def png_data_url(png: bytes) -> str:
    """Wrap PNG bytes in a data: URL."""
    png_b64 = base64.b64encode(png).decode("ascii")
    return f"data:image/png;base64,{png_b64}"
