import base64
import io
import logging
from typing import Any, Dict

import qrcode

logger = logging.getLogger(__name__)


class VlessURLError(ValueError):
    """Raised when a generated config lacks the fields a VLESS URL needs."""


def deep_copy(value: Any) -> Any:
    """Recursively copy dicts and lists; scalars are returned as-is."""
    if isinstance(value, dict):
        return {key: deep_copy(item) for key, item in value.items()}
    if isinstance(value, list):
        return [deep_copy(item) for item in value]
    return value


def encode_base64(data: bytes) -> str:
    return base64.b64encode(data).decode()


def make_qr_png(data: str) -> bytes:
    """Render `data` as a PNG QR code (medium error correction)."""
    qr = qrcode.QRCode(error_correction=qrcode.constants.ERROR_CORRECT_M, box_size=8, border=4)
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def _require_str(container: Dict[str, Any], key: str, what: str) -> str:
    value = container.get(key)
    if not isinstance(value, str):
        raise VlessURLError(f"invalid {what} configuration")
    return value


def generate_vless_url(config: Dict[str, Any], uuid: str) -> str:
    """Build the vless:// share link from the first outbound of a generated config."""
    outbounds = config.get("outbounds")
    if not isinstance(outbounds, list) or not outbounds:
        raise VlessURLError("invalid outbounds configuration")

    outbound = outbounds[0]
    if not isinstance(outbound, dict):
        raise VlessURLError("invalid outbound configuration")

    server = _require_str(outbound, "server", "server")

    # Floats are truncated toward zero
    server_port = outbound.get("server_port")
    if isinstance(server_port, float):
        server_port = int(server_port)
    if isinstance(server_port, bool) or not isinstance(server_port, int):
        logger.warning(f"Unexpected type for server_port ({type(server_port).__name__}), using fallback 443")
        server_port = 443

    transport = outbound.get("transport")
    if not isinstance(transport, dict):
        raise VlessURLError("invalid transport configuration")
    path = _require_str(transport, "path", "path")

    headers = transport.get("headers")
    if not isinstance(headers, dict):
        raise VlessURLError("invalid headers configuration")
    host = _require_str(headers, "Host", "host")

    vless_url = f"vless://{uuid}@{server}:{server_port}?type=ws&path={path}&host={host}&security=tls&fp=chrome"
    logger.debug(f"Generated VLESS URL: {vless_url}")
    return vless_url
