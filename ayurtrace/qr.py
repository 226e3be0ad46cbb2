"""
AyurTrace - QR Codes
JSON payloads for batch/product labels, PNG generation and image scanning
"""

import base64
import io
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import qrcode
from PIL import Image, UnidentifiedImageError

QR_TYPES = ['batch', 'product', 'collection', 'processing', 'testing']

PRIMARY_COLOR = '#2D4A3E'


class QRPayloadError(ValueError):
    """QR data that cannot be turned into a payload"""


@dataclass
class QRPayload:
    id: str
    type: str
    data: Any
    timestamp: str
    hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            'id': self.id,
            'type': self.type,
            'data': self.data,
            'timestamp': self.timestamp,
        }
        if self.hash is not None:
            payload['hash'] = self.hash
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


def decode_payload(text: str) -> QRPayload:
    """Parse scanned QR text back into a payload"""
    try:
        raw = json.loads(text)
    except (TypeError, ValueError):
        raise QRPayloadError('Invalid QR code format')

    if not isinstance(raw, dict) or any(k not in raw for k in ('id', 'type', 'data', 'timestamp')):
        raise QRPayloadError('Invalid QR code format')
    if raw['type'] not in QR_TYPES:
        raise QRPayloadError(f"Unknown QR payload type: {raw['type']}")

    return QRPayload(
        id=str(raw['id']),
        type=raw['type'],
        data=raw['data'],
        timestamp=raw['timestamp'],
        hash=raw.get('hash'),
    )


# ============================================================
# IMAGE GENERATION
# ============================================================

def generate_qr_code(payload: QRPayload, box_size: int = 10, border: int = 2,
                     fill_color: str = PRIMARY_COLOR, back_color: str = '#FFFFFF') -> str:
    """Generate QR code as base64 PNG string"""
    qr = qrcode.QRCode(box_size=box_size, border=border)
    qr.add_data(payload.to_json())
    qr.make(fit=True)

    img = qr.make_image(fill_color=fill_color, back_color=back_color)

    buffer = io.BytesIO()
    img.save(buffer, format='PNG')
    buffer.seek(0)

    return base64.b64encode(buffer.getvalue()).decode()


def as_data_url(qr_base64: str) -> str:
    return f"data:image/png;base64,{qr_base64}"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_batch_qr(batch_id: str, product_name: str, manufacturing_date: str,
                      provenance_hash: str, expiry_date: str = None) -> str:
    data = {
        'batchId': batch_id,
        'productName': product_name,
        'manufacturingDate': manufacturing_date,
        'expiryDate': expiry_date,
        'provenanceHash': provenance_hash,
    }
    return generate_qr_code(QRPayload(id=batch_id, type='batch', data=data, timestamp=_now()))


def generate_product_qr(product_id: str, name: str, product_type: str, batch_ids: List[str],
                        packaging_date: str, verification_url: str = None) -> str:
    data = {
        'productId': product_id,
        'name': name,
        'type': product_type,
        'batchIds': batch_ids,
        'packagingDate': packaging_date,
        'verificationUrl': verification_url,
    }
    return generate_qr_code(QRPayload(id=product_id, type='product', data=data, timestamp=_now()))


# ============================================================
# SCANNING
# ============================================================

def scan_from_image(image_bytes: bytes) -> QRPayload:
    """Decode the first QR code found in an image"""
    try:
        img = Image.open(io.BytesIO(image_bytes)).convert('L')
    except (UnidentifiedImageError, OSError):
        raise QRPayloadError('Invalid image file')

    # pyzbar needs the zbar shared library, only load it when scanning
    from pyzbar.pyzbar import decode as pyzbar_decode

    decoded = pyzbar_decode(img)

    if not decoded:
        raise QRPayloadError('No QR code found in image')

    try:
        text = decoded[0].data.decode('utf-8')
    except UnicodeDecodeError:
        raise QRPayloadError('Invalid QR code format')

    return decode_payload(text)
