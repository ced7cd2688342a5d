"""KHQR-style merchant-presented payment codes.

The payload is a flat sequence of EMV tag/length/value fields::

    00 payload format indicator      "01"
    01 point of initiation           "12" dynamic (amount present), "11" static
    29 merchant account information  nested TLV: 00 application id, 01 bank code,
                                     02 merchant id, 03 terminal id
    53 transaction currency          ISO 4217 numeric ("896" KHR, "840" USD)
    54 transaction amount            two decimals, omitted for static codes
    59 merchant name                 max 25 characters
    60 merchant city                 max 15 characters
    61 postal code
    63 CRC                           4 hex digits over everything before it,
                                     including the "6304" prefix

The payload is ASCII only; merchant text is transliterated (``ascii_text``).
Fields are emitted in ascending tag order. ``build_payload`` is pure; QR image
rendering lives in ``render_qr_data_url``.
"""
import base64
import io
import logging
import unicodedata
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

import qrcode

from storefront.errors import ValidationError

logger = logging.getLogger(__name__)

PAYLOAD_FORMAT_INDICATOR = "01"
STATIC_INITIATION = "11"
DYNAMIC_INITIATION = "12"
APPLICATION_ID = "A000000001"
MERCHANT_NAME_MAX = 25
MERCHANT_CITY_MAX = 15
CRC_PREFIX = "6304"

CURRENCY_CODES = {
    "KHR": "896",
    "USD": "840",
}

BANK_CODES = {
    "ABA": "001",
    "ACLEDA": "002",
    "WING": "003",
    "MAYBANK": "004",
    "ANZ": "005",
    "BCEL": "006",
    "CANADIA": "007",
    "CDB": "008",
    "EXIM": "009",
    "FTB": "010",
    "HONGLEONG": "011",
    "ICBCKH": "012",
    "JDB": "013",
    "KASIKORN": "014",
    "KHMB": "015",
    "KMB": "016",
    "KIENLONG": "017",
    "LBP": "018",
    "MAYBANK2U": "019",
    "MKB": "020",
    "NATIONAL": "021",
    "PACLEDA": "022",
    "PPI": "023",
    "PRASAC": "024",
    "SATHAPANA": "025",
    "SEAP": "026",
    "SHB": "027",
    "SIC": "028",
    "SIV": "029",
    "STB": "030",
    "TPBANK": "031",
    "TTB": "032",
    "VATTANAC": "033",
    "WOORI": "034",
}
DEFAULT_BANK_CODE = BANK_CODES["ABA"]


def crc16(data: str) -> str:
    """CRC-16 (poly 0xA001 reflected, init 0xFFFF) as 4 upper-case hex digits."""
    crc = 0xFFFF
    for byte in data.encode("utf-8"):
        crc ^= byte
        for _ in range(8):
            if crc & 1:
                crc = (crc >> 1) ^ 0xA001
            else:
                crc >>= 1
    return "%04X" % crc


def ascii_text(value: str, limit: int) -> str:
    """Strip accents from ``value`` and truncate it to ``limit`` characters.

    Text with nothing left after transliteration (e.g. Khmer script) is
    rejected rather than encoded as an empty field.
    """
    value = value or ""
    text = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii").strip()
    if value.strip() and not text:
        raise ValidationError(f"KHQR merchant text must be representable in ASCII: {value!r}")
    return text[:limit]


def tlv(tag: str, value: str) -> str:
    if not value.isascii():
        raise ValidationError(f"KHQR field {tag} must be ASCII")
    if len(value) > 99:
        raise ValidationError(f"KHQR field {tag} is too long ({len(value)} characters)")
    return f"{tag}{len(value):02d}{value}"


def bank_code_for(bank: str, strict: bool = False) -> str:
    """Map a bank identifier to its 3-digit code.

    Unknown banks fall back to ``DEFAULT_BANK_CODE`` unless ``strict`` is set.
    """
    key = (bank or "").strip().upper()
    if key in BANK_CODES:
        return BANK_CODES[key]
    if strict:
        raise ValidationError(f"Unknown KHQR bank: {bank!r}")
    logger.warning("Unknown KHQR bank %r, using default code %s", bank, DEFAULT_BANK_CODE)
    return DEFAULT_BANK_CODE


def currency_code_for(currency: str) -> str:
    code = (currency or "").strip().upper()
    if code in CURRENCY_CODES:
        return CURRENCY_CODES[code]
    if code in CURRENCY_CODES.values():
        return code
    raise ValidationError(f"Unsupported KHQR currency: {currency!r}")


def format_amount(amount) -> str:
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        raise ValidationError(f"Invalid amount: {amount!r}")
    if not value.is_finite() or value <= 0:
        raise ValidationError("Amount must be positive")
    return str(value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def merchant_account_info(bank_code: str, merchant_id: str, terminal_id: str) -> str:
    return "".join([
        tlv("00", APPLICATION_ID),
        tlv("01", bank_code),
        tlv("02", merchant_id),
        tlv("03", terminal_id),
    ])


def build_payload(*, order_id=None, amount=None, currency, merchant_name, city,
                  bank_code, merchant_id, terminal_id, postal_code="12000"):
    """Build the full KHQR string, checksum included.

    ``bank_code`` is the already-resolved 3-digit code (see ``bank_code_for``).
    ``order_id`` is not encoded; the gateway matches confirmations through the
    payment reference instead.
    """
    fields = {
        "00": PAYLOAD_FORMAT_INDICATOR,
        "01": DYNAMIC_INITIATION if amount is not None else STATIC_INITIATION,
        "29": merchant_account_info(bank_code, merchant_id, terminal_id),
        "53": currency_code_for(currency),
        "59": ascii_text(merchant_name, MERCHANT_NAME_MAX),
        "60": ascii_text(city, MERCHANT_CITY_MAX),
        "61": postal_code,
    }
    if amount is not None:
        fields["54"] = format_amount(amount)

    body = "".join(tlv(tag, fields[tag]) for tag in sorted(fields, key=int))
    body += CRC_PREFIX
    return body + crc16(body)


def parse_payload(payload: str) -> dict:
    """Split a payload into ``{tag: value}`` (top level only)."""
    fields = {}
    pos = 0
    while pos < len(payload):
        tag = payload[pos:pos + 2]
        try:
            length = int(payload[pos + 2:pos + 4])
        except ValueError:
            raise ValidationError(f"Malformed KHQR length at offset {pos}")
        value = payload[pos + 4:pos + 4 + length]
        if len(tag) != 2 or len(value) != length:
            raise ValidationError(f"Truncated KHQR field at offset {pos}")
        fields[tag] = value
        pos += 4 + length
    return fields


def verify_checksum(payload: str) -> bool:
    if len(payload) < 8 or payload[-8:-4] != CRC_PREFIX:
        return False
    return crc16(payload[:-4]) == payload[-4:].upper()


def render_qr_data_url(payload: str, box_size: int = 10, border: int = 2) -> str:
    """Render the payload as a PNG data URL suitable for an <img> tag."""
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    image = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"
