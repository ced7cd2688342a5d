import re

import pytest

from storefront import khqr
from storefront.errors import ValidationError

BASE = dict(
    order_id="order-1",
    amount="25.50",
    currency="KHR",
    merchant_name="Test Store",
    city="Phnom Penh",
    bank_code="002",
    merchant_id="MERCHANT123",
    terminal_id="TERM0001",
)


def test_crc16_known_answer():
    # CRC-16 reflected 0xA001 / init 0xFFFF reference vector
    assert khqr.crc16("123456789") == "4B37"
    assert khqr.crc16("") == "FFFF"


def test_payload_layout():
    payload = khqr.build_payload(**BASE)

    expected_body = (
        "000201"
        "010212"
        "2948" "0010A000000001" "0103002" "0211MERCHANT123" "0308TERM0001"
        "5303896"
        "540525.50"
        "5910Test Store"
        "6010Phnom Penh"
        "610512000"
        "6304"
    )
    assert payload[:-4] == expected_body
    assert payload[-4:] == khqr.crc16(expected_body)
    assert re.fullmatch(r".*6304[0-9A-F]{4}", payload)


def test_payload_is_deterministic():
    assert khqr.build_payload(**BASE) == khqr.build_payload(**BASE)


@pytest.mark.parametrize("field,value", [
    ("amount", "25.51"),
    ("merchant_id", "MERCHANT124"),
    ("bank_code", "001"),
    ("currency", "USD"),
])
def test_any_input_change_changes_payload(field, value):
    assert khqr.build_payload(**{**BASE, field: value}) != khqr.build_payload(**BASE)


def test_tags_are_in_ascending_order_and_checksum_verifies():
    payload = khqr.build_payload(**BASE)
    fields = khqr.parse_payload(payload)

    assert list(fields) == sorted(fields, key=int)
    assert fields["53"] == "896"
    assert fields["54"] == "25.50"
    assert khqr.parse_payload(fields["29"]) == {
        "00": khqr.APPLICATION_ID,
        "01": "002",
        "02": "MERCHANT123",
        "03": "TERM0001",
    }
    assert khqr.verify_checksum(payload)
    assert not khqr.verify_checksum(payload[:-1] + ("0" if payload[-1] != "0" else "1"))


def test_name_and_city_are_truncated():
    payload = khqr.build_payload(**{
        **BASE,
        "merchant_name": "A Very Long Merchant Name Indeed",
        "city": "Siem Reap Province Center",
    })
    fields = khqr.parse_payload(payload)

    assert fields["59"] == "A Very Long Merchant Name"
    assert len(fields["59"]) == 25
    assert fields["60"] == "Siem Reap Provi"


def test_static_code_omits_amount():
    payload = khqr.build_payload(**{**BASE, "amount": None})
    fields = khqr.parse_payload(payload)

    assert "54" not in fields
    assert fields["01"] == khqr.STATIC_INITIATION


@pytest.mark.parametrize("amount", ["0", "-5", "abc"])
def test_rejects_non_positive_amount(amount):
    with pytest.raises(ValidationError):
        khqr.build_payload(**{**BASE, "amount": amount})


def test_rejects_unsupported_currency():
    with pytest.raises(ValidationError):
        khqr.build_payload(**{**BASE, "currency": "EUR"})


def test_numeric_currency_codes_are_accepted():
    assert khqr.currency_code_for("840") == "840"
    assert khqr.currency_code_for("usd") == "840"


def test_unknown_bank_falls_back_to_default():
    assert khqr.bank_code_for("WING") == "003"
    assert khqr.bank_code_for("NOPE") == khqr.DEFAULT_BANK_CODE


def test_unknown_bank_rejected_in_strict_mode():
    with pytest.raises(ValidationError):
        khqr.bank_code_for("NOPE", strict=True)


def test_render_qr_data_url():
    image = khqr.render_qr_data_url(khqr.build_payload(**BASE))
    assert image.startswith("data:image/png;base64,")
    assert len(image) > 100


def test_accented_merchant_text_is_transliterated():
    payload = khqr.build_payload(**{**BASE, "merchant_name": "Café Réal", "city": "Phnôm Pénh"})
    fields = khqr.parse_payload(payload)

    assert payload.isascii()
    assert fields["59"] == "Cafe Real"
    assert fields["60"] == "Phnom Penh"
    assert khqr.verify_checksum(payload)


def test_merchant_text_without_ascii_form_is_rejected():
    with pytest.raises(ValidationError):
        khqr.build_payload(**{**BASE, "merchant_name": "ហាងតេស្ត"})


def test_non_ascii_field_value_is_rejected():
    with pytest.raises(ValidationError):
        khqr.tlv("02", "MERCHANT\u00e91")
