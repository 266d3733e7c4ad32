import pytest

from support_inbox.services.text_patterns import (
    IdentifierExtractor, contains_pii, sanitize_pii
)


@pytest.fixture
def extractor():
    return IdentifierExtractor(order_prefixes=["ORD"])


@pytest.mark.parametrize("text,expected", [
    ("Hi, my order #12345 hasn't arrived yet", "12345"),
    ("Order number 48213 is late", "48213"),
    ("order no. 77812 please", "77812"),
    ("Reference ORD-10482 from last week", "10482"),
    ("I called 3 times about my package", None),
    ("", None),
])
def test_extract_order_number(extractor, text, expected):
    assert extractor.extract_order_number(text) == expected


def test_extract_lowercases_email(extractor):
    identifiers = extractor.extract("Please reply to Jane.Doe@Customer.com about #55555")
    assert identifiers.email == "jane.doe@customer.com"
    assert identifiers.order_number == "55555"


def test_sanitize_masks_card_before_phone():
    sanitized = sanitize_pii("My card 4111 1111 1111 1111 was charged twice")
    assert "[CARD]" in sanitized
    assert "[PHONE]" not in sanitized
    assert "4111" not in sanitized


def test_sanitize_masks_contact_details():
    sanitized = sanitize_pii(
        "Email jane@customer.com or call 555-123-4567. "
        "Ship to 123 Main Street about order #48213."
    )
    assert "[EMAIL]" in sanitized
    assert "[PHONE]" in sanitized
    assert "[ADDRESS]" in sanitized
    assert "[ORDER_NUMBER]" in sanitized
    assert "jane@customer.com" not in sanitized
    assert "48213" not in sanitized


def test_contains_pii():
    assert contains_pii("Write to help@vendor.com for a label")
    assert contains_pii("Call us at (555) 123-4567")
    assert not contains_pii("Restart the device and hold the reset button for 10 seconds.")
