"""
Pattern matching over free-form customer text.

Identifier extraction (order numbers, email addresses) for verification and
PII scrubbing for the learning transcript.
"""

import re
from typing import List, Optional

from pydantic import BaseModel

from config.settings import settings

EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
PHONE_PATTERN = re.compile(
    r"(?<!\d)(?:\+?1[-.\s]?)?(?:\(?\d{3}\)?[-.\s]?)?\d{3}[-.\s]?\d{4}(?!\d)"
)
CARD_PATTERN = re.compile(r"(?<!\d)\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}(?!\d)")
ORDER_TOKEN_PATTERN = re.compile(r"#?\b(?:ORDER|ORD)?[-#]?\d{4,}", re.IGNORECASE)
ADDRESS_PATTERN = re.compile(
    r"\b\d+\s+(?:[A-Za-z0-9.]+\s+){0,4}"
    r"(?:Street|St|Avenue|Ave|Road|Rd|Boulevard|Blvd|Drive|Dr|Lane|Ln|Way|Court|Ct)\b\.?",
    re.IGNORECASE
)

# Applied in order; cards first so the phone pattern cannot split them
PII_REPLACEMENTS = [
    (CARD_PATTERN, "[CARD]"),
    (EMAIL_PATTERN, "[EMAIL]"),
    (PHONE_PATTERN, "[PHONE]"),
    (ADDRESS_PATTERN, "[ADDRESS]"),
    (ORDER_TOKEN_PATTERN, "[ORDER_NUMBER]"),
]

# Patterns that block auto-approval if they survive sanitization
PII_DETECTORS = [EMAIL_PATTERN, PHONE_PATTERN, CARD_PATTERN]


class ExtractedIdentifiers(BaseModel):
    order_number: Optional[str] = None
    email: Optional[str] = None


class IdentifierExtractor:
    """Pulls an order number and an email address out of a message"""

    def __init__(self, order_prefixes: Optional[List[str]] = None):
        prefixes = order_prefixes if order_prefixes is not None else settings.ORDER_NUMBER_PREFIXES
        self.order_patterns = [
            # "#1234" or "# 1234"
            re.compile(r"#\s?(\d{4,})"),
            # "order 1234", "order #1234", "order number 1234", "order no. 1234"
            re.compile(r"order\s*(?:number|#|no\.?)?\s*(\d{4,})", re.IGNORECASE),
        ]
        if prefixes:
            alternation = "|".join(re.escape(p) for p in prefixes)
            self.order_patterns.append(
                re.compile(rf"\b(?:{alternation})[-\s]?(\d{{4,}})", re.IGNORECASE)
            )

    def extract_order_number(self, text: str) -> Optional[str]:
        if not text:
            return None
        for pattern in self.order_patterns:
            match = pattern.search(text)
            if match:
                return match.group(1)
        return None

    def extract_email(self, text: str) -> Optional[str]:
        if not text:
            return None
        match = EMAIL_PATTERN.search(text)
        return match.group(0).lower() if match else None

    def extract(self, text: str) -> ExtractedIdentifiers:
        return ExtractedIdentifiers(
            order_number=self.extract_order_number(text),
            email=self.extract_email(text)
        )


def sanitize_pii(text: str) -> str:
    """Replace emails, phones, cards, addresses and order numbers with placeholders"""
    sanitized = text or ""
    for pattern, placeholder in PII_REPLACEMENTS:
        sanitized = pattern.sub(placeholder, sanitized)
    return sanitized


def contains_pii(text: str) -> bool:
    return any(pattern.search(text or "") for pattern in PII_DETECTORS)


# Global extractor instance
identifier_extractor = IdentifierExtractor()
