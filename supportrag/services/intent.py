"""Identifier extraction and intent classification for retrieval queries."""

import enum
import re
from dataclasses import dataclass, field


class Intent(str, enum.Enum):
    IDENTIFIER_LOOKUP = "identifier_lookup"
    ACCOUNT_HISTORY = "account_history"
    POLICY_SOP = "policy_sop"
    LOGISTICS_SHIPPING = "logistics_shipping"
    PAYMENTS_TERMS = "payments_terms"
    TROUBLESHOOTING = "troubleshooting"


# Intents that benefit from exact record lookups
STRUCTURED_INTENTS = frozenset(
    {Intent.IDENTIFIER_LOOKUP, Intent.PAYMENTS_TERMS, Intent.LOGISTICS_SHIPPING}
)


@dataclass
class Identifiers:
    """Business identifiers found in a piece of text."""

    order_numbers: list[str] = field(default_factory=list)
    invoice_numbers: list[str] = field(default_factory=list)
    tracking_numbers: list[str] = field(default_factory=list)
    skus: list[str] = field(default_factory=list)
    po_numbers: list[str] = field(default_factory=list)

    @property
    def has_any(self) -> bool:
        return bool(
            self.order_numbers
            or self.invoice_numbers
            or self.tracking_numbers
            or self.skus
            or self.po_numbers
        )

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "order_numbers": list(self.order_numbers),
            "invoice_numbers": list(self.invoice_numbers),
            "tracking_numbers": list(self.tracking_numbers),
            "skus": list(self.skus),
            "po_numbers": list(self.po_numbers),
        }


# "order #123", "order no. 123", "order number: 123", "order-123"
ID_SEPARATOR = r"\s*(?:#|no\.?|number)?\s*[-:]?\s*"

ORDER_PATTERN = re.compile(rf"\b(?:order|ord){ID_SEPARATOR}([A-Z0-9][A-Z0-9-]{{3,}})\b", re.I)
INVOICE_PATTERN = re.compile(rf"\b(?:invoice|inv){ID_SEPARATOR}([A-Z0-9][A-Z0-9-]{{3,}})\b", re.I)
PO_PATTERN = re.compile(rf"\b(?:p\.?o\.?|po){ID_SEPARATOR}([A-Z0-9][A-Z0-9-]{{3,}})\b", re.I)
TRACKING_PREFIX_PATTERN = re.compile(
    rf"\b(?:tracking|track|trk){ID_SEPARATOR}([A-Z0-9]{{8,}})\b", re.I
)
# Carrier tokens are upper case and carry at least one digit
TRACKING_TOKEN_PATTERN = re.compile(
    r"\b(1Z[0-9A-Z]{8,}|9[0-9]{15,21}|[0-9]{12,22}|[A-Z0-9]{12,})\b"
)
SKU_PATTERN = re.compile(r"\bSKU\s*[:#-]?\s*([A-Z0-9-]{3,})\b", re.I)

# A query that is nothing but one identifier-shaped token: "#A1001", "A1001", "#10045"
BARE_IDENTIFIER_PATTERN = re.compile(r"^\s*#?([A-Z0-9][A-Z0-9-]{3,})\s*$", re.I)

TRACKING_KEYWORDS = re.compile(r"\b(tracking|track|shipment|carrier|delivery|waybill)\b", re.I)

HAS_DIGIT = re.compile(r"\d")
HAS_LETTER = re.compile(r"[A-Z]", re.I)

# Ordered: first match wins
INTENT_RULES: list[tuple[Intent, list[re.Pattern]]] = [
    (
        Intent.POLICY_SOP,
        [re.compile(r"\b(policy|sop|procedure|process|guideline)\b")],
    ),
    (
        Intent.LOGISTICS_SHIPPING,
        [
            re.compile(r"\b(ship|shipping|shipment|tracking|carrier|delivery|order status)\b"),
            re.compile(r"where(?:'s| is) my order"),
        ],
    ),
    (
        Intent.PAYMENTS_TERMS,
        [
            re.compile(
                r"\b(invoice|payment|balance|terms|ar|credit|past due|estimate|quote|quotation)\b"
            )
        ],
    ),
    (
        Intent.ACCOUNT_HISTORY,
        [re.compile(r"\b(history|previous|past orders|account|customer)\b")],
    ),
    (
        Intent.TROUBLESHOOTING,
        [re.compile(r"\b(error|issue|problem|not working|broken|troubleshoot)\b")],
    ),
]


def _dedupe(values: list[str]) -> list[str]:
    return list(dict.fromkeys(values))


def _is_bare_identifier(token: str, hashed: bool) -> bool:
    # Without a "#" the token must look like a code, not a plain word
    if hashed:
        return True
    return bool(HAS_DIGIT.search(token))


def _coded_matches(pattern: re.Pattern, text: str) -> list[str]:
    # "order status" or "tracking information" name a topic, not a record
    return [m.group(1) for m in pattern.finditer(text) if HAS_DIGIT.search(m.group(1))]


def extract_identifiers(text: str) -> Identifiers:
    """Extract order, invoice, PO, tracking and SKU identifiers from text."""
    text = text or ""
    order_numbers: list[str] = []
    invoice_numbers: list[str] = []
    tracking_numbers: list[str] = []
    skus: list[str] = []
    po_numbers: list[str] = []

    bare = BARE_IDENTIFIER_PATTERN.match(text)
    if bare and _is_bare_identifier(bare.group(1), text.strip().startswith("#")):
        order_numbers.append(bare.group(1))

    order_numbers.extend(_coded_matches(ORDER_PATTERN, text))
    invoice_numbers.extend(_coded_matches(INVOICE_PATTERN, text))
    po_numbers.extend(_coded_matches(PO_PATTERN, text))
    skus.extend(m.group(1) for m in SKU_PATTERN.finditer(text))
    tracking_numbers.extend(_coded_matches(TRACKING_PREFIX_PATTERN, text))

    has_tracking_keyword = bool(TRACKING_KEYWORDS.search(text))
    for match in TRACKING_TOKEN_PATTERN.finditer(text):
        token = match.group(1)
        if token.upper().startswith("1Z"):
            tracking_numbers.append(token)
        elif HAS_LETTER.search(token) and HAS_DIGIT.search(token):
            tracking_numbers.append(token)
        elif has_tracking_keyword:
            tracking_numbers.append(token)

    return Identifiers(
        order_numbers=_dedupe(order_numbers),
        invoice_numbers=_dedupe(invoice_numbers),
        tracking_numbers=_dedupe(tracking_numbers),
        skus=_dedupe(skus),
        po_numbers=_dedupe(po_numbers),
    )


def classify_intent(text: str, identifiers: Identifiers | None = None) -> Intent:
    """
    Classify query intent.

    Any identifier forces IDENTIFIER_LOOKUP; otherwise the first matching
    keyword rule wins, with ACCOUNT_HISTORY as the fallback.
    """
    if identifiers is None:
        identifiers = extract_identifiers(text)
    if identifiers.has_any:
        return Intent.IDENTIFIER_LOOKUP

    lowered = (text or "").lower()
    for intent, patterns in INTENT_RULES:
        if any(p.search(lowered) for p in patterns):
            return intent

    return Intent.ACCOUNT_HISTORY
