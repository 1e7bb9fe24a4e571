"""
Regex parsers that turn stored raw emails into transactions and statements.

Works WITHOUT any LLM/API - pure pattern matching over the email text.
A sync or reprocess job runs each stored email through the first parser
whose `can_parse` accepts it and counts what comes out.
"""

import re
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, List

from app.services.text_cleaner import email_text, normalize_whitespace


@dataclass
class ParsedTransaction:
    """One money movement found in an alert email."""
    user_id: str
    source_email_id: int
    merchant: str
    amount: float
    currency: str
    transaction_type: str  # debit | credit
    transaction_mode: str  # card | upi | netbanking | other
    transaction_date: Optional[str] = None

    @property
    def fingerprint(self) -> str:
        """Stable hash used to dedupe the same transaction across reprocess runs."""
        payload = json.dumps({
            "user_id": self.user_id,
            "source_email_id": self.source_email_id,
            "merchant": normalize_merchant(self.merchant).lower(),
            "amount": round(self.amount, 2),
            "currency": self.currency.upper(),
            "transaction_date": self.transaction_date,
            "transaction_type": self.transaction_type,
            "transaction_mode": self.transaction_mode,
        }, sort_keys=True)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class ParsedStatement:
    """A card/account statement summary."""
    user_id: str
    source_email_id: int
    issuer: str
    total_due: float
    currency: str
    period_start: Optional[str] = None
    period_end: Optional[str] = None
    due_date: Optional[str] = None


# ============ HELPERS ============

CURRENCY_SYMBOLS = {
    "₹": "INR", "rs": "INR", "rs.": "INR", "inr": "INR",
    "$": "USD", "usd": "USD",
    "€": "EUR", "eur": "EUR",
    "£": "GBP", "gbp": "GBP",
}

AMOUNT_RE = r'(?<![A-Za-z])(₹|rs\.?|inr|\$|usd|€|eur|£|gbp)\s*([\d,]+(?:\.\d{1,2})?)'


def normalize_merchant(value: str) -> str:
    return re.sub(r'[.,;:]+$', '', normalize_whitespace(value))


def parse_amount(value: str) -> Optional[float]:
    try:
        return float(value.replace(",", ""))
    except (AttributeError, ValueError):
        return None


def currency_code(symbol: str) -> str:
    return CURRENCY_SYMBOLS.get(symbol.lower().strip(), "INR")


# ============ PARSERS ============

class EmailParser:
    """Base parser; subclasses decide which emails they understand."""

    def can_parse(self, email) -> bool:
        raise NotImplementedError

    def parse_transactions(self, email) -> List[ParsedTransaction]:
        return []

    def parse_statement(self, email) -> Optional[ParsedStatement]:
        return None


class BankAlertParser(EmailParser):
    """
    Generic parser for bank/card/UPI alert emails and card statements.

    Common patterns:
    - "Rs.1,250.00 has been debited from your account ... to VPA swiggy@icici on 12-03-24"
    - "INR 499.00 spent on your credit card ending 1234 at AMAZON on 2024-03-12"
    - "Total Amount Due: Rs. 12,345.67 ... Statement Period: 01 Feb 2024 to 29 Feb 2024"
    """

    SENDER_HINTS = ["alerts@", "bank", "card", "upi", "statement", "noreply", "no-reply"]
    SUBJECT_HINTS = [
        "transaction", "debited", "credited", "spent", "payment", "alert",
        "statement", "purchase", "receipt", "upi", "card",
    ]

    DEBIT_WORDS = r'(?:debited|spent|paid|charged|withdrawn|purchase)'
    CREDIT_WORDS = r'(?:credited|received|refunded|deposited)'

    MERCHANT_PATTERNS = [
        r'merchant\s*(?:name)?\s*[:\-]\s*([A-Za-z0-9&._\'\- ]{2,60})',
        r'\bvpa\s+([A-Za-z0-9._\-]+@[A-Za-z0-9]+)',
        r'\b(?:at|to|towards)\s+([A-Za-z0-9&._\'@\- ]{2,60}?)(?=\s+(?:on|via|using|with|ref|for|dated)\b|[.,;\n]|$)',
    ]

    DATE_PATTERNS = [
        r'\bon\s+(\d{1,2}[-/ ](?:\d{1,2}|[A-Za-z]{3,9})[-/ ]\d{2,4})',
        r'\bon\s+(\d{4}-\d{2}-\d{2})',
        r'\bdate\s*[:\-]\s*(\d{1,2}[-/ ](?:\d{1,2}|[A-Za-z]{3,9})[-/ ]\d{2,4})',
    ]

    def can_parse(self, email) -> bool:
        sender = (email.sender or "").lower()
        subject = (email.subject or "").lower()
        return (
            any(hint in subject for hint in self.SUBJECT_HINTS)
            or any(hint in sender for hint in self.SENDER_HINTS)
        )

    def parse_transactions(self, email) -> List[ParsedTransaction]:
        text = email_text(email.body_text, email.body_html)
        if not text:
            return []

        flat = normalize_whitespace(text)
        lowered = flat.lower()

        is_debit = re.search(self.DEBIT_WORDS, lowered) is not None
        is_credit = re.search(self.CREDIT_WORDS, lowered) is not None
        if not (is_debit or is_credit):
            return []

        # A statement summary is not a transaction
        if "statement" in (email.subject or "").lower() and re.search(r'total\s*(?:amount\s*)?due', lowered):
            return []

        amount_match = re.search(AMOUNT_RE, flat, re.IGNORECASE)
        if not amount_match:
            return []
        amount = parse_amount(amount_match.group(2))
        if not amount:
            return []

        merchant = self._extract_merchant(flat)
        if not merchant:
            return []

        transaction_date = self._extract_date(flat)
        if not transaction_date and email.received_at:
            transaction_date = email.received_at.date().isoformat() if isinstance(email.received_at, datetime) else str(email.received_at)

        return [
            ParsedTransaction(
                user_id=email.user_id,
                source_email_id=email.id,
                merchant=merchant,
                amount=amount,
                currency=currency_code(amount_match.group(1)),
                transaction_type="debit" if is_debit else "credit",
                transaction_mode=self._extract_mode(lowered),
                transaction_date=transaction_date,
            )
        ]

    def parse_statement(self, email) -> Optional[ParsedStatement]:
        subject = (email.subject or "").lower()
        if "statement" not in subject:
            return None

        flat = normalize_whitespace(email_text(email.body_text, email.body_html))

        due_match = re.search(
            r'total\s*(?:amount\s*)?due\s*[:\-]?\s*' + AMOUNT_RE,
            flat,
            re.IGNORECASE
        )
        if not due_match:
            return None
        total_due = parse_amount(due_match.group(2))
        if total_due is None:
            return None

        period = re.search(
            r'statement\s*period\s*[:\-]?\s*(.+?)\s+to\s+(.+?)(?=\s+(?:total|minimum|payment|due)\b|[.,;]|$)',
            flat,
            re.IGNORECASE
        )
        due_date = re.search(
            r'(?:payment\s*)?due\s*date\s*[:\-]?\s*(\d{1,2}[-/ ](?:\d{1,2}|[A-Za-z]{3,9})[-/ ]\d{2,4})',
            flat,
            re.IGNORECASE
        )

        return ParsedStatement(
            user_id=email.user_id,
            source_email_id=email.id,
            issuer=self._issuer(email.sender or ""),
            total_due=total_due,
            currency=currency_code(due_match.group(1)),
            period_start=period.group(1).strip() if period else None,
            period_end=period.group(2).strip() if period else None,
            due_date=due_date.group(1).strip() if due_date else None,
        )

    def _extract_merchant(self, text: str) -> Optional[str]:
        for pattern in self.MERCHANT_PATTERNS:
            for match in re.finditer(pattern, text, re.IGNORECASE):
                merchant = normalize_merchant(match.group(1))
                # "to your account" / "at your card" are not merchants
                if merchant and not merchant.lower().startswith(("your ", "you ", "the account")):
                    return merchant
        return None

    def _extract_date(self, text: str) -> Optional[str]:
        for pattern in self.DATE_PATTERNS:
            match = re.search(pattern, text, re.IGNORECASE)
            if match:
                return match.group(1).strip()
        return None

    @staticmethod
    def _extract_mode(lowered: str) -> str:
        if "upi" in lowered or "vpa" in lowered:
            return "upi"
        if "card" in lowered:
            return "card"
        if "neft" in lowered or "imps" in lowered or "net banking" in lowered:
            return "netbanking"
        return "other"

    @staticmethod
    def _issuer(sender: str) -> str:
        """Issuer name from the sender domain, e.g. alerts@hdfcbank.net -> HDFCBANK."""
        match = re.search(r'@([A-Za-z0-9\-]+)\.', sender)
        return match.group(1).upper() if match else "UNKNOWN"


DEFAULT_PARSERS: List[EmailParser] = [BankAlertParser()]


def find_parser(parsers: List[EmailParser], email) -> Optional[EmailParser]:
    for parser in parsers:
        if parser.can_parse(email):
            return parser
    return None
