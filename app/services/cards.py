"""
Card helpers used by the mock gateway.
Basic number/expiry/CVV checks, brand detection and masking.
"""

import re
from datetime import date
from typing import Optional

_NON_DIGITS = re.compile(r"[\s-]")


def clean_card_number(card_number: str) -> str:
    return _NON_DIGITS.sub("", card_number or "")


def luhn_valid(number: str) -> bool:
    """Luhn checksum over a digits-only string."""
    total = 0
    for index, char in enumerate(reversed(number)):
        digit = int(char)
        if index % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


def validate_card(
    card_number: str,
    expiry: str,
    cvv: str,
    today: Optional[date] = None,
) -> Optional[str]:
    """
    Validate card input.

    Returns an error message, or None when the card looks usable.
    Expiry is MM/YY.
    """
    number = clean_card_number(card_number)
    if not re.fullmatch(r"\d{13,19}", number):
        return "Invalid card number"
    if not luhn_valid(number):
        return "Invalid card number (failed Luhn check)"

    if not re.fullmatch(r"\d{2}/\d{2}", expiry or ""):
        return "Invalid expiry date format (use MM/YY)"

    month, year = (int(part) for part in expiry.split("/"))
    if month < 1 or month > 12:
        return "Invalid month"

    today = today or date.today()
    current_year = today.year % 100
    if year < current_year or (year == current_year and month < today.month):
        return "Card has expired"

    if not re.fullmatch(r"\d{3,4}", cvv or ""):
        return "Invalid CVV"

    return None


def detect_card_brand(card_number: str) -> str:
    number = clean_card_number(card_number)
    if re.match(r"^4", number):
        return "visa"
    if re.match(r"^5[1-5]", number):
        return "mastercard"
    if re.match(r"^3[47]", number):
        return "amex"
    if re.match(r"^6(?:011|5)", number):
        return "discover"
    return "unknown"


def mask_card_number(card_number: str) -> str:
    return "****-****-****-" + clean_card_number(card_number)[-4:]
