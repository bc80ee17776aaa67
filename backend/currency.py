"""
Currency display helpers.

Amounts are rounded half-to-even at the currency's minor unit only here, at
display time. Locale decides separators and symbol placement; when no locale
is known the fixed fallback from config is used.
"""

from decimal import ROUND_HALF_EVEN, Decimal
from typing import Any, Dict, Optional

from calculations import to_decimal
from config import DISPLAY_LOCALE, FALLBACK_LOCALE

CURRENCY_SYMBOLS: Dict[str, str] = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "INR": "₹",
    "JPY": "¥",
    "AUD": "A$",
    "CAD": "CA$",
    "SGD": "S$",
    "KRW": "₩",
}

# ISO 4217 minor units for every active code that does not use 2.
MINOR_UNITS: Dict[str, int] = {
    "BIF": 0,
    "CLP": 0,
    "DJF": 0,
    "GNF": 0,
    "ISK": 0,
    "JPY": 0,
    "KMF": 0,
    "KRW": 0,
    "PYG": 0,
    "RWF": 0,
    "UGX": 0,
    "UYI": 0,
    "VND": 0,
    "VUV": 0,
    "XAF": 0,
    "XOF": 0,
    "XPF": 0,
    "BHD": 3,
    "IQD": 3,
    "JOD": 3,
    "KWD": 3,
    "LYD": 3,
    "OMR": 3,
    "TND": 3,
    "CLF": 4,
    "UYW": 4,
}
DEFAULT_MINOR_UNITS = 2

NBSP = "\u00a0"

LOCALE_FORMATS: Dict[str, Dict[str, Any]] = {
    "en-US": {"group": ",", "decimal": ".", "symbol_first": True, "indian": False},
    "en-GB": {"group": ",", "decimal": ".", "symbol_first": True, "indian": False},
    "en-IN": {"group": ",", "decimal": ".", "symbol_first": True, "indian": True},
    "ja-JP": {"group": ",", "decimal": ".", "symbol_first": True, "indian": False},
    "de-DE": {"group": ".", "decimal": ",", "symbol_first": False, "indian": False},
    "es-ES": {"group": ".", "decimal": ",", "symbol_first": False, "indian": False},
    "it-IT": {"group": ".", "decimal": ",", "symbol_first": False, "indian": False},
    "fr-FR": {"group": "\u202f", "decimal": ",", "symbol_first": False, "indian": False},
}

LANGUAGE_LOCALES = {
    "en": "en-US",
    "hi": "en-IN",
    "ja": "ja-JP",
    "de": "de-DE",
    "es": "es-ES",
    "it": "it-IT",
    "fr": "fr-FR",
}


def normalize_locale(raw: Optional[str]) -> Optional[str]:
    # Accepts POSIX ("en_US.UTF-8") and Accept-Language ("en-GB,en;q=0.9") forms.
    if not raw:
        return None
    tag = raw.split(",")[0].split(";")[0].split(".")[0].strip().replace("_", "-")
    if not tag or tag in {"C", "POSIX", "*"}:
        return None
    parts = tag.split("-")
    language = parts[0].lower()
    if len(parts) > 1 and parts[1]:
        return f"{language}-{parts[1].upper()}"
    return language


def resolve_locale(locale: Optional[str] = None) -> str:
    for candidate in (normalize_locale(locale), normalize_locale(DISPLAY_LOCALE)):
        if not candidate:
            continue
        if candidate in LOCALE_FORMATS:
            return candidate
        language = candidate.split("-")[0]
        if language in LANGUAGE_LOCALES:
            return LANGUAGE_LOCALES[language]
    return FALLBACK_LOCALE


def default_currency_for_locale(locale: str) -> str:
    if locale == "en-IN" or locale.startswith("hi"):
        return "INR"
    if locale == "en-GB":
        return "GBP"
    if locale == "ja-JP":
        return "JPY"
    region = locale.split("-")[-1]
    if region in {"DE", "FR", "IT", "ES"}:
        return "EUR"
    return "USD"


def currency_precision(currency_code: str) -> int:
    return MINOR_UNITS.get((currency_code or "").upper(), DEFAULT_MINOR_UNITS)


def round_for_display(amount: Any, currency_code: str) -> Decimal:
    quantum = Decimal(10) ** -currency_precision(currency_code)
    return to_decimal(amount).quantize(quantum, rounding=ROUND_HALF_EVEN)


def _group_digits(digits: str, separator: str, indian: bool) -> str:
    if len(digits) <= 3:
        return digits
    head, tail = digits[:-3], digits[-3:]
    size = 2 if indian else 3
    groups = []
    while len(head) > size:
        groups.insert(0, head[-size:])
        head = head[:-size]
    if head:
        groups.insert(0, head)
    return separator.join(groups + [tail])


def format_currency(amount: Any, currency_code: Optional[str] = None, locale: Optional[str] = None) -> str:
    resolved = resolve_locale(locale)
    code = (currency_code or default_currency_for_locale(resolved)).upper()
    fmt = LOCALE_FORMATS[resolved]
    precision = currency_precision(code)

    value = round_for_display(amount, code)
    sign = "-" if value < 0 else ""
    whole, _, fraction = format(abs(value), f".{precision}f").partition(".")

    number = _group_digits(whole, fmt["group"], fmt["indian"])
    if precision:
        number = f"{number}{fmt['decimal']}{fraction}"

    symbol = CURRENCY_SYMBOLS.get(code, code)
    if fmt["symbol_first"]:
        spacer = "" if code in CURRENCY_SYMBOLS else NBSP
        return f"{sign}{symbol}{spacer}{number}"
    return f"{sign}{number}{NBSP}{symbol}"
