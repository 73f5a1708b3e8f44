from decimal import Decimal, InvalidOperation

from .conf import get_setting


def _symbols():
    return get_setting("CURRENCY_SYMBOLS", {}) or {}


def currency_symbol(code: str | None) -> str:
    if not code:
        return ""
    return _symbols().get(code.upper(), code.upper())


def format_money(amount, currency: str | None) -> str:
    if amount in (None, ""):
        return ""
    try:
        dec = Decimal(str(amount))
    except (InvalidOperation, TypeError, ValueError):
        return f"{amount}"
    s = f"{dec:,.2f}"
    if s.endswith(".00"):
        s = s[:-3]
    sym = currency_symbol(currency)
    return f"{sym}{s}" if sym else s
