"""Amount and time helpers. Amounts on the wire are integers in the smallest unit."""
from decimal import Decimal, InvalidOperation

import timeflow.constants as C

SECONDS_PER_YEAR = 365 * 24 * 60 * 60


def parse_amount(text: str | int | Decimal, decimals: int = C.DECIMALS) -> int:
    """'1.5' -> 1500000000000000000. Raises ValueError for anything not exactly representable."""
    try:
        d = Decimal(str(text).strip())
    except InvalidOperation:
        raise ValueError(f"not a number: {text!r}") from None
    if not d.is_finite():
        raise ValueError(f"not a finite amount: {text!r}")
    scaled = d.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValueError(f"{text!r} has more than {decimals} decimal places")
    return int(scaled)


def to_units(value: int, decimals: int = C.DECIMALS) -> Decimal:
    return Decimal(value).scaleb(-decimals)


def format_amount(value: int | None, decimals: int = C.DECIMALS) -> str:
    if not value:
        return "0"
    v = to_units(value, decimals)
    if v < Decimal("0.0001"):
        return "<0.0001"
    if v < 1:
        return f"{v:.4f}"
    if v < 1000:
        return f"{v:.3f}"
    return f"{v:,.2f}".rstrip("0").rstrip(".")


def format_duration(seconds: int) -> str:
    seconds = max(0, int(seconds))
    days, rem = divmod(seconds, 86400)
    hours, rem = divmod(rem, 3600)
    mins, secs = divmod(rem, 60)
    if days:
        return f"{days}d {hours}h"
    if hours:
        return f"{hours}h {mins}m"
    if mins:
        return f"{mins}m {secs}s"
    return f"{secs}s"


def apy_percent(bps: int | None) -> float:
    """The vault reports APY in basis points."""
    return 0.0 if bps is None else bps / 100


def fee_percent(bps: int | None) -> str:
    return "0" if not bps else f"{bps / 100:.2f}%"


def truncate_address(address: str | None) -> str:
    if not address:
        return ""
    return f"{address[:6]}...{address[-4:]}"
