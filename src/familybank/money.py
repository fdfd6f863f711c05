"""Utilities for working with pence and stars in FamilyBank."""

from __future__ import annotations

from .exceptions import ValidationError

PENCE_PER_BASE_STAR = 10


def require_amount(value: int, *, name: str = "amount", allow_zero: bool = False) -> int:
    """Ensure ``value`` is a whole number of minor units that is positive (or zero)."""

    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be a whole number, got {value!r}.")
    if allow_zero:
        if value < 0:
            raise ValidationError(f"{name} must be zero or greater.")
    elif value <= 0:
        raise ValidationError(f"{name} must be greater than zero.")
    return value


def base_stars(base_reward_pence: int) -> int:
    """Stars earned for a task: one per ten pence of base reward, never less than one."""

    return max(1, base_reward_pence // PENCE_PER_BASE_STAR)


def format_pence(amount: int) -> str:
    """Return ``amount`` pence formatted as pounds (e.g. ``£1.25``)."""

    sign = "-" if amount < 0 else ""
    pounds, pence = divmod(abs(amount), 100)
    return f"{sign}£{pounds:,}.{pence:02d}"
