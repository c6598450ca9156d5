"""
Pricing calculations and rate management.

Converts raw usage counters (transcription minutes, model tokens, synthesis
characters) into monetary cost. Everything here is pure: no I/O, no errors,
and malformed inputs count as zero rather than propagating NaN.
"""

import math
from dataclasses import dataclass, fields
from decimal import Decimal, ROUND_HALF_UP, ROUND_UP, InvalidOperation
from typing import Any, Dict, Mapping, Optional, Union

Number = Union[int, float, Decimal]

ONE_MILLION = Decimal("1000000")
ONE_HUNDRED = Decimal("100")

# Minutes are fixed-point at one millionth of a minute, so sums are exact.
MINUTE_QUANTUM = Decimal("0.000001")
MICRO_MINUTES_PER_MINUTE = 1_000_000


def to_decimal(value: Any) -> Decimal:
    """Convert a raw counter value to a non-negative Decimal.

    None, booleans, non-numeric values, NaN, infinities and negatives all
    become zero.
    """
    if value is None or isinstance(value, bool):
        return Decimal("0")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return Decimal("0")
    if not result.is_finite() or result < 0:
        return Decimal("0")
    return result


def _clean_minutes(value: Any) -> float:
    return float(to_decimal(value).quantize(MINUTE_QUANTUM, rounding=ROUND_HALF_UP))


def minutes_to_micro(minutes: Any) -> int:
    """Minutes as an integer count of micro-minutes (the stored unit)."""
    return int(to_decimal(minutes).quantize(MINUTE_QUANTUM, rounding=ROUND_HALF_UP) * MICRO_MINUTES_PER_MINUTE)


def micro_to_minutes(micro: Any) -> float:
    return float(to_decimal(micro) / MICRO_MINUTES_PER_MINUTE)


def _clean_count(value: Any) -> int:
    # Fractional counts are billed conservatively (rounded up).
    return int(math.ceil(to_decimal(value)))


@dataclass(frozen=True)
class PricingRates:
    """Per-unit rates for each billable usage category."""
    transcription_per_minute: Decimal = Decimal("0.006")
    llm_input_per_million: Decimal = Decimal("0.10")
    llm_output_per_million: Decimal = Decimal("0.40")
    tts_per_million_chars: Decimal = Decimal("2.75")

    def __post_init__(self):
        """Validate rates are non-negative."""
        for f in fields(self):
            if getattr(self, f.name) < 0:
                raise ValueError(f"{f.name} cannot be negative")


DEFAULT_PRICING = PricingRates()


@dataclass(frozen=True)
class UsageCounters:
    """Raw usage counters for one billing period (or one day).

    Construction normalizes every field, so instances always hold finite,
    non-negative values.
    """
    transcription_minutes: float = 0.0
    llm_input_tokens: int = 0
    llm_output_tokens: int = 0
    tts_characters: int = 0

    def __post_init__(self):
        object.__setattr__(self, "transcription_minutes", _clean_minutes(self.transcription_minutes))
        object.__setattr__(self, "llm_input_tokens", _clean_count(self.llm_input_tokens))
        object.__setattr__(self, "llm_output_tokens", _clean_count(self.llm_output_tokens))
        object.__setattr__(self, "tts_characters", _clean_count(self.tts_characters))

    @classmethod
    def from_partial(cls, values: Optional[Mapping[str, Any]]) -> "UsageCounters":
        """Build counters from a partial mapping; missing fields are zero.

        Unknown keys are ignored.
        """
        if not values:
            return cls()
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in values.items() if k in known})

    def __add__(self, other: "UsageCounters") -> "UsageCounters":
        if not isinstance(other, UsageCounters):
            return NotImplemented
        micro = minutes_to_micro(self.transcription_minutes) + minutes_to_micro(other.transcription_minutes)
        return UsageCounters(
            transcription_minutes=micro_to_minutes(micro),
            llm_input_tokens=self.llm_input_tokens + other.llm_input_tokens,
            llm_output_tokens=self.llm_output_tokens + other.llm_output_tokens,
            tts_characters=self.tts_characters + other.tts_characters,
        )

    @property
    def is_empty(self) -> bool:
        return self == UsageCounters()

    def to_dict(self) -> Dict[str, Number]:
        return {
            "transcription_minutes": self.transcription_minutes,
            "llm_input_tokens": self.llm_input_tokens,
            "llm_output_tokens": self.llm_output_tokens,
            "tts_characters": self.tts_characters,
        }


@dataclass(frozen=True)
class UsageCosts:
    """Cost per usage category plus the total. Derived, never stored."""
    transcription_cost: Decimal
    llm_input_cost: Decimal
    llm_output_cost: Decimal
    tts_cost: Decimal
    total_cost: Decimal


def calculate_costs(counters: UsageCounters, rates: PricingRates = DEFAULT_PRICING) -> UsageCosts:
    """Calculate the cost of a set of usage counters.

    No rounding is applied; use :func:`format_cost` for display.

    Args:
        counters: Raw usage counters
        rates: Per-unit pricing rates

    Returns:
        UsageCosts with one entry per category and their sum
    """
    transcription = to_decimal(counters.transcription_minutes) * rates.transcription_per_minute
    llm_input = (to_decimal(counters.llm_input_tokens) / ONE_MILLION) * rates.llm_input_per_million
    llm_output = (to_decimal(counters.llm_output_tokens) / ONE_MILLION) * rates.llm_output_per_million
    tts = (to_decimal(counters.tts_characters) / ONE_MILLION) * rates.tts_per_million_chars

    return UsageCosts(
        transcription_cost=transcription,
        llm_input_cost=llm_input,
        llm_output_cost=llm_output,
        tts_cost=tts,
        total_cost=transcription + llm_input + llm_output + tts,
    )


def calculate_percentage_used(total_cost: Number, credit_limit: Number) -> float:
    """Percentage of the credit limit consumed, capped at 100.

    A non-positive credit limit means the allowance is fully consumed.
    """
    limit = Decimal(str(credit_limit)) if not isinstance(credit_limit, Decimal) else credit_limit
    if not limit.is_finite() or limit <= 0:
        return 100.0
    percentage = to_decimal(total_cost) / limit * ONE_HUNDRED
    return float(min(percentage, ONE_HUNDRED))


def format_cost(amount: Number) -> str:
    """Format a cost for display, rounding UP to whole cents."""
    rounded = to_decimal(amount).quantize(Decimal("0.01"), rounding=ROUND_UP)
    return f"${rounded:,.2f}"
