"""
Chat pricing in minor units.

Balances and charges use millidollars (1 unit = $0.001), so the smallest
possible paid charge is $0.001. Display value in USD is ``units / UNITS_PER_USD``.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum

UNITS_PER_USD = 1000


class PricingError(ValueError):
    pass


class ChatMode(str, Enum):
    FREE = "default"
    SIMPLE = "simple"
    MAX = "max"
    DATA_ANALYTICS_SIMPLE = "data-analytics-simple"
    DATA_ANALYTICS_MAX = "data-analytics-max"
    CODE_SIMPLE = "code-simple"
    CODE_MAX = "code-max"
    DEEP_RESEARCH_SIMPLE = "deep-research-simple"
    DEEP_RESEARCH_MAX = "deep-research-max"
    # Billed after the call from actual token usage (see cost_from_tokens).
    LEGACY = "legacy"

    @classmethod
    def parse(cls, value: "ChatMode | str") -> "ChatMode":
        if isinstance(value, ChatMode):
            return value
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            raise PricingError(f"Unknown chat mode: {value!r}") from None

    @property
    def is_free(self) -> bool:
        return self is ChatMode.FREE

    @property
    def is_prepriced(self) -> bool:
        return self in MODE_PRICES


@dataclass(frozen=True)
class ModePrice:
    base_usd: float
    per_ten_words_usd: float
    model: str
    description: str


MODE_PRICES: dict[ChatMode, ModePrice] = {
    ChatMode.SIMPLE: ModePrice(0.02, 0.0, "claude-sonnet-4-5-20250929", "Reasoning - claude-sonnet-4-5"),
    ChatMode.MAX: ModePrice(2.34, 0.0015, "o1-pro", "Reasoning MAX - o1-pro"),
    ChatMode.DATA_ANALYTICS_SIMPLE: ModePrice(
        0.005,
        0.00005,
        "google/gemini-3-flash-preview",
        "Data Analytics - gemini-3-flash-preview",
    ),
    ChatMode.DATA_ANALYTICS_MAX: ModePrice(
        0.052, 0.0, "anthropic/claude-opus-4.6", "Data Analytics MAX - claude-opus-4.6"
    ),
    ChatMode.CODE_SIMPLE: ModePrice(0.015, 0.0, "x-ai/grok-code-fast-1", "Code - grok-code-fast"),
    ChatMode.CODE_MAX: ModePrice(
        0.274,
        0.000002,
        "x-ai/grok-code-fast-1 + anthropic/claude-sonnet-4.5",
        "Code MAX - grok-code-fast + claude-sonnet-4.5",
    ),
    ChatMode.DEEP_RESEARCH_SIMPLE: ModePrice(
        0.005,
        0.00005,
        "openai/o4-mini-deep-research",
        "Deep Research - o4-mini-deep-research",
    ),
    ChatMode.DEEP_RESEARCH_MAX: ModePrice(
        0.012, 0.0001, "openai/o3-deep-research", "Deep Research MAX - o3-deep-research"
    ),
}

FREE_MODEL = "openrouter/free"

LEGACY_MODEL = "anthropic/claude-sonnet-4"
LEGACY_INPUT_PER_1K_USD = Decimal("0.003")
LEGACY_OUTPUT_PER_1K_USD = Decimal("0.015")


def word_count(message: str) -> int:
    return len((message or "").split())


def usd_to_units(amount_usd: Decimal | float | str) -> int:
    """Round half-up to the nearest minor unit."""
    return int((Decimal(str(amount_usd)) * UNITS_PER_USD).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_units_to_usd(value: int) -> str:
    decimal_value = (Decimal(int(value)) / Decimal(UNITS_PER_USD)).quantize(Decimal("0.001"), rounding=ROUND_HALF_UP)
    return f"{decimal_value:.3f}"


def calculate_charge_units(mode: ChatMode | str, message: str) -> int:
    """
    Fixed base fee plus a fee per started group of 10 words, floored at 1 unit.
    Deterministic for a given (mode, word count).
    """
    chat_mode = ChatMode.parse(mode)
    if chat_mode.is_free:
        return 0
    price = MODE_PRICES.get(chat_mode)
    if price is None:
        raise PricingError(f"Mode {chat_mode.value!r} is billed from token usage, not pre-priced")

    groups = math.ceil(word_count(message) / 10)
    total_usd = price.base_usd + groups * price.per_ten_words_usd
    # Exact half-unit ties round up.
    return max(1, math.floor(total_usd * UNITS_PER_USD + 0.5))


def cost_from_tokens(*, input_tokens: int, output_tokens: int) -> int:
    """Legacy post-call pricing from provider-reported token usage."""
    input_cost = Decimal(max(int(input_tokens), 0)) / Decimal(1000) * LEGACY_INPUT_PER_1K_USD
    output_cost = Decimal(max(int(output_tokens), 0)) / Decimal(1000) * LEGACY_OUTPUT_PER_1K_USD
    units = math.ceil((input_cost + output_cost) * UNITS_PER_USD)
    return max(1, units)


def model_for_mode(mode: ChatMode | str) -> str:
    chat_mode = ChatMode.parse(mode)
    if chat_mode.is_free:
        return FREE_MODEL
    if chat_mode is ChatMode.LEGACY:
        return LEGACY_MODEL
    return MODE_PRICES[chat_mode].model


def description_for_mode(mode: ChatMode | str) -> str:
    chat_mode = ChatMode.parse(mode)
    price = MODE_PRICES.get(chat_mode)
    if price is not None:
        return price.description
    return f"API usage: {model_for_mode(chat_mode)}"
