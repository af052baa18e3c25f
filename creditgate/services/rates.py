"""
Rate Table - token prices and the token -> credit conversion policy.

Prices are USD per 1M tokens. Credits are the unit the metering authority
bills in; one credit costs credit_unit_price USD. Pure functions, no state.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from creditgate.models.api import CacheTokenType, SpendContext, TokenType
from creditgate.models.domain import ZERO

TOKENS_PER_RATE_UNIT = Decimal("1000000")
TWO_PLACES = Decimal("0.01")


@dataclass(frozen=True)
class ModelRate:
    """USD per 1M tokens for one model. Cache rates fall back to the prompt rate."""

    prompt: Decimal
    completion: Decimal
    cache_write: Decimal | None = None
    cache_read: Decimal | None = None

    def __post_init__(self) -> None:
        """Validate rates."""
        for name in ("prompt", "completion", "cache_write", "cache_read"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValueError(f"{name} rate cannot be negative: {value}")


def _rate(
    prompt: str, completion: str, write: str | None = None, read: str | None = None
) -> ModelRate:
    return ModelRate(
        prompt=Decimal(prompt),
        completion=Decimal(completion),
        cache_write=Decimal(write) if write is not None else None,
        cache_read=Decimal(read) if read is not None else None,
    )


# Keys are matched exactly first, then as the longest key contained in the
# model name ("gpt-4o-mini-2024-07-18" -> "gpt-4o-mini").
DEFAULT_RATES: dict[str, ModelRate] = {
    "gpt-3.5-turbo": _rate("0.5", "1.5"),
    "gpt-4": _rate("30", "60"),
    "gpt-4-turbo": _rate("10", "30"),
    "gpt-4o": _rate("2.5", "10"),
    "gpt-4o-mini": _rate("0.15", "0.6"),
    "gpt-4.1": _rate("2", "8"),
    "gpt-4.1-mini": _rate("0.4", "1.6"),
    "gpt-4.1-nano": _rate("0.1", "0.4"),
    "o1": _rate("15", "60"),
    "o1-mini": _rate("1.1", "4.4"),
    "o3-mini": _rate("1.1", "4.4"),
    "claude-3-haiku": _rate("0.25", "1.25", "0.3", "0.03"),
    "claude-3-5-haiku": _rate("0.8", "4", "1", "0.08"),
    "claude-3-sonnet": _rate("3", "15", "3.75", "0.3"),
    "claude-3-5-sonnet": _rate("3", "15", "3.75", "0.3"),
    "claude-3-7-sonnet": _rate("3", "15", "3.75", "0.3"),
    "claude-sonnet-4": _rate("3", "15", "3.75", "0.3"),
    "claude-3-opus": _rate("15", "75", "18.75", "1.5"),
    "claude-opus-4": _rate("15", "75", "18.75", "1.5"),
    "gemini-1.5-flash": _rate("0.075", "0.3"),
    "gemini-1.5-pro": _rate("1.25", "5"),
    "gemini-2.0-flash": _rate("0.1", "0.4"),
}


class RateTable:
    """Maps (model, token category) to a price in USD per 1M tokens."""

    def __init__(
        self,
        rates: dict[str, ModelRate] | None = None,
        default_rate: Decimal = Decimal("6"),
    ) -> None:
        self._rates = dict(DEFAULT_RATES if rates is None else rates)
        self.default_rate = default_rate
        # Longest first so "gpt-4o-mini" wins over "gpt-4o" and "gpt-4"
        self._keys_by_length = sorted(self._rates, key=len, reverse=True)

    def resolve(self, model: str | None) -> ModelRate | None:
        """Rate entry for a model, or None when the model is unknown."""
        if not model:
            return None
        rate = self._rates.get(model)
        if rate is not None:
            return rate
        for key in self._keys_by_length:
            if key in model:
                return self._rates[key]
        return None

    def price_of(self, model: str | None, category: TokenType | CacheTokenType) -> Decimal:
        rate = self.resolve(model)
        if rate is None:
            return self.default_rate

        if category == TokenType.PROMPT:
            return rate.prompt
        if category == TokenType.COMPLETION:
            return rate.completion
        if category == CacheTokenType.WRITE:
            return rate.cache_write if rate.cache_write is not None else rate.prompt
        if category == CacheTokenType.READ:
            return rate.cache_read if rate.cache_read is not None else rate.prompt
        raise ValueError(f"Category has no token price: {category}")


@dataclass(frozen=True)
class ChargePolicy:
    """
    Token -> credit conversion and rounding.

    - usd = tokens * rate / 1M; credits = usd / credit_unit_price
    - below epsilon: not charged
    - epsilon up to 1 credit: charged the minimum charge
    - 1 credit and above: rounded half-up to two decimals
    """

    credit_unit_price: Decimal = Decimal("0.002")
    epsilon: Decimal = Decimal("0.001")
    minimum_charge: Decimal = Decimal("0.01")
    cancel_rate: Decimal = Decimal("1.15")

    def __post_init__(self) -> None:
        """Validate policy constants."""
        if self.credit_unit_price <= 0:
            raise ValueError("credit_unit_price must be positive")
        if self.cancel_rate <= 1:
            raise ValueError(f"cancel_rate must be greater than 1: {self.cancel_rate}")
        if self.minimum_charge < 0 or self.epsilon < 0:
            raise ValueError("epsilon and minimum_charge cannot be negative")

    def usd_cost(self, raw_tokens: int, rate: Decimal) -> Decimal:
        return Decimal(raw_tokens) * rate / TOKENS_PER_RATE_UNIT

    def credits_for(self, raw_tokens: int, rate: Decimal) -> Decimal:
        """Exact (unrounded) credits for a token count at a rate."""
        if raw_tokens <= 0:
            return ZERO
        return self.usd_cost(raw_tokens, rate) / self.credit_unit_price

    def effective_rate(self, rate: Decimal, category: TokenType, context: str | None) -> Decimal:
        """Aborted completions pay the cancel surcharge."""
        if category == TokenType.COMPLETION and context == SpendContext.INCOMPLETE:
            return rate * self.cancel_rate
        return rate

    def round_charge(self, exact: Decimal) -> Decimal:
        """Credits actually charged for an exact amount."""
        if exact < self.epsilon:
            return ZERO
        if exact < 1:
            return self.minimum_charge
        return exact.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
