"""
Category rate lookup for points earning.

Points are computed in Decimal so a multiplier such as 1.5 never picks up
binary floating point error before rounding.
"""
from decimal import Decimal, InvalidOperation, ROUND_FLOOR, ROUND_HALF_EVEN
from types import MappingProxyType
from typing import Mapping, Union

from ..utils.exceptions import InvalidAmountError, InvalidCategoryError

ROUNDING_RULES = {
    'floor': ROUND_FLOOR,
    'half_even': ROUND_HALF_EVEN,
}

# Largest value a 32-bit INTEGER points column holds
MAX_POINTS = 2 ** 31 - 1

Number = Union[int, float, str, Decimal]


def to_decimal(value: Number, field: str = 'amount') -> Decimal:
    """Parse a purchase amount, rejecting anything that is not a finite number."""
    if isinstance(value, bool):
        raise InvalidAmountError(f'{field} must be a number')
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmountError(f'{field} must be a number, got {value!r}')
    if not result.is_finite():
        raise InvalidAmountError(f'{field} must be a finite number')
    return result


class RateTable:
    """
    Immutable mapping of purchase category to points-per-unit multiplier.

    Usage:
        rates = RateTable({'groceries': '2.0'}, rounding='floor')
        rates.points_for(Decimal('100'), 'groceries')  # 200
    """

    def __init__(self, rates: Mapping[str, Number], rounding: str = 'floor'):
        if rounding not in ROUNDING_RULES:
            raise ValueError(f"Unknown rounding rule '{rounding}'")

        parsed = {}
        for category, rate in rates.items():
            value = Decimal(str(rate))
            if value <= 0:
                raise ValueError(f"Rate for '{category}' must be positive")
            parsed[self._normalize(category)] = value

        self._rates = MappingProxyType(parsed)
        self.rounding = rounding

    @classmethod
    def from_config(cls, config: Mapping) -> 'RateTable':
        return cls(config['POINTS_CATEGORY_RATES'], config.get('POINTS_ROUNDING', 'floor'))

    @staticmethod
    def _normalize(category: str) -> str:
        return str(category).strip().lower()

    @property
    def categories(self):
        return tuple(sorted(self._rates))

    def rate_for(self, category: str) -> Decimal:
        if category is None:
            raise InvalidCategoryError(category)
        rate = self._rates.get(self._normalize(category))
        if rate is None:
            raise InvalidCategoryError(category)
        return rate

    def points_for(self, amount: Number, category: str) -> int:
        """
        Points earned for a purchase.

        Raises:
            InvalidAmountError: amount not positive, too small to earn a point,
                or earning more than MAX_POINTS
            InvalidCategoryError: category has no rate
        """
        value = to_decimal(amount)
        if value <= 0:
            raise InvalidAmountError('Purchase amount must be positive')

        rate = self.rate_for(category)
        points = int((value * rate).to_integral_value(rounding=ROUNDING_RULES[self.rounding]))

        if points <= 0:
            raise InvalidAmountError(
                f'Purchase amount {value} earns no points in category {self._normalize(category)}'
            )
        if points > MAX_POINTS:
            raise InvalidAmountError(
                f'Purchase amount {value} earns more than {MAX_POINTS} points'
            )
        return points

    def __contains__(self, category) -> bool:
        return self._normalize(category) in self._rates

    def __repr__(self):
        return f'<RateTable {dict(self._rates)} rounding={self.rounding}>'
