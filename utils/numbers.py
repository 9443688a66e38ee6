# utils/numbers.py

import math
from decimal import Decimal, ROUND_HALF_UP


def round_half_up(value: float) -> int:
    """Округление .5 вверх (round() в Python округляет к чётному)"""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def round_amount(value: float, digits: int = 4) -> float:
    quant = Decimal(1).scaleb(-digits)
    return float(Decimal(str(value)).quantize(quant, rounding=ROUND_HALF_UP))


def ceil_days(seconds: float) -> int:
    return math.ceil(seconds / 86400)
