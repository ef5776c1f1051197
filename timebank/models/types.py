# timebank/models/types.py
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import BigInteger
from sqlalchemy.types import TypeDecorator

CENT = Decimal("0.01")


class CreditAmount(TypeDecorator):
    """
    Credit amount stored as integer hundredths.

    SQLite has no exact decimal type, so SQL-side comparisons such as
    ``available >= 0.30`` would run on floats. Keeping whole cents in a
    BIGINT column makes every guard and balance move exact on both SQLite
    and PostgreSQL, while Python code only ever sees two-place Decimals.
    """
    impl = BigInteger
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        cents = (Decimal(str(value)) / CENT).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        return int(cents)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return (Decimal(value) * CENT).quantize(CENT)
