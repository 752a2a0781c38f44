"""Double-entry balance check.

An unbalanced entry is a reportable outcome, never corrected here: amounts
are summed and compared, nothing is adjusted to make them agree.
"""

from collections.abc import Iterable

from services.accounting.schema import AccountingEntryLine, BalanceCheck

DEFAULT_TOLERANCE = 0.01


class BalanceValidator:
    def __init__(self, tolerance: float = DEFAULT_TOLERANCE) -> None:
        self.tolerance = tolerance

    def check(self, entries: Iterable[AccountingEntryLine]) -> BalanceCheck:
        total_debit = 0.0
        total_credit = 0.0
        for line in entries:
            total_debit += line.debit
            total_credit += line.credit
        # Compare rounded totals so float noise cannot tip an exact-cent difference over
        difference = round(abs(round(total_debit, 2) - round(total_credit, 2)), 2)
        return BalanceCheck(
            balanced=difference <= self.tolerance,
            total_debit=round(total_debit, 2),
            total_credit=round(total_credit, 2),
        )
