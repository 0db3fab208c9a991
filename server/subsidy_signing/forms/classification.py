"""
EU SME classification.

Pure decision tree used by the MKB declaration: the resulting category picks
the "Type onderneming" option and the answers of the decision tree questions
on the form. Thresholds are inclusive on turnover and balance sheet total and
exclusive on headcount.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict

from subsidy_signing.core.errors import ValidationError

SMALL_MAX_EMPLOYEES = 50
SMALL_MAX_TURNOVER = 10_000_000
SMALL_MAX_BALANCE = 10_000_000
MEDIUM_MAX_EMPLOYEES = 250
MEDIUM_MAX_TURNOVER = 50_000_000
MEDIUM_MAX_BALANCE = 43_000_000

NOT_INDEPENDENT_RATIONALE = "Company is not independent (>25% owned/controlled by large enterprise)"


class CompanySize(str, Enum):
    """Enterprise size category."""
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"

    @property
    def label(self) -> str:
        """Dutch label as printed on the MKB declaration."""
        return {
            CompanySize.SMALL: "Kleine onderneming",
            CompanySize.MEDIUM: "Middelgrote onderneming",
            CompanySize.LARGE: "Grote onderneming",
        }[self]


@dataclass(frozen=True)
class CompanySizeResult:
    category: CompanySize
    rationale: str
    criteria: Dict[str, bool] = field(default_factory=dict)


def _coerce(name: str, value: Any) -> float:
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be a number", errors=[f"{name} must be a number"])
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a number", errors=[f"{name} must be a number, got {value!r}"])
    if math.isnan(number) or math.isinf(number):
        raise ValidationError(f"{name} must be a finite number", errors=[f"{name} must be a finite number"])
    return number


def _fmt(number: float) -> str:
    return str(int(number)) if number.is_integer() else repr(number)


def classify(employees: Any, turnover: Any, balance_sheet_total: Any, is_independent: bool) -> CompanySizeResult:
    """
    Classify a company as small, medium or large.

    Args:
        employees: Headcount in FTE
        turnover: Annual turnover in euros
        balance_sheet_total: Balance sheet total in euros
        is_independent: False when >25% is owned or controlled by a large enterprise

    Returns:
        CompanySizeResult with category, rationale and evaluated criteria

    Raises:
        ValidationError: If any metric is not a finite number
    """
    emp = _coerce("employees", employees)
    turn = _coerce("turnover", turnover)
    bal = _coerce("balanceSheetTotal", balance_sheet_total)

    if not is_independent:
        return CompanySizeResult(category=CompanySize.LARGE, rationale=NOT_INDEPENDENT_RATIONALE, criteria={})

    if emp < SMALL_MAX_EMPLOYEES and (turn <= SMALL_MAX_TURNOVER or bal <= SMALL_MAX_BALANCE):
        return CompanySizeResult(
            category=CompanySize.SMALL,
            rationale=(
                f"Employees: {_fmt(emp)} < {SMALL_MAX_EMPLOYEES} AND "
                f"(Turnover: €{_fmt(turn)} OR Balance: €{_fmt(bal)}) <= €{SMALL_MAX_TURNOVER}"
            ),
            criteria={
                "fte_under_50": True,
                "turnover_under_10m": turn <= SMALL_MAX_TURNOVER,
                "balance_under_10m": bal <= SMALL_MAX_BALANCE,
            },
        )

    if emp < MEDIUM_MAX_EMPLOYEES and (turn <= MEDIUM_MAX_TURNOVER or bal <= MEDIUM_MAX_BALANCE):
        return CompanySizeResult(
            category=CompanySize.MEDIUM,
            rationale=(
                f"Employees: {_fmt(emp)} < {MEDIUM_MAX_EMPLOYEES} AND "
                f"(Turnover: €{_fmt(turn)} <= €{MEDIUM_MAX_TURNOVER} OR Balance: €{_fmt(bal)} <= €{MEDIUM_MAX_BALANCE})"
            ),
            criteria={
                "fte_under_250": True,
                "turnover_under_50m": turn <= MEDIUM_MAX_TURNOVER,
                "balance_under_43m": bal <= MEDIUM_MAX_BALANCE,
            },
        )

    return CompanySizeResult(
        category=CompanySize.LARGE,
        rationale="Exceeds medium enterprise thresholds",
        criteria={"exceeds_thresholds": True},
    )
