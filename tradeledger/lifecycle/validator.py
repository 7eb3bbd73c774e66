"""
Lifecycle validation before reporting and persistence.

Errors make a closed lifecycle an invalid trade; warnings flag it for
review without blocking. Cross-validation compares the price-derived
realized P&L against the ledger income matched to the lifecycle.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from tradeledger.constants import (
    MAX_HOLD_MINUTES_WARNING,
    MIN_HOLD_MINUTES_WARNING,
    PNL_ERROR_PCT,
    PNL_WARNING_PCT,
)
from tradeledger.domain.models import TradeLifecycle

ZERO = Decimal("0")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class ValidationIssue:
    field: str
    message: str


@dataclass(frozen=True)
class CrossValidation:
    calculated_pnl: Decimal
    reported_pnl: Decimal
    pnl_difference: Decimal
    pnl_difference_percent: Decimal


@dataclass
class ValidationResult:
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)
    cross_validation: Optional[CrossValidation] = None

    @property
    def is_valid(self) -> bool:
        return not self.errors


def cross_validate(calculated: Decimal, reported: Decimal) -> CrossValidation:
    difference = abs(calculated - reported)
    if reported != ZERO:
        percent = difference / abs(reported) * HUNDRED
    elif calculated != ZERO:
        percent = HUNDRED
    else:
        percent = ZERO
    return CrossValidation(calculated, reported, difference, percent)


def validate_lifecycle(lifecycle: TradeLifecycle, matched_income: Optional[Decimal] = None) -> ValidationResult:
    """
    Validate a closed lifecycle.

    Args:
        lifecycle: Closed lifecycle
        matched_income: Ledger realized P&L matched to it, None if unmatched
    """
    result = ValidationResult()
    errors, warnings = result.errors, result.warnings

    if lifecycle.entry_price <= ZERO:
        errors.append(ValidationIssue("entry_price", f"Invalid entry price: {lifecycle.entry_price}"))
    if lifecycle.exit_price is None or lifecycle.exit_price <= ZERO:
        errors.append(ValidationIssue("exit_price", f"Invalid exit price: {lifecycle.exit_price}"))
    if lifecycle.opened_quantity <= ZERO:
        errors.append(ValidationIssue("quantity", f"Invalid quantity: {lifecycle.opened_quantity}"))
    if lifecycle.last_fill_time < lifecycle.first_fill_time:
        errors.append(ValidationIssue("exit_datetime", "Exit datetime is before entry datetime"))

    if lifecycle.fees == ZERO:
        warnings.append(ValidationIssue("fees", "Zero commission - verify if this is correct"))
    hold = lifecycle.hold_time_minutes
    if hold < MIN_HOLD_MINUTES_WARNING:
        warnings.append(ValidationIssue("hold_time_minutes", f"Very short hold time: {hold:.2f} minutes"))
    if hold > MAX_HOLD_MINUTES_WARNING:
        warnings.append(ValidationIssue("hold_time_minutes", f"Very long hold time: {hold / 1440:.0f} days"))
    if lifecycle.incomplete:
        warnings.append(ValidationIssue("executions", "Invalid executions were skipped inside this lifecycle"))

    if matched_income is None:
        warnings.append(ValidationIssue("realized_pnl", "No ledger realized P&L matched this lifecycle"))
        return result

    check = cross_validate(lifecycle.realized_pnl, matched_income)
    result.cross_validation = check
    if check.pnl_difference_percent > PNL_ERROR_PCT:
        errors.append(ValidationIssue(
            "realized_pnl",
            f"Large PnL discrepancy: calculated={check.calculated_pnl:.4f}, "
            f"reported={check.reported_pnl:.4f} ({check.pnl_difference_percent:.2f}% difference)",
        ))
    elif check.pnl_difference_percent > PNL_WARNING_PCT:
        warnings.append(ValidationIssue(
            "realized_pnl",
            f"Calculated PnL ({check.calculated_pnl:.4f}) differs from reported "
            f"({check.reported_pnl:.4f}) by {check.pnl_difference_percent:.2f}%",
        ))
    return result


@dataclass
class ValidationSummary:
    valid: int = 0
    invalid: int = 0
    with_warnings: int = 0
    error_breakdown: Dict[str, int] = field(default_factory=dict)
    warning_breakdown: Dict[str, int] = field(default_factory=dict)
    results: Dict[str, ValidationResult] = field(default_factory=dict)


def validate_all(
    lifecycles: Iterable[TradeLifecycle],
    matched_by_lifecycle: Dict[str, Decimal],
) -> ValidationSummary:
    """Validate every closed lifecycle and tally errors/warnings per field."""
    summary = ValidationSummary()
    for lifecycle in lifecycles:
        if not lifecycle.is_closed:
            continue
        validation = validate_lifecycle(lifecycle, matched_by_lifecycle.get(lifecycle.lifecycle_id))
        summary.results[lifecycle.lifecycle_id] = validation
        if validation.is_valid:
            summary.valid += 1
            if validation.warnings:
                summary.with_warnings += 1
        else:
            summary.invalid += 1
        for issue in validation.errors:
            summary.error_breakdown[issue.field] = summary.error_breakdown.get(issue.field, 0) + 1
        for issue in validation.warnings:
            summary.warning_breakdown[issue.field] = summary.warning_breakdown.get(issue.field, 0) + 1
    return summary
