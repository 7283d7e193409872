from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from .operations import Operation, OperationKind
from .policy import ClassificationConfig, DiscountBoundary
from .records import Classification


@dataclass(frozen=True)
class ClassificationResult:
    classification: Classification
    discount_eligible: bool


class ClassificationPolicy:
    """Decide capital/income/expense treatment and discount eligibility.

    Disposals are capital unless a revenue rule covers their (account, asset);
    revenue disposals become income (gain) or expense (loss) and never qualify
    for the holding discount.
    """

    def __init__(self, config: ClassificationConfig) -> None:
        self._config = config

    def is_revenue(self, account_id: str, asset_id: str) -> bool:
        return any(rule.matches(account_id, asset_id) for rule in self._config.revenue_rules)

    def qualifies_for_discount(self, holding_start: datetime, disposed_at: datetime) -> bool:
        threshold = self._config.discount_threshold
        if threshold is None:
            return False
        held = disposed_at - holding_start
        if self._config.discount_boundary == DiscountBoundary.INCLUSIVE:
            return held >= threshold
        return held > threshold

    def classify(
        self,
        operation: Operation,
        *,
        gain: Decimal | None = None,
        holding_start: datetime | None = None,
    ) -> ClassificationResult:
        if operation.kind == OperationKind.INCOME:
            return ClassificationResult(Classification.INCOME, discount_eligible=False)
        if operation.kind in (OperationKind.EXPENSE, OperationKind.FEE):
            return ClassificationResult(Classification.EXPENSE, discount_eligible=False)

        if not operation.is_outbound:
            msg = f"Operation {operation.id} of kind {operation.kind} does not realize a gain"
            raise ValueError(msg)
        if gain is None or holding_start is None:
            msg = f"Disposal {operation.id} needs a gain and holding start to be classified"
            raise ValueError(msg)

        if self.is_revenue(operation.account_id, operation.asset_id):
            classification = Classification.INCOME if gain >= 0 else Classification.EXPENSE
            return ClassificationResult(classification, discount_eligible=False)

        if gain < 0:
            return ClassificationResult(Classification.CAPITAL_LOSS, discount_eligible=False)
        return ClassificationResult(
            Classification.CAPITAL_GAIN,
            discount_eligible=self.qualifies_for_discount(holding_start, operation.timestamp),
        )


__all__ = ["ClassificationPolicy", "ClassificationResult"]
