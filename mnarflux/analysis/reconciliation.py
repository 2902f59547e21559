"""Reconciliation of per-condition missingness calls into one retained protein set."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict, Mapping

if TYPE_CHECKING:
    from mnarflux.analysis.missingness import ConditionCalls


class ReconciliationStrategy(ABC):
    """Takes one ConditionCalls per condition and returns the proteins to keep."""

    @abstractmethod
    def reconcile(self, calls: Mapping[str, "ConditionCalls"]) -> frozenset:
        ...

    def details(self) -> Dict[str, Any]:
        """Set sizes of the last reconciliation, for provenance."""
        return dict(getattr(self, "details_", {}))


class PairwiseReconciliation(ReconciliationStrategy):
    """
    Cross-condition consistency rule for exactly two conditions A and B.

      MAR_A            = passed(A) & (MNAR(B) | passed(B))
      MAR_B            = passed(B) & (MNAR(A) | passed(A))
      MNAR_A_confirmed = MNAR(A) & MAR_B
      MNAR_B_confirmed = MNAR(B) & MAR_A
      retained         = MAR_A | MAR_B | MNAR_A_confirmed | MNAR_B_confirmed

    `passed` is the set of MAR candidates that survived the minimum-count filter.
    """

    def reconcile(self, calls: Mapping[str, "ConditionCalls"]) -> frozenset:
        if len(calls) != 2:
            raise ValueError(
                f"Pairwise reconciliation is defined for exactly two conditions, got {len(calls)}: "
                f"{sorted(calls)}"
            )
        (a, ca), (b, cb) = list(calls.items())

        mar_a = ca.passed & (cb.mnar | cb.passed)
        mar_b = cb.passed & (ca.mnar | ca.passed)
        mnar_a = ca.mnar & mar_b
        mnar_b = cb.mnar & mar_a
        retained = frozenset(mar_a | mar_b | mnar_a | mnar_b)

        self.details_ = {
            f"MAR_{a}": len(mar_a),
            f"MAR_{b}": len(mar_b),
            f"MNAR_{a}_confirmed": len(mnar_a),
            f"MNAR_{b}_confirmed": len(mnar_b),
            "retained": len(retained),
        }
        return retained


def get_reconciler(method: str = "pairwise", **kwargs) -> ReconciliationStrategy:
    """Returns a reconciliation strategy. Valid methods: "pairwise"."""
    if method == "pairwise":
        return PairwiseReconciliation()
    raise ValueError(f"Invalid reconciliation method: {method}. Options: pairwise")
