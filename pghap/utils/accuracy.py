from __future__ import annotations

from typing import Dict, Optional

# Third-party Modules
import numpy as np
import pandas as pd
from sklearn.metrics import accuracy_score, f1_score

CLASS_LABELS = ("hom_major", "het", "hom_minor")
COLUMN_LABELS = ("imputed_hom_major", "imputed_het", "imputed_hom_minor", "unimputed", "total")

_UNIMPUTED = 3
_TOTAL = 4


class AccuracyTally:
    """Confusion counts of imputed calls at sites whose true call was masked.

    Rows are the known class (0 hom major, 1 het, 2 hom minor). Columns are the imputed class (0, 1, 2), sites left unimputed, and the row total. Tallies from different workers are summed with ``+``.

    Attributes:
        counts (np.ndarray): ``int64`` array of shape ``(3, 5)``.
    """

    def __init__(self, counts: Optional[np.ndarray] = None) -> None:
        if counts is None:
            counts = np.zeros((3, 5), dtype=np.int64)
        counts = np.asarray(counts, dtype=np.int64)
        if counts.shape != (3, 5):
            raise ValueError(f"counts must have shape (3, 5), got {counts.shape}")
        self.counts = counts

    def __add__(self, other: "AccuracyTally") -> "AccuracyTally":
        if not isinstance(other, AccuracyTally):
            return NotImplemented
        return AccuracyTally(self.counts + other.counts)

    def __radd__(self, other):
        if other == 0:
            return self
        return self.__add__(other)

    def __repr__(self) -> str:
        return f"AccuracyTally(masked={self.n_masked})"

    def update(
        self, known: np.ndarray, imputed: np.ndarray, mask: Optional[np.ndarray] = None
    ) -> "AccuracyTally":
        """Add the masked sites of one sample.

        Args:
            known (np.ndarray): True 0/1/2 calls; negative entries are never counted.
            imputed (np.ndarray): Calls after imputation; negative means unimputed.
            mask (Optional[np.ndarray]): Sites that were hidden from the imputer. Defaults to every site with a known call.

        Returns:
            AccuracyTally: ``self``.
        """
        known = np.asarray(known)
        imputed = np.asarray(imputed)
        sel = known >= 0
        if mask is not None:
            sel &= np.asarray(mask, dtype=bool)

        k = known[sel].astype(np.int64)
        im = imputed[sel].astype(np.int64)
        called = im >= 0
        self.counts[:, :3] += np.bincount(k[called] * 3 + im[called], minlength=9).reshape(3, 3)
        self.counts[:, _UNIMPUTED] += np.bincount(k[~called], minlength=3)
        self.counts[:, _TOTAL] += np.bincount(k, minlength=3)
        return self

    @property
    def n_masked(self) -> int:
        return int(self.counts[:, _TOTAL].sum())

    @property
    def n_imputed(self) -> int:
        return int(self.counts[:, :3].sum())

    def class_error_rates(self) -> np.ndarray:
        """Per known class, the proportion of imputed calls that are wrong (NaN when none imputed)."""
        imputed = self.counts[:, :3].sum(axis=1)
        correct = np.diag(self.counts[:, :3])
        with np.errstate(invalid="ignore", divide="ignore"):
            return np.where(imputed > 0, 1.0 - correct / imputed, np.nan)

    def error_rate(self) -> float:
        if self.n_imputed == 0:
            return float("nan")
        return 1.0 - float(np.trace(self.counts[:, :3])) / self.n_imputed

    def proportion_unimputed(self) -> float:
        if self.n_masked == 0:
            return float("nan")
        return float(self.counts[:, _UNIMPUTED].sum()) / self.n_masked

    def r2(self) -> float:
        """Squared Pearson correlation between known and imputed dosages, weighted by counts."""
        weights = self.counts[:, :3].astype(float)
        total = weights.sum()
        if total == 0:
            return float("nan")
        x = np.repeat(np.arange(3.0), 3).reshape(3, 3)
        y = x.T
        mx = (weights * x).sum() / total
        my = (weights * y).sum() / total
        cov = (weights * (x - mx) * (y - my)).sum()
        vx = (weights * (x - mx) ** 2).sum()
        vy = (weights * (y - my) ** 2).sum()
        if vx == 0 or vy == 0:
            return float("nan")
        return float(cov**2 / (vx * vy))

    def report(self) -> Dict[str, float]:
        """Summary metrics over the imputed masked sites.

        Returns:
            Dict[str, float]: Error rates per class and overall, the proportion left unimputed, r², accuracy and macro F1.
        """
        out: Dict[str, float] = {
            "n_masked": float(self.n_masked),
            "n_imputed": float(self.n_imputed),
        }
        for label, err in zip(CLASS_LABELS, self.class_error_rates()):
            out[f"error_{label}"] = float(err)
        out["error_overall"] = self.error_rate()
        out["proportion_unimputed"] = self.proportion_unimputed()
        out["r2"] = self.r2()

        if self.n_imputed == 0:
            out["accuracy"] = float("nan")
            out["f1_macro"] = float("nan")
            return out

        y_true = np.repeat(np.arange(3), 3)
        y_pred = np.tile(np.arange(3), 3)
        weights = self.counts[:, :3].ravel()
        out["accuracy"] = float(accuracy_score(y_true, y_pred, sample_weight=weights))
        out["f1_macro"] = float(
            f1_score(
                y_true,
                y_pred,
                labels=[0, 1, 2],
                average="macro",
                sample_weight=weights,
                zero_division=0,
            )
        )
        return out

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(self.counts, index=list(CLASS_LABELS), columns=list(COLUMN_LABELS))
