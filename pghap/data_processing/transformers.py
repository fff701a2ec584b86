from __future__ import annotations

import logging
from typing import Literal

import numpy as np


class SimGenotypeDataTransformer:
    """Hide a proportion of known 0/1/2 calls so imputation accuracy can be scored.

    Args:
        prop_missing (float): Proportion of known calls to hide (0..1).
        strategy (Literal["random", "random_inv_genotype"]): "random" picks calls uniformly; "random_inv_genotype" weights each call by the inverse frequency of its genotype class, so rare classes (usually heterozygotes) are hidden more often.
        missing_val (int): Code written into hidden cells.
        seed (int | None): RNG seed.
        logger (logging.Logger | None): Logger.
        het_boost (float): Extra weight on heterozygous calls for "random_inv_genotype".
    """

    def __init__(
        self,
        *,
        prop_missing: float = 0.01,
        strategy: Literal["random", "random_inv_genotype"] = "random",
        missing_val: int = -1,
        seed: int | None = None,
        logger: logging.Logger | None = None,
        het_boost: float = 1.0,
    ) -> None:
        self.prop_missing = float(prop_missing)
        self.strategy = strategy
        self.missing_val = int(missing_val)
        self.seed = seed
        self.het_boost = float(het_boost)
        self.rng = np.random.default_rng(seed)
        self.logger = logger or logging.getLogger(__name__)

        if not 0.0 <= self.prop_missing <= 1.0:
            msg = f"prop_missing must be in [0, 1], got {self.prop_missing}"
            self.logger.error(msg)
            raise ValueError(msg)

    def fit(self, X, y=None) -> "SimGenotypeDataTransformer":
        """Stateless; returns self."""
        return self

    def transform(self, X: np.ndarray) -> tuple[np.ndarray, dict]:
        """Hide calls in a 2-D genotype matrix.

        Args:
            X (np.ndarray): ``(n_samples, n_sites)`` codes in {0, 1, 2}, negative for missing.

        Returns:
            tuple[np.ndarray, dict]: The masked copy and a dict of boolean masks: "original" (already missing), "simulated" (hidden here) and "all" (their union).
        """
        X = np.asarray(X)
        if X.ndim != 2:
            msg = f"X must be 2D, got shape {X.shape}"
            self.logger.error(msg)
            raise ValueError(msg)

        original = X < 0
        known_rows, known_cols = np.nonzero(~original)
        simulated = np.zeros(X.shape, dtype=bool)

        n_hide = int(np.floor(self.prop_missing * len(known_rows)))
        if n_hide > 0:
            weights = self._weights(X[known_rows, known_cols])
            pick = self.rng.choice(len(known_rows), size=n_hide, replace=False, p=weights)
            simulated[known_rows[pick], known_cols[pick]] = True
            simulated = self._keep_one_per_row(simulated, original)

        Xt = X.copy()
        Xt[simulated] = self.missing_val
        self.logger.debug(
            f"Masked {int(simulated.sum())} of {len(known_rows)} known calls "
            f"({self.strategy})."
        )
        return Xt, {"original": original, "simulated": simulated, "all": original | simulated}

    def fit_transform(self, X: np.ndarray, y=None) -> tuple[np.ndarray, dict]:
        return self.fit(X, y).transform(X)

    def _weights(self, calls: np.ndarray) -> np.ndarray | None:
        if self.strategy == "random":
            return None
        if self.strategy != "random_inv_genotype":
            msg = "strategy must be one of {'random','random_inv_genotype'}"
            self.logger.error(msg)
            raise ValueError(msg)

        calls = calls.astype(int)
        freqs = np.bincount(calls, minlength=3) / len(calls)
        w = 1.0 / (freqs[calls] + 1e-12)
        w = np.where(calls == 1, w * self.het_boost, w)
        return w / w.sum()

    def _keep_one_per_row(self, simulated: np.ndarray, original: np.ndarray) -> np.ndarray:
        """Unhide one random call in any sample that would otherwise lose every call."""
        emptied = np.flatnonzero((simulated | original).all(axis=1) & (~original).any(axis=1))
        for r in emptied:
            cols = np.flatnonzero(simulated[r])
            simulated[r, cols[int(self.rng.integers(len(cols)))]] = False
        return simulated
