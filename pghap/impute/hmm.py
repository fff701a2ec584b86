"""Hidden Markov models used to phase a target against a donor pair.

Two models are provided:

- a 5-state inbred-vs-two-donor model (donor1 homozygous, three heterozygous states leaning donor1/balanced/donor2, donor2 homozygous) with a fixed emission matrix over three observation classes (target matches donor1, heterozygous, target matches donor2);
- a 4-state two-parent model whose states are the pair of parental haplotypes carried by a progeny. The donor cascade never builds it; it is there for decoding progeny of a known cross directly with :func:`viterbi` or :class:`ForwardBackward`.

Transitions are scaled per step by the physical gap between consecutive informative sites relative to the average gap over the chain.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np

RESCALE_FLOOR = 1e-50
RESCALE_CEILING = 1e-25
RESCALE_FACTOR = 1e25

# Largest total switching probability allowed out of any state in one step.
MAX_SWITCH_PROBABILITY = 0.5

_INBRED_HYBRID_TRANSITION = np.array(
    [
        [0.999, 0.0001, 0.0003, 0.0001, 0.0005],
        [0.0002, 0.999, 0.00005, 0.00005, 0.0002],
        [0.0002, 0.00005, 0.999, 0.00005, 0.0002],
        [0.0002, 0.00005, 0.00005, 0.999, 0.0002],
        [0.0005, 0.0001, 0.0003, 0.0001, 0.999],
    ]
)

INBRED_HYBRID_EMISSION = np.array(
    [
        [0.998, 0.001, 0.001],
        [0.6, 0.2, 0.2],
        [0.4, 0.2, 0.4],
        [0.2, 0.2, 0.6],
        [0.001, 0.001, 0.998],
    ]
)


def normalize_rows(matrix: np.ndarray) -> np.ndarray:
    """Scale each row of a non-negative matrix to sum to one."""
    matrix = np.asarray(matrix, dtype=float)
    return matrix / matrix.sum(axis=1, keepdims=True)


INBRED_HYBRID_TRANSITION = normalize_rows(_INBRED_HYBRID_TRANSITION)


def inbred_hybrid_initial(prob_heterozygous: float = 0.5) -> np.ndarray:
    """Initial state probabilities for the 5-state model."""
    if not 0.0 <= prob_heterozygous <= 1.0:
        raise ValueError(f"prob_heterozygous must be in [0, 1], got {prob_heterozygous}")
    p_hom = (1.0 - prob_heterozygous) / 2.0
    p = prob_heterozygous
    return np.array([p_hom, 0.25 * p, 0.5 * p, 0.25 * p, p_hom])


def two_parent_transition(n_informative: int) -> np.ndarray:
    """Transition matrix of the 4-state two-parent model.

    A single crossover moves between states that share one parental haplotype (probability ``tp / 2`` each, ``tp = 1 / (n - 1)``); a double crossover changes both (``tp ** 2``).

    Args:
        n_informative (int): Number of informative sites in the chain.

    Returns:
        np.ndarray: A 4x4 row-stochastic matrix.
    """
    if n_informative < 2:
        raise ValueError("two_parent_transition needs at least two informative sites.")
    tp = 1.0 / (n_informative - 1)
    do = tp * tp
    stay = 1.0 - tp - do
    half = tp / 2.0
    return np.array(
        [
            [stay, half, half, do],
            [half, stay, do, half],
            [half, do, stay, half],
            [do, half, half, stay],
        ]
    )


def scale_transitions(
    base: np.ndarray, ratios: np.ndarray, max_switch: float = MAX_SWITCH_PROBABILITY
) -> np.ndarray:
    """Per-step transition matrices for a sequence of gap ratios.

    Off-diagonal terms are multiplied by each ratio; any row whose switching mass then exceeds ``max_switch`` is scaled back to it, and the diagonal takes the remainder.

    Args:
        base (np.ndarray): Row-stochastic ``(S, S)`` matrix.
        ratios (np.ndarray): Gap / average-gap per step, shape ``(n_steps,)``.
        max_switch (float): Cap on total off-diagonal mass per row.

    Returns:
        np.ndarray: Array of shape ``(n_steps, S, S)``.
    """
    n_states = base.shape[0]
    off = base * (1.0 - np.eye(n_states))
    scaled = off[None, :, :] * np.asarray(ratios, dtype=float)[:, None, None]
    row_mass = scaled.sum(axis=2)
    factor = np.where(row_mass > max_switch, max_switch / np.maximum(row_mass, 1e-300), 1.0)
    scaled *= factor[:, :, None]
    diag = 1.0 - scaled.sum(axis=2)
    idx = np.arange(n_states)
    scaled[:, idx, idx] = diag
    return scaled


@dataclass
class HMMModel:
    """Transition, emission and initial probabilities of a discrete HMM.

    Attributes:
        transition (np.ndarray): Base ``(S, S)`` transition matrix.
        emission (np.ndarray): ``(S, O)`` emission matrix.
        initial (np.ndarray): ``(S,)`` initial probabilities.
    """

    transition: np.ndarray
    emission: np.ndarray
    initial: np.ndarray

    def __post_init__(self) -> None:
        self.transition = np.asarray(self.transition, dtype=float)
        self.emission = np.asarray(self.emission, dtype=float)
        self.initial = np.asarray(self.initial, dtype=float)

        n = self.transition.shape[0]
        if self.transition.shape != (n, n):
            raise ValueError(f"transition must be square, got {self.transition.shape}")
        if self.emission.ndim != 2 or self.emission.shape[0] != n:
            raise ValueError(
                f"emission must have {n} rows, got shape {self.emission.shape}"
            )
        if self.initial.shape != (n,):
            raise ValueError(f"initial must have length {n}, got {self.initial.shape}")
        for label, m in (("transition", self.transition), ("emission", self.emission)):
            if not np.allclose(m.sum(axis=1), 1.0, atol=1e-6):
                raise ValueError(f"Each row of the {label} matrix must sum to 1.")
        if not np.isclose(self.initial.sum(), 1.0, atol=1e-6):
            raise ValueError("initial probabilities must sum to 1.")

    @classmethod
    def inbred_hybrid(cls, prob_heterozygous: float = 0.5) -> "HMMModel":
        return cls(
            INBRED_HYBRID_TRANSITION,
            INBRED_HYBRID_EMISSION,
            inbred_hybrid_initial(prob_heterozygous),
        )

    @classmethod
    def two_parent(cls, n_informative: int, emission: np.ndarray) -> "HMMModel":
        """Model for progeny of a known cross, with a flat prior over the four haplotype pairs."""
        return cls(two_parent_transition(n_informative), emission, np.full(4, 0.25))

    @property
    def n_states(self) -> int:
        return self.transition.shape[0]

    def step_transitions(
        self, n_sites: int, positions: Optional[np.ndarray] = None
    ) -> np.ndarray:
        """Transition matrices between consecutive sites, shape ``(n_sites - 1, S, S)``.

        Args:
            n_sites (int): Chain length.
            positions (Optional[np.ndarray]): Physical positions of the chain. When None the base matrix is used for every step.

        Raises:
            ValueError: If positions are not strictly increasing or mismatch ``n_sites``.
        """
        n_steps = max(n_sites - 1, 0)
        if positions is None or n_steps == 0:
            return np.broadcast_to(self.transition, (n_steps,) + self.transition.shape)

        positions = np.asarray(positions, dtype=float)
        if positions.shape != (n_sites,):
            raise ValueError(
                f"Expected {n_sites} positions, got shape {positions.shape}"
            )
        gaps = np.diff(positions)
        if np.any(gaps <= 0):
            raise ValueError("Informative-site positions must be strictly increasing.")

        average_gap = (positions[-1] - positions[0]) / n_sites
        return scale_transitions(self.transition, gaps / average_gap)


def _log(x: np.ndarray) -> np.ndarray:
    with np.errstate(divide="ignore"):
        return np.log(x)


def viterbi(
    observations: np.ndarray,
    model: HMMModel,
    positions: Optional[np.ndarray] = None,
    *,
    reverse: bool = False,
) -> np.ndarray:
    """Most likely state path, decoded in log space.

    With ``reverse=True`` the chain is decoded from its last site to its first and the path is returned in the original site order. Ties resolve to the lowest state index.

    Args:
        observations (np.ndarray): Observation classes per site.
        model (HMMModel): Model to decode with.
        positions (Optional[np.ndarray]): Physical positions for gap scaling.
        reverse (bool): Decode the reversed chain.

    Returns:
        np.ndarray: State index per site.
    """
    obs = np.asarray(observations, dtype=np.intp)
    n = len(obs)
    if n == 0:
        return np.zeros(0, dtype=np.intp)

    steps = model.step_transitions(n, positions)
    if reverse:
        obs = obs[::-1]
        steps = steps[::-1]

    log_a = _log(steps)
    log_b = _log(model.emission)
    n_states = model.n_states
    cols = np.arange(n_states)

    delta = _log(model.initial) + log_b[:, obs[0]]
    back = np.zeros((n, n_states), dtype=np.intp)
    for t in range(1, n):
        scores = delta[:, None] + log_a[t - 1]
        back[t] = np.argmax(scores, axis=0)
        delta = scores[back[t], cols] + log_b[:, obs[t]]

    path = np.empty(n, dtype=np.intp)
    path[-1] = int(np.argmax(delta))
    for t in range(n - 1, 0, -1):
        path[t - 1] = back[t, path[t]]
    return path[::-1].copy() if reverse else path


def rescale_vector(vec: np.ndarray) -> np.ndarray:
    """Multiply by 1e25 when every entry is below 1e-50 and the maximum below 1e-25."""
    if vec.min() < RESCALE_FLOOR and vec.max() < RESCALE_CEILING:
        return vec * RESCALE_FACTOR
    return vec


class ForwardBackward:
    """Posterior state probabilities by the forward-backward algorithm.

    Args:
        observations (np.ndarray): Observation classes per site.
        model (HMMModel): The HMM.
        positions (Optional[np.ndarray]): Physical positions for gap scaling.
    """

    def __init__(
        self,
        observations: np.ndarray,
        model: HMMModel,
        positions: Optional[np.ndarray] = None,
    ) -> None:
        self.observations = np.asarray(observations, dtype=np.intp)
        self.model = model
        self.steps = model.step_transitions(len(self.observations), positions)
        self.alpha: Optional[np.ndarray] = None
        self.beta: Optional[np.ndarray] = None

    def compute_alpha(self) -> np.ndarray:
        obs = self.observations
        emission = self.model.emission
        alpha = np.zeros((len(obs), self.model.n_states))
        if len(obs) == 0:
            self.alpha = alpha
            return alpha

        alpha[0] = rescale_vector(self.model.initial * emission[:, obs[0]])
        for t in range(1, len(obs)):
            alpha[t] = rescale_vector((alpha[t - 1] @ self.steps[t - 1]) * emission[:, obs[t]])
        self.alpha = alpha
        return alpha

    def compute_beta(self) -> np.ndarray:
        obs = self.observations
        emission = self.model.emission
        beta = np.zeros((len(obs), self.model.n_states))
        if len(obs) == 0:
            self.beta = beta
            return beta

        beta[-1] = 1.0
        for t in range(len(obs) - 2, -1, -1):
            beta[t] = rescale_vector(self.steps[t] @ (emission[:, obs[t + 1]] * beta[t + 1]))
        self.beta = beta
        return beta

    def gamma(self) -> np.ndarray:
        """Normalised posterior ``alpha * beta`` per site, shape ``(n_sites, S)``."""
        alpha = self.alpha if self.alpha is not None else self.compute_alpha()
        beta = self.beta if self.beta is not None else self.compute_beta()
        joint = alpha * beta
        totals = joint.sum(axis=1, keepdims=True)
        with np.errstate(invalid="ignore", divide="ignore"):
            return joint / totals
