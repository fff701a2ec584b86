from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from pghap.impute.hmm import ForwardBackward, HMMModel, viterbi
from pghap.impute.hypotheses import DonorHypothesis

# Source tags for reconciled calls.
FORWARD = 1
REVERSE = -1


class RejectReason(enum.Enum):
    """Why a donor pair could not be phased."""

    INSUFFICIENT_INFORMATIVE_SITES = "insufficient_informative_sites"
    EXCESSIVE_NON_MENDELIAN_RATE = "excessive_non_mendelian_rate"


@dataclass
class InformativeChain:
    """Sites of a hypothesis range where the two donors can be told apart.

    Attributes:
        sites (np.ndarray): Offsets of informative sites inside the range.
        observations (np.ndarray): 0 = target matches donor1, 2 = matches donor2, 1 = otherwise.
        n_agreeing (int): Called sites where both donors carry the same homozygous call.
        non_mendelian (int): Agreeing sites where the target differs from the donors.
    """

    sites: np.ndarray
    observations: np.ndarray
    n_agreeing: int
    non_mendelian: int

    @property
    def n_informative(self) -> int:
        return len(self.sites)

    @property
    def non_mendelian_rate(self) -> float:
        if self.n_agreeing == 0:
            return 0.0
        return self.non_mendelian / self.n_agreeing


def informative_chain(
    target: np.ndarray, donor1: np.ndarray, donor2: np.ndarray
) -> InformativeChain:
    """Build the informative-site chain over aligned 0/1/2 call vectors.

    Sites with a missing call or a heterozygous donor are skipped.

    Args:
        target (np.ndarray): Target calls over the hypothesis range.
        donor1 (np.ndarray): Donor1 calls over the same range.
        donor2 (np.ndarray): Donor2 calls over the same range.

    Returns:
        InformativeChain: The chain and the non-Mendelian tally.
    """
    target = np.asarray(target)
    donor1 = np.asarray(donor1)
    donor2 = np.asarray(donor2)

    usable = (target >= 0) & (donor1 >= 0) & (donor2 >= 0)
    usable &= (donor1 != 1) & (donor2 != 1)

    agree = usable & (donor1 == donor2)
    non_mendel = int(np.count_nonzero(agree & (target != donor1)))

    sites = np.flatnonzero(usable & (donor1 != donor2))
    t = target[sites]
    obs = np.ones(len(sites), dtype=np.intp)
    obs[t == donor1[sites]] = 0
    obs[t == donor2[sites]] = 2
    return InformativeChain(sites, obs, int(np.count_nonzero(agree)), non_mendel)


def states_to_calls(states: np.ndarray) -> np.ndarray:
    """Map 5-state HMM states to phase classes: {0,1,2,3,4} -> {0,1,1,1,2}."""
    states = np.asarray(states)
    return np.where(states == 1, 1, states // 2).astype(np.int8)


def reconcile_paths(
    forward: np.ndarray, reverse: np.ndarray
) -> Tuple[np.ndarray, np.ndarray]:
    """Merge forward and reverse Viterbi calls.

    Where they disagree in the first half of the chain the reverse call is taken, everywhere else the forward call.

    Returns:
        Tuple[np.ndarray, np.ndarray]: The merged calls and a +1/-1 source per site.
    """
    forward = np.asarray(forward)
    reverse = np.asarray(reverse)
    first_half = np.arange(len(forward)) < len(forward) // 2
    use_reverse = (forward != reverse) & first_half
    calls = np.where(use_reverse, reverse, forward)
    sources = np.where(use_reverse, REVERSE, FORWARD).astype(np.int8)
    return calls, sources


def expand_to_sites(values: np.ndarray, sites: np.ndarray, n_sites: int) -> np.ndarray:
    """Carry per-informative-site values to every site of a range.

    Site ``s`` takes the value of the first informative site at or after ``s - 1``, so a switch between informative sites ``a < b`` takes effect at ``a + 2``, one site late. Sites past the last informative site take the last value.
    """
    values = np.asarray(values)
    idx = np.searchsorted(sites, np.arange(n_sites) - 1, side="left")
    return values[np.clip(idx, 0, len(values) - 1)]


class ViterbiPhaseResolver:
    """Phase a target over a two-donor hypothesis with the 5-state HMM.

    Args:
        model (Optional[HMMModel]): HMM to decode with. Defaults to the inbred/hybrid model with a 0.5 heterozygous prior.
        min_informative_sites (int): Minimum chain length.
        max_non_mendelian_rate (float): Maximum non-Mendelian rate among agreeing-donor sites.
        bidirectional (bool): Also decode in reverse and reconcile.
        logger (Optional[logging.Logger]): Logger for rejections.
    """

    def __init__(
        self,
        model: Optional[HMMModel] = None,
        *,
        min_informative_sites: int = 10,
        max_non_mendelian_rate: float = 0.05,
        bidirectional: bool = True,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.model = model if model is not None else HMMModel.inbred_hybrid()
        self.min_informative_sites = min_informative_sites
        self.max_non_mendelian_rate = max_non_mendelian_rate
        self.bidirectional = bidirectional
        self.logger = logger or logging.getLogger(__name__)

    def _chain(
        self,
        hypothesis: DonorHypothesis,
        target_calls: np.ndarray,
        donor_calls: np.ndarray,
    ) -> Tuple[Optional[InformativeChain], int, int]:
        start, end = hypothesis.site_range(len(target_calls))
        window = slice(start, end + 1)
        chain = informative_chain(
            target_calls[window],
            donor_calls[hypothesis.donor1, window],
            donor_calls[hypothesis.donor2, window],
        )

        reason = None
        if chain.n_informative < self.min_informative_sites:
            reason = RejectReason.INSUFFICIENT_INFORMATIVE_SITES
        elif chain.non_mendelian_rate > self.max_non_mendelian_rate:
            reason = RejectReason.EXCESSIVE_NON_MENDELIAN_RATE

        if reason is not None:
            self.logger.debug(
                f"Rejected donors ({hypothesis.donor1}, {hypothesis.donor2}) for "
                f"taxon {hypothesis.target_taxon}, blocks "
                f"{hypothesis.start_block}-{hypothesis.end_block}: {reason.value} "
                f"(informative={chain.n_informative}, "
                f"non_mendelian={chain.non_mendelian}/{chain.n_agreeing})"
            )
            return None, start, end
        return chain, start, end

    def resolve(
        self,
        hypothesis: DonorHypothesis,
        target_calls: np.ndarray,
        donor_calls: np.ndarray,
        positions: np.ndarray,
    ) -> Optional[DonorHypothesis]:
        """Decode the phase of ``hypothesis`` over its site range.

        Args:
            hypothesis (DonorHypothesis): A two-donor hypothesis.
            target_calls (np.ndarray): Target 0/1/2 calls in panel coordinates and polarity.
            donor_calls (np.ndarray): Panel calls, shape ``(n_donors, n_sites)``.
            positions (np.ndarray): Physical positions of panel sites.

        Returns:
            Optional[DonorHypothesis]: A copy carrying ``phased_results`` and ``phase_sources`` over the hypothesis range, or None when the pair is rejected.
        """
        chain, start, end = self._chain(hypothesis, target_calls, donor_calls)
        if chain is None:
            return None

        chain_pos = np.asarray(positions)[start + chain.sites]
        forward = states_to_calls(viterbi(chain.observations, self.model, chain_pos))
        if self.bidirectional:
            backward = states_to_calls(
                viterbi(chain.observations, self.model, chain_pos, reverse=True)
            )
            calls, sources = reconcile_paths(forward, backward)
        else:
            calls = forward
            sources = np.full(len(forward), FORWARD, dtype=np.int8)

        n_range = end - start + 1
        return hypothesis.with_phase(
            expand_to_sites(calls, chain.sites, n_range),
            expand_to_sites(sources, chain.sites, n_range),
        )

    def posteriors(
        self,
        hypothesis: DonorHypothesis,
        target_calls: np.ndarray,
        donor_calls: np.ndarray,
        positions: np.ndarray,
    ) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        """Posterior state probabilities at the informative sites of a hypothesis.

        Returns:
            Optional[Tuple[np.ndarray, np.ndarray]]: Panel site indices of the chain and the ``(n_informative, n_states)`` posteriors, or None when the pair is rejected.
        """
        chain, start, _ = self._chain(hypothesis, target_calls, donor_calls)
        if chain is None:
            return None
        sites = start + chain.sites
        fb = ForwardBackward(chain.observations, self.model, np.asarray(positions)[sites])
        return sites, fb.gamma()
