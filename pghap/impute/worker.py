"""Per-sample imputation cascade.

For each donor panel the worker tries, in order, to explain the whole panel with one donor or a phased donor pair, then falls back to one 64-site focus block at a time: single donor, phased pair, unphased pair ("smash"). Each attempt produces a tagged outcome that a single merge routine writes into the sample's output buffer.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field, fields
from typing import ClassVar, List, Optional, Sequence, Tuple, Union

import numpy as np

from pghap.data_processing.containers import ImputeConfig
from pghap.data_processing.donors import DonorPanel
from pghap.data_processing.genotypes import MISSING, GenotypeMatrix
from pghap.impute.bitsets import WORD_BITS, DistanceTable, arrange_target_bits
from pghap.impute.hmm import HMMModel
from pghap.impute.hypotheses import (
    TOP_DONORS_FOR_PAIRING,
    DonorHypothesis,
    best_donors_across_region,
    best_hybrid_donors,
    best_inbred_donors,
    block_window_with_min_minor_count,
    combine_hypotheses,
    most_frequent_donors,
    unique_donors,
)
from pghap.impute.phasing import FORWARD, ViterbiPhaseResolver
from pghap.utils.accuracy import AccuracyTally


class SolveStage(enum.Enum):
    UNSOLVED = "unsolved"
    SEGMENT_SOLVED = "segment_solved"
    INBRED_SOLVED = "inbred_solved"
    VITERBI_SOLVED = "viterbi_solved"
    HYBRID_SMASH_SOLVED = "hybrid_smash_solved"
    UNSOLVED_FINAL = "unsolved_final"


# ---- Outcomes ---- #
@dataclass(frozen=True)
class _Outcome:
    """Accepted hypotheses, best first, for a whole panel (``focus_block=None``) or one focus block."""

    hypotheses: Tuple[DonorHypothesis, ...] = ()
    focus_block: Optional[int] = None

    stage: ClassVar[SolveStage] = SolveStage.UNSOLVED
    smash: ClassVar[bool] = False


@dataclass(frozen=True)
class Unsolved(_Outcome):
    stage: ClassVar[SolveStage] = SolveStage.UNSOLVED_FINAL


@dataclass(frozen=True)
class SegmentSolved(_Outcome):
    stage: ClassVar[SolveStage] = SolveStage.SEGMENT_SOLVED


@dataclass(frozen=True)
class InbredSolved(_Outcome):
    stage: ClassVar[SolveStage] = SolveStage.INBRED_SOLVED


@dataclass(frozen=True)
class ViterbiSolved(_Outcome):
    stage: ClassVar[SolveStage] = SolveStage.VITERBI_SOLVED


@dataclass(frozen=True)
class HybridSolved(_Outcome):
    stage: ClassVar[SolveStage] = SolveStage.HYBRID_SMASH_SOLVED
    smash: ClassVar[bool] = True


Outcome = Union[Unsolved, SegmentSolved, InbredSolved, ViterbiSolved, HybridSolved]


# ---- Per-sample state ---- #
@dataclass(frozen=True)
class DonorInterval:
    """A stretch of sites explained by one donor pair."""

    chromosome: str
    start_pos: int
    end_pos: int
    donor1: str
    donor2: str


@dataclass
class StageCounts:
    """How many panels and focus blocks each cascade stage solved."""

    segments_solved: int = 0
    inbred_blocks: int = 0
    viterbi_blocks: int = 0
    smash_blocks: int = 0
    unsolved_blocks: int = 0

    def __add__(self, other: "StageCounts") -> "StageCounts":
        if not isinstance(other, StageCounts):
            return NotImplemented
        return StageCounts(
            *(getattr(self, f.name) + getattr(other, f.name) for f in fields(self))
        )

    def __radd__(self, other):
        if other == 0:
            return self
        return self.__add__(other)

    @property
    def blocks_solved(self) -> int:
        return self.inbred_blocks + self.viterbi_blocks + self.smash_blocks

    def record(self, outcome: _Outcome) -> None:
        if outcome.stage is SolveStage.SEGMENT_SOLVED:
            self.segments_solved += 1
        elif outcome.stage is SolveStage.INBRED_SOLVED:
            self.inbred_blocks += 1
        elif outcome.stage is SolveStage.VITERBI_SOLVED:
            self.viterbi_blocks += 1
        elif outcome.stage is SolveStage.HYBRID_SMASH_SOLVED:
            self.smash_blocks += 1
        else:
            self.unsolved_blocks += 1

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class ImputedSample:
    """Output buffer of one target sample, owned by a single worker.

    Attributes:
        taxon (str): Sample name.
        original (np.ndarray): Calls as given.
        imputed_estimate (np.ndarray): Raw donor estimate per site from the accepted solution that covered it, -1 where none did.
        resolved_genotype (np.ndarray): Calls after merging donor estimates into the original calls.
        change_history (np.ndarray): ``±(rank + 1)`` of the hypothesis that set each changed site; negative for reverse-decoded calls.
        stage_counts (StageCounts): Cascade tallies.
        breakpoints (List[DonorInterval]): Donor intervals in site order.
    """

    taxon: str
    original: np.ndarray
    imputed_estimate: np.ndarray
    resolved_genotype: np.ndarray
    change_history: np.ndarray
    stage_counts: StageCounts = field(default_factory=StageCounts)
    breakpoints: List[DonorInterval] = field(default_factory=list)

    @classmethod
    def start(cls, taxon: str, calls: np.ndarray) -> "ImputedSample":
        calls = np.asarray(calls, dtype=np.int8)
        return cls(
            taxon,
            calls.copy(),
            np.full(len(calls), MISSING, dtype=np.int8),
            calls.copy(),
            np.zeros(len(calls), dtype=np.int16),
        )

    @property
    def segment_solved(self) -> bool:
        return self.stage_counts.segments_solved > 0

    @property
    def blocks_solved(self) -> int:
        return self.stage_counts.blocks_solved

    def add_interval(self, interval: DonorInterval) -> None:
        """Append an interval, extending the last one when the chromosome and donors match."""
        if self.breakpoints:
            last = self.breakpoints[-1]
            if (last.chromosome, last.donor1, last.donor2) == (
                interval.chromosome,
                interval.donor1,
                interval.donor2,
            ):
                self.breakpoints[-1] = DonorInterval(
                    last.chromosome,
                    last.start_pos,
                    max(last.end_pos, interval.end_pos),
                    last.donor1,
                    last.donor2,
                )
                return
        self.breakpoints.append(interval)


# ---- Merge rule ---- #
def combine_donor_calls(donor1: np.ndarray, donor2: np.ndarray) -> np.ndarray:
    """Unphased estimate from two donor calls.

    Equal homozygous calls give that call, opposite homozygous calls give a heterozygote, a single missing donor defers to the other's homozygous call, and a heterozygous donor gives missing.
    """
    d1 = np.asarray(donor1)
    d2 = np.asarray(donor2)
    hom1 = (d1 == 0) | (d1 == 2)
    hom2 = (d2 == 0) | (d2 == 2)

    out = np.full(d1.shape, MISSING, dtype=np.int8)
    out[hom1 & hom2 & (d1 == d2)] = d1[hom1 & hom2 & (d1 == d2)]
    out[hom1 & hom2 & (d1 != d2)] = 1
    only2 = (d1 < 0) & hom2
    only1 = (d2 < 0) & hom1
    out[only2] = d2[only2]
    out[only1] = d1[only1]
    return out


def merge_calls(
    known: np.ndarray,
    estimate: np.ndarray,
    *,
    smash: bool = False,
    hets_to_missing: bool = False,
    resolve_het: bool = False,
) -> np.ndarray:
    """Write donor estimates into known calls.

    Missing calls adopt a homozygous estimate. They adopt a heterozygous estimate too, unless the estimate comes from an unphased smash solution for a homozygous-like taxon. With ``resolve_het`` a known homozygote is upgraded when a phased estimate is heterozygous. Every other known call is unchanged, so merging a result again is a no-op.

    Args:
        known (np.ndarray): Current calls.
        estimate (np.ndarray): Donor estimate per site; negative means none.
        smash (bool): The estimate comes from an unphased pair.
        hets_to_missing (bool): The taxon is homozygous-like.
        resolve_het (bool): Upgrade undercalled heterozygotes.

    Returns:
        np.ndarray: Merged calls.
    """
    known = np.asarray(known)
    estimate = np.asarray(estimate)
    out = known.copy()

    missing = known < 0
    est_hom = (estimate == 0) | (estimate == 2)
    est_het = estimate == 1

    fill = missing & est_hom
    out[fill] = estimate[fill]
    if not (smash and hets_to_missing):
        out[missing & est_het] = 1
    if resolve_het and not smash:
        out[((known == 0) | (known == 2)) & est_het] = 1
    return out


def donor_estimates(
    hypotheses: Sequence[DonorHypothesis],
    donor_calls: np.ndarray,
    sites: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray]:
    """Donor estimate per site from the first hypothesis, in rank order, that gives one.

    Args:
        hypotheses (Sequence[DonorHypothesis]): Accepted hypotheses, best first.
        donor_calls (np.ndarray): Panel calls in target polarity, shape ``(n_donors, n_sites)``.
        sites (np.ndarray): Panel site indices to estimate.

    Returns:
        Tuple[np.ndarray, np.ndarray]: Estimates (-1 where none) and the signed ``rank + 1`` of the hypothesis used (0 where none).
    """
    sites = np.asarray(sites, dtype=np.intp)
    estimate = np.full(len(sites), MISSING, dtype=np.int8)
    history = np.zeros(len(sites), dtype=np.int16)

    for rank, h in enumerate(hypotheses):
        todo = np.flatnonzero(estimate < 0)
        if len(todo) == 0:
            break
        s = sites[todo]
        d1 = donor_calls[h.donor1, s]
        d2 = donor_calls[h.donor2, s]
        cand = combine_donor_calls(d1, d2)
        source = np.full(len(s), FORWARD, dtype=np.int16)

        if h.phased_results is not None:
            phase = h.phases_for_sites(s)
            if h.phase_sources is not None:
                idx = s - h.start_block * WORD_BITS
                inside = (idx >= 0) & (idx < len(h.phase_sources))
                clipped = np.clip(idx, 0, len(h.phase_sources) - 1)
                source = np.where(inside, h.phase_sources[clipped], FORWARD).astype(np.int16)
            cand = np.where(phase == 0, d1, cand)
            cand = np.where(phase == 2, d2, cand)

        got = cand >= 0
        estimate[todo[got]] = cand[got]
        history[todo[got]] = (rank + 1) * source[got]
    return estimate, history


def phased_error_rate(
    hypothesis: DonorHypothesis,
    target_calls: np.ndarray,
    donor_calls: np.ndarray,
    sites: np.ndarray,
) -> float:
    """Proportion of compared sites where the phased estimate differs from the observed call (1.0 if none compared)."""
    estimate, _ = donor_estimates([hypothesis], donor_calls, sites)
    observed = np.asarray(target_calls)[sites]
    compared = (estimate >= 0) & (observed >= 0)
    n = int(np.count_nonzero(compared))
    if n == 0:
        return 1.0
    return float(np.count_nonzero(estimate[compared] != observed[compared])) / n


def apply_outcome(
    sample: ImputedSample,
    outcome: _Outcome,
    panel: DonorPanel,
    *,
    hets_to_missing: bool,
    resolve_het: bool = False,
    record_breakpoints: bool = True,
) -> None:
    """Merge an outcome into the sample buffer.

    Whole-panel outcomes write every panel site; block outcomes write only the focus block's sites.
    """
    sample.stage_counts.record(outcome)
    if not outcome.hypotheses:
        return

    if outcome.focus_block is None:
        sites = np.arange(panel.n_sites)
    else:
        lo = outcome.focus_block * WORD_BITS
        sites = np.arange(lo, min(lo + WORD_BITS, panel.n_sites))

    estimate, history = donor_estimates(outcome.hypotheses, panel.aligned_calls, sites)

    target_sites = panel.offset + sites
    known = sample.resolved_genotype[target_sites]
    merged = merge_calls(
        known,
        estimate,
        smash=outcome.smash,
        hets_to_missing=hets_to_missing,
        resolve_het=resolve_het,
    )
    changed = merged != known
    sample.resolved_genotype[target_sites] = merged
    sample.change_history[target_sites[changed]] = history[changed]
    got = estimate >= 0
    sample.imputed_estimate[target_sites[got]] = estimate[got]

    if record_breakpoints:
        for interval in lead_intervals(outcome.hypotheses[0], panel, sites):
            sample.add_interval(interval)


def lead_intervals(
    lead: DonorHypothesis, panel: DonorPanel, sites: np.ndarray
) -> List[DonorInterval]:
    """Donor intervals of the leading hypothesis over consecutive panel sites.

    A new interval starts wherever the donors carried at a site change, i.e. at every phase switch of a phased pair.
    """
    phase = lead.phases_for_sites(sites)
    starts = np.concatenate([[0], np.flatnonzero(np.diff(phase)) + 1])
    ends = np.concatenate([starts[1:] - 1, [len(sites) - 1]])
    names = panel.donor_names

    out = []
    for lo, hi in zip(starts, ends):
        d1, d2 = lead.donors_for_phase(int(phase[lo]))
        out.append(
            DonorInterval(
                panel.chromosome,
                int(panel.positions[sites[lo]]),
                int(panel.positions[sites[hi]]),
                names[d1],
                names[d2],
            )
        )
    return out


@dataclass
class TaxonResult:
    """What a worker returns for one sample."""

    taxon_index: int
    taxon: str
    calls: np.ndarray
    change_history: np.ndarray
    stage_counts: StageCounts
    breakpoints: List[DonorInterval]
    heterozygous_like: bool = False
    skipped: bool = False
    failed: bool = False
    accuracy: Optional[AccuracyTally] = None

    @classmethod
    def unresolved(
        cls, taxon_index: int, taxon: str, calls: np.ndarray, *, failed: bool = True
    ) -> "TaxonResult":
        calls = np.asarray(calls, dtype=np.int8).copy()
        return cls(
            taxon_index,
            taxon,
            calls,
            np.zeros(len(calls), dtype=np.int16),
            StageCounts(),
            [],
            failed=failed,
        )

    @property
    def proportion_missing(self) -> float:
        return float(np.mean(self.calls < 0)) if len(self.calls) else 0.0

    @property
    def proportion_het(self) -> float:
        return float(np.mean(self.calls == 1)) if len(self.calls) else 0.0

    def summary_line(self) -> str:
        c = self.stage_counts
        line = (
            f"{self.taxon}\tsegments={c.segments_solved}\tinbred={c.inbred_blocks}"
            f"\tviterbi={c.viterbi_blocks}\tsmash={c.smash_blocks}"
            f"\tunsolved={c.unsolved_blocks}\tmissing={self.proportion_missing:.4f}"
            f"\thet={self.proportion_het:.4f}\tbreakpoints={len(self.breakpoints)}"
        )
        if self.accuracy is not None:
            line += f"\terror={self.accuracy.error_rate():.4f}"
        return line


# ---- Worker ---- #
class TaxonImputationWorker:
    """Runs the imputation cascade for one target sample at a time.

    The target matrix, donor panels and config are read-only and shared by every sample the worker handles.

    Args:
        target (GenotypeMatrix): Target genotypes (possibly with masked calls).
        panels (Sequence[DonorPanel]): Aligned donor panels.
        config (ImputeConfig): Run configuration.
        logger (Optional[logging.Logger]): Logger.
    """

    def __init__(
        self,
        target: GenotypeMatrix,
        panels: Sequence[DonorPanel],
        config: ImputeConfig,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.target = target
        self.panels = list(panels)
        self.config = config
        self.logger = logger or logging.getLogger(__name__)

        self.resolver = ViterbiPhaseResolver(
            HMMModel.inbred_hybrid(config.hmm.prob_heterozygous),
            min_informative_sites=config.hmm.min_informative_sites,
            max_non_mendelian_rate=config.hmm.non_mendelian_factor
            * config.search.maximum_inbred_error,
            bidirectional=config.hmm.bidirectional_viterbi,
            logger=self.logger,
        )

    def run(self, taxon_index: int, truth: Optional[np.ndarray] = None) -> TaxonResult:
        """Impute one sample.

        Args:
            taxon_index (int): Row of the target matrix.
            truth (Optional[np.ndarray]): Unmasked calls of this sample; when given, masked sites are scored.

        Returns:
            TaxonResult: Imputed calls and statistics.
        """
        search = self.config.search
        name = self.target.taxa[taxon_index]
        calls = self.target.genotypes[taxon_index]
        sample = ImputedSample.start(name, calls)

        non_missing = self.target.non_missing_count(taxon_index)
        if non_missing <= search.min_test_sites:
            self.logger.debug(
                f"Skipping {name}: {non_missing} called sites (need more than "
                f"{search.min_test_sites})."
            )
            result = self._result(taxon_index, sample, False, truth)
            result.skipped = True
            return result

        het_like = (
            self.target.heterozygous_count(taxon_index) / non_missing
            >= search.het_threshold
        )
        major, minor = self.target.allele_presence()
        for panel in self.panels:
            self._impute_panel(
                taxon_index, sample, panel, major[taxon_index], minor[taxon_index], het_like
            )

        result = self._result(taxon_index, sample, het_like, truth)
        self.logger.debug(result.summary_line())
        return result

    def _result(
        self,
        taxon_index: int,
        sample: ImputedSample,
        het_like: bool,
        truth: Optional[np.ndarray],
    ) -> TaxonResult:
        tally = None
        if truth is not None:
            masked = (np.asarray(truth) >= 0) & (sample.original < 0)
            tally = AccuracyTally().update(truth, sample.resolved_genotype, masked)
        return TaxonResult(
            taxon_index,
            sample.taxon,
            sample.resolved_genotype,
            sample.change_history,
            sample.stage_counts,
            sample.breakpoints,
            heterozygous_like=het_like,
            accuracy=tally,
        )

    def _impute_panel(
        self,
        taxon_index: int,
        sample: ImputedSample,
        panel: DonorPanel,
        target_major: np.ndarray,
        target_minor: np.ndarray,
        het_like: bool,
    ) -> None:
        search = self.config.search
        tm, tn = arrange_target_bits(
            target_major,
            target_minor,
            panel.offset,
            panel.n_sites,
            panel.masks.good_words,
            panel.masks.swap_words,
            swap_major_minor=self.config.donors.swap_major_minor,
        )
        exclude = [sample.taxon] if self.config.donors.impute_donor_file else []
        donors = panel.donor_indices(exclude)
        if not donors:
            self.logger.debug(f"No donors left in panel {panel.label} for {sample.taxon}.")
            return

        d_major, d_minor = panel.presence()
        table = DistanceTable.build(tm, tn, d_major, d_minor)
        windows = [
            block_window_with_min_minor_count(
                tm, tn, b, search.min_minor_count, search.min_major_ratio
            )
            for b in range(panel.n_blocks)
        ]
        region = [
            best_inbred_donors(
                table,
                taxon_index,
                donors,
                *w,
                min_test_sites=search.min_test_sites,
                max_hypotheses=search.max_donor_hypotheses,
            )
            if w is not None
            else []
            for w in windows
        ]

        target_calls = sample.original[panel.target_sites]
        ctx = _PanelContext(taxon_index, panel, tm, tn, d_major, d_minor, donors, target_calls)

        def merge(outcome: _Outcome) -> None:
            apply_outcome(
                sample,
                outcome,
                panel,
                hets_to_missing=not het_like,
                resolve_het=self.config.merge.resolve_het_if_undercalled,
                record_breakpoints=self.config.merge.record_breakpoints,
            )

        if search.enable_hybrid_search:
            outcome = self._solve_segment(ctx, table, region)
            if outcome is not None:
                self.logger.debug(
                    f"{sample.taxon}: panel {panel.label} solved as one segment by "
                    f"{len(outcome.hypotheses)} hypotheses."
                )
                merge(outcome)
                return

        for b in range(panel.n_blocks):
            merge(self._solve_block(ctx, b, windows[b], region[b]))

    def _solve_segment(
        self,
        ctx: "_PanelContext",
        table: DistanceTable,
        region: List[List[DonorHypothesis]],
    ) -> Optional[SegmentSolved]:
        search = self.config.search
        k = search.max_donor_hypotheses

        candidates = most_frequent_donors(region, k)
        if not candidates:
            candidates = best_donors_across_region(
                table,
                ctx.taxon_index,
                ctx.donors,
                min_test_sites=search.min_test_sites,
                max_hypotheses=k,
            )
        if not candidates:
            return None

        last = ctx.panel.n_blocks - 1
        kwargs = dict(
            min_test_sites=search.min_test_sites,
            max_hypotheses=k,
            allow_self_pair=True,
            min_donor_distance=search.maximum_inbred_error,
        )
        top_vs_all = ctx.hybrid(candidates[:TOP_DONORS_FOR_PAIRING], ctx.donors, 0, 0, last, **kwargs)
        among = ctx.hybrid(candidates, candidates, 0, 0, last, **kwargs)

        accepted: List[DonorHypothesis] = []
        for h in combine_hypotheses(k, top_vs_all, among):
            if h.is_inbred:
                if h.error_rate < search.maximum_inbred_error:
                    accepted.append(h)
            elif h.error_rate < search.max_hybrid_error_rate:
                phased = self.resolver.resolve(
                    h, ctx.target_calls, ctx.panel.aligned_calls, ctx.panel.positions
                )
                if phased is not None:
                    accepted.append(phased)

        return SegmentSolved(tuple(accepted)) if accepted else None

    def _solve_block(
        self,
        ctx: "_PanelContext",
        block: int,
        window: Optional[Tuple[int, int, int]],
        hypotheses: List[DonorHypothesis],
    ) -> _Outcome:
        search = self.config.search
        if window is None:
            return Unsolved(focus_block=block)

        if search.enable_inbred_search:
            inbred = [h for h in hypotheses if h.error_rate < search.maximum_inbred_error]
            if inbred:
                return InbredSolved(tuple(inbred), block)

        donors = unique_donors(hypotheses)
        pairs = ctx.hybrid(
            donors,
            donors,
            *window,
            min_test_sites=search.min_test_sites,
            max_hypotheses=search.max_donor_hypotheses,
            allow_self_pair=False,
        )

        if search.enable_hybrid_search:
            lo = block * WORD_BITS
            focus_sites = np.arange(lo, min(lo + WORD_BITS, ctx.panel.n_sites))
            phased_ok: List[DonorHypothesis] = []
            for h in pairs:
                if h.error_rate >= search.max_error_rate_for_focus_viterbi:
                    continue
                phased = self.resolver.resolve(
                    h, ctx.target_calls, ctx.panel.aligned_calls, ctx.panel.positions
                )
                if phased is None:
                    continue
                err = phased_error_rate(
                    phased, ctx.target_calls, ctx.panel.aligned_calls, focus_sites
                )
                if err < search.max_error_rate_for_focus_viterbi:
                    phased_ok.append(phased)
            if phased_ok:
                return ViterbiSolved(tuple(phased_ok), block)

        if search.smash_mode:
            smash = [h for h in pairs if h.error_rate < search.max_hybrid_error_rate]
            if smash:
                return HybridSolved(tuple(smash), block)

        return Unsolved(focus_block=block)


@dataclass
class _PanelContext:
    """Target and donor words of one sample against one panel."""

    taxon_index: int
    panel: DonorPanel
    target_major: np.ndarray
    target_minor: np.ndarray
    donor_major: np.ndarray
    donor_minor: np.ndarray
    donors: List[int]
    target_calls: np.ndarray

    def hybrid(
        self,
        donor1_set: Sequence[int],
        donor2_set: Sequence[int],
        start_block: int,
        focus_block: int,
        end_block: int,
        **kwargs,
    ) -> List[DonorHypothesis]:
        return best_hybrid_donors(
            self.target_major,
            self.target_minor,
            self.donor_major,
            self.donor_minor,
            self.taxon_index,
            donor1_set,
            donor2_set,
            start_block,
            focus_block,
            end_block,
            **kwargs,
        )
