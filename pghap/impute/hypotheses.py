from __future__ import annotations

import dataclasses
import heapq
import itertools
from collections import Counter
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np

from pghap.impute.bitsets import (
    WORD_BITS,
    DistanceTable,
    hybrid_mendel_errors,
    popcount,
)


# Number of best whole-region donors paired against every donor.
TOP_DONORS_FOR_PAIRING = 5


@dataclass
class DonorHypothesis:
    """A candidate explanation of a target window by one or two donors.

    Block indices are in donor-panel coordinates (64-site blocks). ``donor1 == donor2`` is an inbred hypothesis.

    Attributes:
        target_taxon (int): Row index of the target sample.
        donor1 (int): First donor row in the panel.
        donor2 (int): Second donor row in the panel.
        start_block (int): First tested block.
        focus_block (int): Block the hypothesis was ranked for.
        end_block (int): Last tested block (inclusive).
        tested_sites (int): Sites compared.
        mendelian_errors (float): Errors among tested sites. Inbred hypotheses count a heterozygous-only agreement as half an error.
        phased_results (np.ndarray | None): Per-site phase classes over the hypothesis range (0 = donor1, 1 = both, 2 = donor2), set by the phase resolver.
        phase_sources (np.ndarray | None): Per-site +1/-1 marking calls taken from the forward or reverse decode.
    """

    target_taxon: int
    donor1: int
    donor2: int
    start_block: int
    focus_block: int
    end_block: int
    tested_sites: int = 0
    mendelian_errors: float = 0.0
    phased_results: Optional[np.ndarray] = None
    phase_sources: Optional[np.ndarray] = None

    @property
    def error_rate(self) -> float:
        if self.tested_sites <= 0:
            return 1.0
        return min(1.0, max(0.0, self.mendelian_errors / self.tested_sites))

    @property
    def is_inbred(self) -> bool:
        return self.donor1 == self.donor2

    @property
    def donor_pair(self) -> Tuple[int, int]:
        return (min(self.donor1, self.donor2), max(self.donor1, self.donor2))

    def site_range(self, n_sites: int) -> Tuple[int, int]:
        """Inclusive panel site range covered by the tested blocks."""
        start = self.start_block * WORD_BITS
        end = min(self.end_block * WORD_BITS + WORD_BITS - 1, n_sites - 1)
        return start, end

    def focus_site_range(self, n_sites: int) -> Tuple[int, int]:
        start = self.focus_block * WORD_BITS
        return start, min(start + WORD_BITS - 1, n_sites - 1)

    def phase_for_site(self, site: int) -> int:
        """Phase class at a panel site; 1 (both donors) when unphased or out of range."""
        if self.phased_results is None:
            return 1
        idx = site - self.start_block * WORD_BITS
        if idx < 0 or idx >= len(self.phased_results):
            return 1
        return int(self.phased_results[idx])

    def phases_for_sites(self, sites: np.ndarray) -> np.ndarray:
        """Vectorised :meth:`phase_for_site`."""
        sites = np.asarray(sites, dtype=np.intp)
        if self.phased_results is None:
            return np.ones(len(sites), dtype=np.int8)
        idx = sites - self.start_block * WORD_BITS
        inside = (idx >= 0) & (idx < len(self.phased_results))
        clipped = np.clip(idx, 0, len(self.phased_results) - 1)
        return np.where(inside, self.phased_results[clipped], 1).astype(np.int8)

    def donors_for_phase(self, phase: int) -> Tuple[int, int]:
        """Donor pair carried at a site of the given phase class."""
        if phase == 0:
            return self.donor1, self.donor1
        if phase == 2:
            return self.donor2, self.donor2
        return self.donor1, self.donor2

    def with_phase(
        self, phased_results: np.ndarray, phase_sources: np.ndarray
    ) -> "DonorHypothesis":
        return dataclasses.replace(
            self, phased_results=phased_results, phase_sources=phase_sources
        )


class BoundedHypothesisHeap:
    """Keep the K best hypotheses by ``(error_rate, insertion order)``.

    The worst retained hypothesis sits at the top of a max-heap so a better newcomer replaces it in O(log K). Earlier insertions win ties.
    """

    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = int(capacity)
        self._heap: List[Tuple[float, int, DonorHypothesis]] = []
        self._order = itertools.count()

    def __len__(self) -> int:
        return len(self._heap)

    def push(self, hypothesis: DonorHypothesis) -> bool:
        """Offer a hypothesis; return True if it was retained."""
        entry = (-hypothesis.error_rate, -next(self._order), hypothesis)
        if len(self._heap) < self.capacity:
            heapq.heappush(self._heap, entry)
            return True
        if entry[:2] > self._heap[0][:2]:
            heapq.heapreplace(self._heap, entry)
            return True
        return False

    def results(self) -> List[DonorHypothesis]:
        """Retained hypotheses, best first."""
        return [e[2] for e in sorted(self._heap, key=lambda e: (-e[0], -e[1]))]


def block_window_with_min_minor_count(
    major: np.ndarray,
    minor: np.ndarray,
    focus_block: int,
    min_minor_count: int,
    min_major_ratio: int = 10,
) -> Optional[Tuple[int, int, int]]:
    """Widen a window around a focus block until it holds enough allele information.

    The window grows one block at a time, on the side that is currently shorter (right first on ties), until the minor-allele bit count reaches ``min_minor_count`` or the major-allele bit count reaches ``min_major_ratio * min_minor_count``, or it spans every block.

    Args:
        major (np.ndarray): Target major words in panel coordinates.
        minor (np.ndarray): Target minor words in panel coordinates.
        focus_block (int): Block to centre the window on.
        min_minor_count (int): Minor-bit target.
        min_major_ratio (int): Multiplier giving the major-bit target.

    Returns:
        Optional[Tuple[int, int, int]]: ``(start_block, focus_block, end_block)``, or None when the focus block has no called sites.
    """
    n_blocks = len(major)
    if popcount(major[focus_block] | minor[focus_block]) == 0:
        return None

    mj = popcount(major)
    mn = popcount(minor)
    min_major_count = min_minor_count * min_major_ratio

    start = end = focus_block
    minor_cnt = int(mn[focus_block])
    major_cnt = int(mj[focus_block])
    last = n_blocks - 1
    while minor_cnt < min_minor_count and major_cnt < min_major_count:
        if start == 0 and end == last:
            break
        move_start = (focus_block - start) < (end - focus_block)
        if start == 0:
            move_start = False
        elif end == last:
            move_start = True

        if move_start:
            start -= 1
            minor_cnt += int(mn[start])
            major_cnt += int(mj[start])
        else:
            end += 1
            minor_cnt += int(mn[end])
            major_cnt += int(mj[end])
    return start, focus_block, end


def best_inbred_donors(
    table: DistanceTable,
    target_taxon: int,
    donors: Sequence[int],
    start_block: int,
    focus_block: int,
    end_block: int,
    *,
    min_test_sites: int,
    max_hypotheses: int,
) -> List[DonorHypothesis]:
    """Rank single donors by inbred error rate over a window.

    Returns:
        List[DonorHypothesis]: At most ``max_hypotheses`` inbred hypotheses, best first.
    """
    totals = table.window_totals(start_block, end_block)
    heap = BoundedHypothesisHeap(max_hypotheses)
    for d in donors:
        sites, same, _, het = (int(v) for v in totals[d])
        if sites < min_test_sites:
            continue
        heap.push(
            DonorHypothesis(
                target_taxon,
                d,
                d,
                start_block,
                focus_block,
                end_block,
                tested_sites=sites,
                mendelian_errors=sites - same + 0.5 * het,
            )
        )
    return heap.results()


def _donor_distance(
    donor_major: np.ndarray,
    donor_minor: np.ndarray,
    d1: int,
    d2: int,
    start_block: int,
    end_block: int,
    min_test_sites: int,
) -> float:
    """Inbred error rate between two donors, or NaN when too few sites overlap."""
    window = slice(start_block, end_block + 1)
    table = DistanceTable.build(
        donor_major[d1, window],
        donor_minor[d1, window],
        donor_major[d2, window][None],
        donor_minor[d2, window][None],
    )
    dist = table.inbred_distance(0, 0, table.n_blocks - 1)
    if dist.sites < min_test_sites:
        return float("nan")
    return dist.error_rate


def best_hybrid_donors(
    target_major: np.ndarray,
    target_minor: np.ndarray,
    donor_major: np.ndarray,
    donor_minor: np.ndarray,
    target_taxon: int,
    donor1_set: Sequence[int],
    donor2_set: Sequence[int],
    start_block: int,
    focus_block: int,
    end_block: int,
    *,
    min_test_sites: int,
    max_hypotheses: int,
    allow_self_pair: bool = False,
    min_donor_distance: Optional[float] = None,
) -> List[DonorHypothesis]:
    """Rank donor pairs by Mendelian error rate over a window.

    Each unordered pair is tested once. Without ``allow_self_pair`` same-donor pairs are skipped. With it, same-donor pairs are tested and distinct pairs closer than ``min_donor_distance`` are skipped, since they describe one haplotype twice.

    Args:
        target_major (np.ndarray): Target major words in panel coordinates.
        target_minor (np.ndarray): Target minor words in panel coordinates.
        donor_major (np.ndarray): Panel major words, shape ``(n_donors, n_blocks)``.
        donor_minor (np.ndarray): Panel minor words, shape ``(n_donors, n_blocks)``.
        target_taxon (int): Target row index, recorded on hypotheses.
        donor1_set (Sequence[int]): Candidates for the first donor.
        donor2_set (Sequence[int]): Candidates for the second donor.
        start_block (int): First block of the window.
        focus_block (int): Focus block recorded on hypotheses.
        end_block (int): Last block of the window (inclusive).
        min_test_sites (int): Pairs with fewer tested sites are discarded.
        max_hypotheses (int): K.
        allow_self_pair (bool): Test same-donor pairs.
        min_donor_distance (Optional[float]): Near-identical pair cutoff used with ``allow_self_pair``.

    Returns:
        List[DonorHypothesis]: At most K hypotheses, best first.
    """
    seen = set()
    pairs: List[Tuple[int, int]] = []
    for d1 in donor1_set:
        for d2 in donor2_set:
            if d1 == d2 and not allow_self_pair:
                continue
            key = (min(d1, d2), max(d1, d2))
            if key in seen:
                continue
            seen.add(key)
            pairs.append((d1, d2))

    heap = BoundedHypothesisHeap(max_hypotheses)
    if not pairs:
        return heap.results()

    window = slice(start_block, end_block + 1)
    idx = np.asarray(pairs, dtype=np.intp)
    errors, tested = hybrid_mendel_errors(
        target_major[window],
        target_minor[window],
        donor_major[idx[:, 0], window],
        donor_minor[idx[:, 0], window],
        donor_major[idx[:, 1], window],
        donor_minor[idx[:, 1], window],
    )

    for (d1, d2), n_err, n_tested in zip(pairs, errors, tested):
        if n_tested < min_test_sites:
            continue
        if allow_self_pair and d1 != d2 and min_donor_distance is not None:
            dist = _donor_distance(
                donor_major, donor_minor, d1, d2, start_block, end_block, min_test_sites
            )
            if dist < min_donor_distance:
                continue
        heap.push(
            DonorHypothesis(
                target_taxon,
                d1,
                d2,
                start_block,
                focus_block,
                end_block,
                tested_sites=int(n_tested),
                mendelian_errors=float(n_err),
            )
        )
    return heap.results()


def most_frequent_donors(
    hypotheses_by_block: Iterable[Sequence[DonorHypothesis]], max_donors: int
) -> List[int]:
    """Donors ordered by how many focus blocks rank them, ties by donor index."""
    counts: Counter = Counter()
    for hyps in hypotheses_by_block:
        for h in hyps:
            counts[h.donor1] += 1
            if not h.is_inbred:
                counts[h.donor2] += 1
    ranked = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
    return [d for d, _ in ranked[:max_donors]]


def best_donors_across_region(
    table: DistanceTable,
    target_taxon: int,
    donors: Sequence[int],
    *,
    min_test_sites: int,
    max_hypotheses: int,
) -> List[int]:
    """Donors ranked by inbred error over the whole panel."""
    hyps = best_inbred_donors(
        table,
        target_taxon,
        donors,
        0,
        0,
        table.n_blocks - 1,
        min_test_sites=min_test_sites,
        max_hypotheses=max_hypotheses,
    )
    return [h.donor1 for h in hyps]


def unique_donors(hypotheses: Iterable[DonorHypothesis]) -> List[int]:
    """Donors appearing in ``hypotheses``, in first-seen order."""
    out: List[int] = []
    for h in hypotheses:
        for d in (h.donor1, h.donor2):
            if d not in out:
                out.append(d)
    return out


def combine_hypotheses(
    max_hypotheses: int, *groups: Sequence[DonorHypothesis]
) -> List[DonorHypothesis]:
    """Merge ranked lists, dropping repeated donor pairs, keeping the best K."""
    heap = BoundedHypothesisHeap(max_hypotheses)
    seen = set()
    for group in groups:
        for h in group:
            if h.donor_pair in seen:
                continue
            seen.add(h.donor_pair)
            heap.push(h)
    return heap.results()
