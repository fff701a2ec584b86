"""Donor panel loading, chunking and allele-polarity alignment.

A donor panel is a donor genotype matrix restricted to the sites it shares with the target matrix. Shared sites must be a contiguous run of target sites so the target's packed words can be realigned onto the panel with a single bit offset.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from pghap.data_processing.genotypes import MISSING, MISSING_ALLELE, GenotypeMatrix
from pghap.impute.bitsets import WORD_BITS, pack_bits


class MalformedDonorPanelError(ValueError):
    """A donor panel cannot be aligned to the target matrix."""


@dataclass
class ConflictMasks:
    """Per-site allele-polarity classes of a donor panel against the target.

    Attributes:
        good (np.ndarray): Donor and target agree on major and minor alleles.
        swap (np.ndarray): Donor major is the target minor and vice versa.
        error (np.ndarray): Donor major differs from the target major (excluding swaps).
        invariant (np.ndarray): Donor minor allele is unknown.
    """

    good: np.ndarray
    swap: np.ndarray
    error: np.ndarray
    invariant: np.ndarray

    @property
    def good_words(self) -> np.ndarray:
        return pack_bits(self.good)

    @property
    def swap_words(self) -> np.ndarray:
        return pack_bits(self.swap)

    def counts(self) -> dict:
        return {
            "good": int(self.good.sum()),
            "swap": int(self.swap.sum()),
            "error": int(self.error.sum()),
            "invariant": int(self.invariant.sum()),
        }


def conflict_masks(
    target_major: np.ndarray,
    target_minor: np.ndarray,
    donor_major: np.ndarray,
    donor_minor: np.ndarray,
) -> ConflictMasks:
    """Classify shared sites by allele polarity.

    Args:
        target_major (np.ndarray): Target major allele per shared site.
        target_minor (np.ndarray): Target minor allele per shared site.
        donor_major (np.ndarray): Donor major allele per shared site.
        donor_minor (np.ndarray): Donor minor allele per shared site.

    Returns:
        ConflictMasks: Boolean masks over the shared sites.
    """
    t_mj = np.asarray(target_major).astype(str)
    t_mn = np.asarray(target_minor).astype(str)
    d_mj = np.asarray(donor_major).astype(str)
    d_mn = np.asarray(donor_minor).astype(str)

    invariant = d_mn == MISSING_ALLELE
    swap = (d_mj == t_mn) & (d_mn == t_mj) & ~invariant
    error = (d_mj != t_mj) & ~swap
    good = ~(invariant | swap | error)
    return ConflictMasks(good, swap, error, invariant)


def align_polarity(calls: np.ndarray, masks: ConflictMasks) -> np.ndarray:
    """Re-express donor 0/1/2 calls in the target's allele polarity.

    Swapped sites are flipped (0 <-> 2) and error sites become missing.
    """
    calls = np.asarray(calls, dtype=np.int8)
    out = calls.copy()
    flip = masks.swap[None, :] & (calls >= 0)
    out[flip] = 2 - calls[flip]
    out[:, masks.error] = MISSING
    return out


@dataclass
class DonorPanel:
    """A donor matrix aligned to a contiguous run of target sites.

    Attributes:
        matrix (GenotypeMatrix): Donor genotypes over the shared sites, in donor polarity.
        offset (int): Target site index of the panel's first site.
        masks (ConflictMasks): Allele-polarity classes per panel site.
        aligned_calls (np.ndarray): Donor calls in target polarity, error sites missing.
        label (str): Name used in logs and outputs.
    """

    matrix: GenotypeMatrix
    offset: int
    masks: ConflictMasks
    aligned_calls: np.ndarray
    label: str

    @property
    def n_sites(self) -> int:
        return self.matrix.n_sites

    @property
    def n_donors(self) -> int:
        return self.matrix.n_taxa

    @property
    def n_blocks(self) -> int:
        return self.matrix.n_blocks

    @property
    def positions(self) -> np.ndarray:
        return self.matrix.positions

    @property
    def chromosome(self) -> str:
        return str(self.matrix.chromosomes[0])

    @property
    def donor_names(self) -> List[str]:
        return self.matrix.taxa

    @property
    def target_sites(self) -> slice:
        return slice(self.offset, self.offset + self.n_sites)

    def presence(self) -> Tuple[np.ndarray, np.ndarray]:
        """Donor major and minor presence words, shape ``(n_donors, n_blocks)``."""
        return self.matrix.allele_presence()

    def donor_indices(self, exclude: Iterable[str] = ()) -> List[int]:
        """Donor rows, skipping any donor whose name is in ``exclude``."""
        skip = set(exclude)
        return [i for i, name in enumerate(self.matrix.taxa) if name not in skip]


def chunk_donor_matrix(
    matrix: GenotypeMatrix, approx_sites: Optional[int] = None
) -> List[GenotypeMatrix]:
    """Split a donor matrix into per-chromosome panels of roughly ``approx_sites``.

    Each chromosome is cut into ``round(n / approx_sites)`` (at least one) pieces whose lengths are whole multiples of 64 sites; the last piece takes the remainder. With ``approx_sites=None`` each chromosome is one panel.

    Args:
        matrix (GenotypeMatrix): Donor genotypes.
        approx_sites (Optional[int]): Target number of sites per panel.

    Returns:
        List[GenotypeMatrix]: Panels in site order.
    """
    if approx_sites is not None and approx_sites <= 0:
        raise ValueError(f"approx_sites must be positive, got {approx_sites}")

    panels: List[GenotypeMatrix] = []
    for chrom in pd.unique(matrix.chromosomes):
        sites = np.flatnonzero(matrix.chromosomes == chrom)
        n = len(sites)

        n_chunks = 1 if approx_sites is None else max(1, int(round(n / approx_sites)))
        chunk_blocks = n // (n_chunks * WORD_BITS)
        if chunk_blocks == 0:
            n_chunks = 1

        for i in range(n_chunks):
            lo = i * chunk_blocks * WORD_BITS
            hi = n if i == n_chunks - 1 else lo + chunk_blocks * WORD_BITS
            label = f"{matrix.name}:{chrom}" if n_chunks == 1 else f"{matrix.name}:{chrom}:{i}"
            panels.append(matrix.subset_sites(sites[lo:hi], name=label))
    return panels


def align_donor_panel(
    target: GenotypeMatrix,
    donors: GenotypeMatrix,
    *,
    min_test_sites: int = 20,
    logger: Optional[logging.Logger] = None,
) -> DonorPanel:
    """Align a donor matrix to the target's sites.

    Args:
        target (GenotypeMatrix): Target genotypes.
        donors (GenotypeMatrix): Donor genotypes spanning one contiguous segment.
        min_test_sites (int): Panels sharing fewer than twice this many sites trigger a warning.
        logger (Optional[logging.Logger]): Logger for warnings.

    Returns:
        DonorPanel: The aligned panel.

    Raises:
        MalformedDonorPanelError: If fewer than two sites are shared or the shared sites are not contiguous in the target.
    """
    logger = logger or logging.getLogger(__name__)

    target_idx = np.array(
        [target.site_of_physical_position(c, p) for c, p in donors.site_keys()],
        dtype=np.int64,
    )
    keep = np.flatnonzero(target_idx >= 0)
    if len(keep) < 2:
        msg = (
            f"Donor panel '{donors.name}' shares {len(keep)} sites with the target; "
            "at least 2 are required."
        )
        logger.error(msg)
        raise MalformedDonorPanelError(msg)

    shared = target_idx[keep]
    if np.any(np.diff(shared) != 1):
        msg = (
            f"Donor panel '{donors.name}' sites are not a contiguous run of target "
            "sites (unsorted, duplicated or interleaved positions)."
        )
        logger.error(msg)
        raise MalformedDonorPanelError(msg)

    if len(keep) < 2 * min_test_sites:
        logger.warning(
            f"Donor panel '{donors.name}' shares only {len(keep)} sites with the target."
        )

    panel_matrix = donors.subset_sites(keep, name=donors.name)
    masks = conflict_masks(
        target.major_alleles[shared],
        target.minor_alleles[shared],
        panel_matrix.major_alleles,
        panel_matrix.minor_alleles,
    )
    counts = masks.counts()
    if counts["error"]:
        logger.warning(
            f"Donor panel '{donors.name}': {counts['error']} sites have conflicting "
            "alleles and are ignored."
        )
    logger.debug(f"Donor panel '{donors.name}' polarity classes: {counts}")

    return DonorPanel(
        matrix=panel_matrix,
        offset=int(shared[0]),
        masks=masks,
        aligned_calls=align_polarity(panel_matrix.genotypes, masks),
        label=donors.name,
    )


def load_donor_panels(
    target: GenotypeMatrix,
    sources: Sequence[GenotypeMatrix | str | Path],
    *,
    approx_sites_per_panel: Optional[int] = None,
    min_test_sites: int = 20,
    logger: Optional[logging.Logger] = None,
) -> List[DonorPanel]:
    """Load, split and align every donor source before any sample work starts.

    Args:
        target (GenotypeMatrix): Target genotypes.
        sources (Sequence[GenotypeMatrix | str | Path]): Donor matrices or tab-separated tables.
        approx_sites_per_panel (Optional[int]): Chunk size; None keeps one panel per chromosome.
        min_test_sites (int): Passed to :func:`align_donor_panel`.
        logger (Optional[logging.Logger]): Logger.

    Returns:
        List[DonorPanel]: Aligned panels ordered by target offset.

    Raises:
        MalformedDonorPanelError: If a source cannot be read or aligned.
    """
    logger = logger or logging.getLogger(__name__)

    panels: List[DonorPanel] = []
    for src in sources:
        if isinstance(src, GenotypeMatrix):
            matrix = src
        else:
            try:
                matrix = GenotypeMatrix.from_table(src)
            except ValueError as e:
                msg = f"Could not read donor file '{src}': {e}"
                logger.error(msg)
                raise MalformedDonorPanelError(msg) from e

        for chunk in chunk_donor_matrix(matrix, approx_sites_per_panel):
            panels.append(
                align_donor_panel(
                    target, chunk, min_test_sites=min_test_sites, logger=logger
                )
            )

    panels.sort(key=lambda p: p.offset)
    logger.info(f"Loaded {len(panels)} donor panels.")
    return panels
