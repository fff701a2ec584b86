from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import cached_property
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from pghap.impute.bitsets import encode_presence, n_words

MISSING = -1
MISSING_ALLELE = "N"

_SITE_COLUMNS = ["chrom", "pos", "major", "minor"]

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class GenotypeMatrix:
    """In-memory diploid genotype store in 0/1/2 coding.

    Rows are taxa and columns are sites. Codes are 0 (homozygous major), 1 (heterozygous), 2 (homozygous minor) and -1 (missing); any negative input is normalised to -1.

    Attributes:
        genotypes (np.ndarray): ``int8`` array of shape ``(n_taxa, n_sites)``.
        taxa (List[str]): Taxon names.
        chromosomes (np.ndarray): Chromosome name per site.
        positions (np.ndarray): Physical position per site, strictly increasing within a chromosome.
        major_alleles (np.ndarray): Major allele letter per site.
        minor_alleles (np.ndarray): Minor allele letter per site; "N" when unknown.
        name (str): Label used in logs.
    """

    genotypes: np.ndarray
    taxa: List[str]
    chromosomes: np.ndarray
    positions: np.ndarray
    major_alleles: np.ndarray
    minor_alleles: np.ndarray
    name: str = "genotypes"
    _presence: Optional[Tuple[np.ndarray, np.ndarray]] = field(
        default=None, init=False, repr=False
    )

    def __post_init__(self) -> None:
        g = np.asarray(self.genotypes)
        if g.ndim != 2:
            raise ValueError(f"genotypes must be 2-D, got shape {g.shape}")
        if g.size and (np.nanmax(g) > 2):
            raise ValueError("Genotype codes must be 0, 1, 2 or negative (missing).")
        g = g.astype(np.int8, copy=True)
        g[g < 0] = MISSING
        self.genotypes = g

        self.taxa = [str(t) for t in self.taxa]
        self.chromosomes = np.asarray(self.chromosomes).astype(str)
        self.positions = np.asarray(self.positions, dtype=np.int64)
        self.major_alleles = np.asarray(self.major_alleles).astype(str)
        self.minor_alleles = np.asarray(self.minor_alleles).astype(str)

        n_taxa, n_sites = g.shape
        if len(self.taxa) != n_taxa:
            raise ValueError(
                f"{self.name}: {len(self.taxa)} taxa names for {n_taxa} genotype rows."
            )
        if len(set(self.taxa)) != n_taxa:
            raise ValueError(f"{self.name}: taxon names must be unique.")
        for label, arr in (
            ("chromosomes", self.chromosomes),
            ("positions", self.positions),
            ("major_alleles", self.major_alleles),
            ("minor_alleles", self.minor_alleles),
        ):
            if arr.shape != (n_sites,):
                raise ValueError(
                    f"{self.name}: {label} has shape {arr.shape}, expected ({n_sites},)."
                )

        for chrom in pd.unique(self.chromosomes):
            pos = self.positions[self.chromosomes == chrom]
            if np.any(np.diff(pos) <= 0):
                raise ValueError(
                    f"{self.name}: positions on chromosome {chrom} are not strictly increasing."
                )

    # ---- Shape ---- #
    @property
    def n_taxa(self) -> int:
        return self.genotypes.shape[0]

    @property
    def n_sites(self) -> int:
        return self.genotypes.shape[1]

    @property
    def n_blocks(self) -> int:
        return n_words(self.n_sites)

    # ---- Lookups ---- #
    @cached_property
    def _taxon_index(self) -> Dict[str, int]:
        return {t: i for i, t in enumerate(self.taxa)}

    @cached_property
    def _site_index(self) -> Dict[Tuple[str, int], int]:
        return {
            (c, int(p)): i
            for i, (c, p) in enumerate(zip(self.chromosomes, self.positions))
        }

    def taxon_index(self, name: str) -> int:
        """Row of taxon ``name``.

        Raises:
            KeyError: If the taxon is not present.
        """
        try:
            return self._taxon_index[name]
        except KeyError:
            raise KeyError(f"Taxon '{name}' not found in {self.name}.") from None

    def has_taxon(self, name: str) -> bool:
        return name in self._taxon_index

    def genotype(self, taxon: int, site: int) -> int:
        return int(self.genotypes[taxon, site])

    def site_of_physical_position(self, chromosome: str, position: int) -> int:
        """Site index of ``(chromosome, position)``, or -1 when absent."""
        return self._site_index.get((str(chromosome), int(position)), -1)

    def site_keys(self) -> List[Tuple[str, int]]:
        return list(zip(self.chromosomes.tolist(), self.positions.tolist()))

    # ---- Summaries ---- #
    def heterozygous_count(self, taxon: int) -> int:
        return int(np.count_nonzero(self.genotypes[taxon] == 1))

    def non_missing_count(self, taxon: int) -> int:
        return int(np.count_nonzero(self.genotypes[taxon] >= 0))

    def allele_presence(self) -> Tuple[np.ndarray, np.ndarray]:
        """Packed major and minor presence words of every taxon, shape ``(n_taxa, n_blocks)``.

        Computed once and cached; the matrix is treated as immutable afterwards.
        """
        if self._presence is None:
            self._presence = encode_presence(self.genotypes)
        return self._presence

    # ---- Derived matrices ---- #
    def subset_sites(self, sites: Sequence[int] | slice, name: str | None = None) -> "GenotypeMatrix":
        """Matrix restricted to the given site indices (or slice)."""
        return GenotypeMatrix(
            self.genotypes[:, sites],
            list(self.taxa),
            self.chromosomes[sites],
            self.positions[sites],
            self.major_alleles[sites],
            self.minor_alleles[sites],
            name=name or self.name,
        )

    def with_genotypes(self, genotypes: np.ndarray, name: str | None = None) -> "GenotypeMatrix":
        """Same taxa and sites with a replacement genotype array."""
        genotypes = np.asarray(genotypes)
        if genotypes.shape != self.genotypes.shape:
            raise ValueError(
                f"Replacement genotypes have shape {genotypes.shape}, "
                f"expected {self.genotypes.shape}."
            )
        return GenotypeMatrix(
            genotypes,
            list(self.taxa),
            self.chromosomes.copy(),
            self.positions.copy(),
            self.major_alleles.copy(),
            self.minor_alleles.copy(),
            name=name or self.name,
        )

    # ---- I/O ---- #
    def to_dataframe(self) -> pd.DataFrame:
        """Sites as rows: ``chrom, pos, major, minor`` followed by one column per taxon."""
        sites = pd.DataFrame(
            {
                "chrom": self.chromosomes,
                "pos": self.positions,
                "major": self.major_alleles,
                "minor": self.minor_alleles,
            }
        )
        calls = pd.DataFrame(self.genotypes.T, columns=self.taxa)
        return pd.concat([sites, calls], axis=1)

    def to_table(self, path: str | Path) -> None:
        """Write the matrix as a tab-separated table."""
        self.to_dataframe().to_csv(path, sep="\t", index=False)

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame, name: str = "genotypes") -> "GenotypeMatrix":
        missing_cols = [c for c in _SITE_COLUMNS if c not in df.columns]
        if missing_cols:
            raise ValueError(f"{name}: missing required columns {missing_cols}")
        taxa = [c for c in df.columns if c not in _SITE_COLUMNS]
        calls = df[taxa].apply(pd.to_numeric, errors="coerce").fillna(MISSING)
        return cls(
            calls.to_numpy().T,
            taxa,
            df["chrom"].astype(str).to_numpy(),
            df["pos"].to_numpy(),
            df["major"].fillna(MISSING_ALLELE).astype(str).to_numpy(),
            df["minor"].fillna(MISSING_ALLELE).astype(str).to_numpy(),
            name=name,
        )

    @classmethod
    def from_table(cls, path: str | Path, name: str | None = None) -> "GenotypeMatrix":
        """Read a tab-separated table written by :meth:`to_table`."""
        path = Path(path)
        df = pd.read_csv(
            path,
            sep="\t",
            dtype={"chrom": str, "major": str, "minor": str},
            keep_default_na=False,
            na_values=[""],
        )
        return cls.from_dataframe(df, name=name or path.stem)

    @classmethod
    def from_genotype_data(cls, genotype_data: Any, name: str = "genotypes") -> "GenotypeMatrix":
        """Build a matrix from a snpio ``GenotypeData`` object.

        ``genotypes_012`` supplies the calls (-9 missing), ``ref``/``alt`` the major/minor alleles. Chromosomes and positions are parsed from ``marker_names`` ("chrom:pos" or "chrom_pos"); when unavailable, sites are numbered 1..n on chromosome "1".
        """
        calls = np.asarray(genotype_data.genotypes_012)
        n_sites = calls.shape[1]

        ref = list(genotype_data.ref) if genotype_data.ref is not None else []
        alt = []
        for a in genotype_data.alt if genotype_data.alt is not None else []:
            if isinstance(a, (list, tuple)):
                a = a[0] if a else MISSING_ALLELE
            alt.append(a if a not in (None, "", ".") else MISSING_ALLELE)
        if len(ref) != n_sites:
            ref = [MISSING_ALLELE] * n_sites
        if len(alt) != n_sites:
            alt = [MISSING_ALLELE] * n_sites

        chroms, positions = _parse_marker_names(
            getattr(genotype_data, "marker_names", None), n_sites
        )
        return cls(calls, list(genotype_data.samples), chroms, positions, ref, alt, name=name)


def _parse_marker_names(
    marker_names: Optional[Sequence[str]], n_sites: int
) -> Tuple[np.ndarray, np.ndarray]:
    if marker_names is not None and len(marker_names) == n_sites:
        chroms, positions = [], []
        for m in marker_names:
            sep = ":" if ":" in str(m) else "_"
            chrom, _, pos = str(m).rpartition(sep)
            if not chrom or not pos.isdigit():
                break
            chroms.append(chrom)
            positions.append(int(pos))
        else:
            return np.asarray(chroms), np.asarray(positions, dtype=np.int64)
        logger.warning(
            "Could not parse chromosome/position from marker names; numbering sites 1..n."
        )
    return np.full(n_sites, "1"), np.arange(1, n_sites + 1, dtype=np.int64)
