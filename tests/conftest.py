from __future__ import annotations

import os
from typing import Callable, Optional, Sequence

import numpy as np
import pytest

from pghap.data_processing.genotypes import GenotypeMatrix


@pytest.fixture(scope="session", autouse=True)
def _configure_matplotlib_cache(tmp_path_factory: pytest.TempPathFactory) -> None:
    """Ensure Matplotlib uses a writable cache during tests."""
    cache_dir = tmp_path_factory.mktemp("mplconfig")
    os.environ.setdefault("MPLCONFIGDIR", str(cache_dir))


def build_matrix(
    genotypes: np.ndarray,
    *,
    taxa: Optional[Sequence[str]] = None,
    chromosome: str = "1",
    positions: Optional[np.ndarray] = None,
    major: str = "A",
    minor: str = "C",
    name: str = "genotypes",
) -> GenotypeMatrix:
    """Single-chromosome matrix with the same alleles at every site."""
    genotypes = np.atleast_2d(np.asarray(genotypes))
    n_taxa, n_sites = genotypes.shape
    if taxa is None:
        taxa = [f"{name}_{i}" for i in range(n_taxa)]
    if positions is None:
        positions = np.arange(1, n_sites + 1) * 100
    return GenotypeMatrix(
        genotypes,
        list(taxa),
        np.full(n_sites, chromosome),
        positions,
        np.full(n_sites, major),
        np.full(n_sites, minor),
        name=name,
    )


@pytest.fixture
def make_matrix() -> Callable[..., GenotypeMatrix]:
    return build_matrix


@pytest.fixture
def homozygous_donors() -> np.ndarray:
    """Four random homozygous-only donors over 512 sites."""
    rng = np.random.default_rng(7)
    return rng.choice([0, 2], size=(4, 512)).astype(np.int8)
