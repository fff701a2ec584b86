from __future__ import annotations

from types import SimpleNamespace

import numpy as np
import pytest

from pghap.data_processing.genotypes import GenotypeMatrix


def test_matrix_normalises_missing_and_counts(make_matrix) -> None:
    m = make_matrix(np.array([[0, 1, -9, 2], [1, 1, 0, -1]]), taxa=["a", "b"])

    assert m.genotypes.dtype == np.int8
    assert m.genotype(0, 2) == -1
    assert m.n_taxa == 2
    assert m.n_sites == 4
    assert m.n_blocks == 1
    assert m.heterozygous_count(1) == 2
    assert m.non_missing_count(0) == 3
    assert m.taxon_index("b") == 1
    assert m.has_taxon("a") and not m.has_taxon("z")
    assert m.site_of_physical_position("1", 300) == 2
    assert m.site_of_physical_position("2", 300) == -1
    with pytest.raises(KeyError):
        m.taxon_index("z")


@pytest.mark.parametrize(
    "genotypes, taxa, positions",
    [
        (np.zeros(4), ["a"], [1, 2, 3, 4]),
        (np.full((1, 4), 3), ["a"], [1, 2, 3, 4]),
        (np.zeros((2, 4)), ["a", "a"], [1, 2, 3, 4]),
        (np.zeros((1, 4)), ["a"], [1, 2, 2, 4]),
        (np.zeros((1, 4)), ["a"], [1, 2, 3]),
    ],
)
def test_matrix_validation(genotypes, taxa, positions) -> None:
    with pytest.raises(ValueError):
        GenotypeMatrix(
            genotypes,
            taxa,
            np.full(4, "1"),
            np.asarray(positions),
            np.full(4, "A"),
            np.full(4, "C"),
        )


def test_allele_presence_is_cached(make_matrix) -> None:
    m = make_matrix(np.array([[0, 1, 2, -1]]))

    major, minor = m.allele_presence()

    assert int(major[0, 0]) == 0b0011
    assert int(minor[0, 0]) == 0b0110
    assert m.allele_presence()[0] is major


def test_table_roundtrip(make_matrix, tmp_path) -> None:
    m = make_matrix(np.array([[0, 1, -1], [2, 2, 0]]), taxa=["s1", "s2"], minor="N")
    path = tmp_path / "m.tsv"

    m.to_table(path)
    loaded = GenotypeMatrix.from_table(path)

    assert loaded.name == "m"
    assert loaded.taxa == ["s1", "s2"]
    np.testing.assert_array_equal(loaded.genotypes, m.genotypes)
    np.testing.assert_array_equal(loaded.minor_alleles, ["N", "N", "N"])
    np.testing.assert_array_equal(loaded.positions, m.positions)


def test_subset_and_replace(make_matrix) -> None:
    m = make_matrix(np.arange(6).reshape(2, 3) % 3)

    sub = m.subset_sites([0, 2], name="sub")
    assert sub.n_sites == 2
    assert sub.name == "sub"

    replaced = m.with_genotypes(np.zeros((2, 3)))
    assert replaced.genotypes.sum() == 0
    with pytest.raises(ValueError):
        m.with_genotypes(np.zeros((3, 3)))


def test_from_genotype_data_parses_marker_names() -> None:
    gd = SimpleNamespace(
        genotypes_012=np.array([[0, -9, 2], [1, 0, 0]]),
        ref=["A", "G", "T"],
        alt=[["C"], ".", "A"],
        samples=["x", "y"],
        marker_names=["chr1:10", "chr1:20", "chr2_5"],
    )

    m = GenotypeMatrix.from_genotype_data(gd, name="vcf")

    np.testing.assert_array_equal(m.chromosomes, ["chr1", "chr1", "chr2"])
    np.testing.assert_array_equal(m.positions, [10, 20, 5])
    np.testing.assert_array_equal(m.minor_alleles, ["C", "N", "A"])
    assert m.genotype(0, 1) == -1


def test_from_genotype_data_falls_back_to_site_numbers() -> None:
    gd = SimpleNamespace(
        genotypes_012=np.zeros((1, 3)),
        ref=None,
        alt=None,
        samples=["x"],
        marker_names=["a", "b", "c"],
    )

    m = GenotypeMatrix.from_genotype_data(gd)

    np.testing.assert_array_equal(m.positions, [1, 2, 3])
    np.testing.assert_array_equal(m.major_alleles, ["N", "N", "N"])
