from __future__ import annotations

import math

import numpy as np
import pytest

from pghap.utils.accuracy import AccuracyTally


def test_update_counts_masked_sites_only() -> None:
    known = np.array([0, 0, 1, 2, 2, -1, 1])
    imputed = np.array([0, 1, 1, 2, -1, 0, 0])
    mask = np.array([True, True, True, True, True, True, False])

    tally = AccuracyTally().update(known, imputed, mask)

    assert tally.n_masked == 5
    assert tally.n_imputed == 4
    np.testing.assert_array_equal(tally.counts[0], [1, 1, 0, 0, 2])
    np.testing.assert_array_equal(tally.counts[1], [0, 1, 0, 0, 1])
    np.testing.assert_array_equal(tally.counts[2], [0, 0, 1, 1, 2])
    assert tally.error_rate() == pytest.approx(0.25)
    assert tally.proportion_unimputed() == pytest.approx(0.2)
    np.testing.assert_allclose(tally.class_error_rates(), [0.5, 0.0, 0.0])


def test_tallies_sum_across_workers() -> None:
    a = AccuracyTally().update(np.array([0, 2]), np.array([0, 2]))
    b = AccuracyTally().update(np.array([1]), np.array([1]))

    total = sum([a, b])

    assert total.n_masked == 3
    assert total.error_rate() == 0.0
    assert total.r2() == pytest.approx(1.0)


def test_report() -> None:
    tally = AccuracyTally().update(np.array([0, 1, 2, 2]), np.array([0, 1, 2, 1]))

    report = tally.report()

    assert report["accuracy"] == pytest.approx(0.75)
    assert report["error_overall"] == pytest.approx(0.25)
    assert 0.0 < report["f1_macro"] < 1.0
    assert list(tally.to_dataframe().index) == ["hom_major", "het", "hom_minor"]


def test_empty_report_is_nan() -> None:
    report = AccuracyTally().report()

    assert report["n_masked"] == 0
    assert math.isnan(report["accuracy"])
    assert math.isnan(report["r2"])


def test_bad_shape() -> None:
    with pytest.raises(ValueError):
        AccuracyTally(np.zeros((2, 2)))
