from __future__ import annotations

import numpy as np
import pytest

from pghap.data_processing.donors import load_donor_panels
from pghap.impute.hypotheses import DonorHypothesis
from pghap.impute.phasing import REVERSE
from pghap.impute.worker import (
    DonorInterval,
    ImputedSample,
    InbredSolved,
    StageCounts,
    TaxonResult,
    apply_outcome,
    combine_donor_calls,
    donor_estimates,
    lead_intervals,
    merge_calls,
    phased_error_rate,
)
from pghap.utils.accuracy import AccuracyTally

KNOWN = np.array([-1, -1, -1, 0, 2, 0, 1, 1])
ESTIMATE = np.array([0, 2, 1, 1, 1, 2, 0, -1])


@pytest.mark.parametrize(
    "smash, hets_to_missing, resolve_het, expected",
    [
        (False, False, False, [0, 2, 1, 0, 2, 0, 1, 1]),
        (True, True, False, [0, 2, -1, 0, 2, 0, 1, 1]),
        (True, False, False, [0, 2, 1, 0, 2, 0, 1, 1]),
        (False, True, True, [0, 2, 1, 1, 1, 0, 1, 1]),
        (True, False, True, [0, 2, 1, 0, 2, 0, 1, 1]),
    ],
)
def test_merge_calls_table(smash, hets_to_missing, resolve_het, expected) -> None:
    merged = merge_calls(
        KNOWN,
        ESTIMATE,
        smash=smash,
        hets_to_missing=hets_to_missing,
        resolve_het=resolve_het,
    )
    np.testing.assert_array_equal(merged, expected)


@pytest.mark.parametrize("smash", [False, True])
@pytest.mark.parametrize("resolve_het", [False, True])
def test_merge_calls_is_idempotent(smash: bool, resolve_het: bool) -> None:
    once = merge_calls(KNOWN, ESTIMATE, smash=smash, hets_to_missing=True, resolve_het=resolve_het)
    twice = merge_calls(once, ESTIMATE, smash=smash, hets_to_missing=True, resolve_het=resolve_het)
    np.testing.assert_array_equal(once, twice)


def test_combine_donor_calls() -> None:
    d1 = np.array([0, 2, 0, -1, 2, 1, -1])
    d2 = np.array([0, 2, 2, 2, -1, 0, -1])

    np.testing.assert_array_equal(combine_donor_calls(d1, d2), [0, 2, 1, 2, 2, -1, -1])


def test_donor_estimates_fall_through_ranks() -> None:
    donor_calls = np.array(
        [
            [0, -1, 0, 0],
            [0, -1, 2, 2],
            [2, 2, 2, 2],
        ]
    )
    first = DonorHypothesis(0, 0, 1, 0, 0, 0)
    second = DonorHypothesis(0, 2, 2, 0, 0, 0)

    estimate, history = donor_estimates([first, second], donor_calls, np.arange(4))

    np.testing.assert_array_equal(estimate, [0, 2, 1, 1])
    np.testing.assert_array_equal(history, [1, 2, 1, 1])


def test_donor_estimates_follow_phase() -> None:
    donor_calls = np.array([[0, 0, 0, 0], [2, 2, 2, 2]])
    phased = DonorHypothesis(
        0,
        0,
        1,
        0,
        0,
        0,
        phased_results=np.array([0, 1, 2, 2]),
        phase_sources=np.array([REVERSE, 1, 1, 1]),
    )

    estimate, history = donor_estimates([phased], donor_calls, np.arange(4))

    np.testing.assert_array_equal(estimate, [0, 1, 2, 2])
    np.testing.assert_array_equal(history, [-1, 1, 1, 1])

    target = np.array([0, 1, 0, -1])
    assert phased_error_rate(phased, target, donor_calls, np.arange(4)) == pytest.approx(1 / 3)


def test_add_interval_extends_matching_donors() -> None:
    sample = ImputedSample.start("t", np.zeros(4))

    sample.add_interval(DonorInterval("1", 100, 200, "a", "b"))
    sample.add_interval(DonorInterval("1", 300, 400, "a", "b"))
    sample.add_interval(DonorInterval("1", 500, 600, "a", "c"))
    sample.add_interval(DonorInterval("2", 700, 800, "a", "c"))

    assert sample.breakpoints == [
        DonorInterval("1", 100, 400, "a", "b"),
        DonorInterval("1", 500, 600, "a", "c"),
        DonorInterval("2", 700, 800, "a", "c"),
    ]


def test_stage_counts_sum() -> None:
    a = StageCounts(segments_solved=1, inbred_blocks=2)
    b = StageCounts(viterbi_blocks=3, unsolved_blocks=1)

    total = sum([a, b])

    assert total.to_dict() == {
        "segments_solved": 1,
        "inbred_blocks": 2,
        "viterbi_blocks": 3,
        "smash_blocks": 0,
        "unsolved_blocks": 1,
    }
    assert total.blocks_solved == 5


def test_summary_line_reports_error_rate_with_accuracy() -> None:
    counts = np.zeros((3, 5), dtype=np.int64)
    counts[0, 0] = 3
    counts[0, 1] = 1
    counts[:, 4] = counts[:, :4].sum(axis=1)
    result = TaxonResult(
        0,
        "t0",
        np.array([0, 1, -1, 2], dtype=np.int8),
        np.zeros(4, dtype=np.int16),
        StageCounts(inbred_blocks=2),
        [],
        accuracy=AccuracyTally(counts),
    )

    line = result.summary_line()

    assert line.startswith("t0\tsegments=0\tinbred=2")
    assert "missing=0.2500" in line
    assert line.endswith("error=0.2500")
    assert "error=" not in TaxonResult.unresolved(0, "t0", result.calls).summary_line()


@pytest.fixture
def panel(make_matrix):
    donors = np.vstack([np.zeros(64), np.full(64, 2)]).astype(np.int8)
    target = make_matrix(np.zeros((1, 64), dtype=np.int8), taxa=["t0"], name="target")
    return load_donor_panels(target, [make_matrix(donors, name="donors")])[0]


def test_lead_intervals_split_at_phase_switches(panel) -> None:
    phased = DonorHypothesis(
        0,
        0,
        1,
        0,
        0,
        0,
        phased_results=np.array([0] * 20 + [1] * 20 + [2] * 24),
        phase_sources=np.ones(64, dtype=np.int8),
    )

    assert lead_intervals(phased, panel, np.arange(64)) == [
        DonorInterval("1", 100, 2000, "donors_0", "donors_0"),
        DonorInterval("1", 2100, 4000, "donors_0", "donors_1"),
        DonorInterval("1", 4100, 6400, "donors_1", "donors_1"),
    ]

    unphased = DonorHypothesis(0, 0, 1, 0, 0, 0)
    assert lead_intervals(unphased, panel, np.arange(64)) == [
        DonorInterval("1", 100, 6400, "donors_0", "donors_1")
    ]


def test_apply_outcome_keeps_raw_estimate_apart_from_merged_calls(panel) -> None:
    calls = np.zeros(64, dtype=np.int8)
    calls[:8] = -1
    calls[8] = 2
    sample = ImputedSample.start("t0", calls)
    outcome = InbredSolved((DonorHypothesis(0, 0, 0, 0, 0, 0, tested_sites=56),), 0)

    apply_outcome(sample, outcome, panel, hets_to_missing=True)

    np.testing.assert_array_equal(sample.imputed_estimate, np.zeros(64))
    expected = np.zeros(64)
    expected[8] = 2
    np.testing.assert_array_equal(sample.resolved_genotype, expected)
    np.testing.assert_array_equal(sample.original, calls)
    assert np.all(sample.change_history[:8] == 1)
    assert np.all(sample.change_history[8:] == 0)
    assert sample.stage_counts.inbred_blocks == 1
    assert sample.breakpoints == [DonorInterval("1", 100, 6400, "donors_0", "donors_0")]


def test_imputed_estimate_starts_missing() -> None:
    sample = ImputedSample.start("t0", np.array([0, -1, 2]))

    np.testing.assert_array_equal(sample.imputed_estimate, [-1, -1, -1])
    np.testing.assert_array_equal(sample.resolved_genotype, [0, -1, 2])
