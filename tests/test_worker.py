from __future__ import annotations

from typing import Optional

import numpy as np
import pytest

from pghap.data_processing.containers import ImputeConfig
from pghap.data_processing.donors import load_donor_panels
from pghap.impute.worker import DonorInterval, TaxonImputationWorker


def _worker(make_matrix, target_calls, donor_calls, overrides: Optional[dict] = None):
    target = make_matrix(target_calls[None], taxa=["t0"], name="target")
    donors = make_matrix(donor_calls, name="donors")
    panels = load_donor_panels(target, [donors])
    cfg = ImputeConfig().apply_overrides(overrides)
    return TaxonImputationWorker(target, panels, cfg)


def test_segment_solved_by_matching_donor(make_matrix, homozygous_donors) -> None:
    target = homozygous_donors[0].copy()
    target[128:256] = -1

    result = _worker(make_matrix, target, homozygous_donors).run(0)

    assert result.stage_counts.segments_solved == 1
    assert result.stage_counts.blocks_solved == 0
    assert not result.skipped
    assert not result.heterozygous_like
    np.testing.assert_array_equal(result.calls, homozygous_donors[0])
    assert np.all(result.change_history[128:256] == 1)
    assert np.all(result.change_history[:128] == 0)
    assert result.breakpoints == [
        DonorInterval("1", 100, 51200, "donors_0", "donors_0")
    ]


def test_segment_solution_scores_masked_calls(make_matrix, homozygous_donors) -> None:
    target = homozygous_donors[0].copy()
    target[128:256] = -1

    result = _worker(make_matrix, target, homozygous_donors).run(0, truth=homozygous_donors[0])

    assert result.accuracy is not None
    assert result.accuracy.n_masked == 128
    assert result.accuracy.error_rate() == 0.0


def test_inbred_blocks_follow_donor_switch(make_matrix, homozygous_donors) -> None:
    truth = np.concatenate([homozygous_donors[0, :256], homozygous_donors[1, 256:]])
    target = truth.copy()
    target[::8] = -1

    worker = _worker(
        make_matrix,
        target,
        homozygous_donors,
        {"search.enable_hybrid_search": False, "search.min_minor_count": 5},
    )
    result = worker.run(0)

    assert result.stage_counts.inbred_blocks == 8
    assert result.stage_counts.segments_solved == 0
    np.testing.assert_array_equal(result.calls, truth)
    assert result.breakpoints == [
        DonorInterval("1", 100, 25600, "donors_0", "donors_0"),
        DonorInterval("1", 25700, 51200, "donors_1", "donors_1"),
    ]


def test_smash_fills_block_without_enough_informative_sites(make_matrix) -> None:
    donors = np.zeros((2, 256), dtype=np.int8)
    donors[1, [2, 4, 6, 8, 12]] = 2
    target = np.zeros(256, dtype=np.int8)
    target[[2, 4, 6, 8]] = 1
    target[[12, 20]] = -1

    worker = _worker(make_matrix, target, donors, {"search.min_minor_count": 2})
    result = worker.run(0)

    assert result.heterozygous_like
    assert result.stage_counts.smash_blocks == 1
    assert result.stage_counts.inbred_blocks == 3
    assert result.calls[12] == 1
    assert result.calls[20] == 0
    np.testing.assert_array_equal(result.calls[[2, 4, 6, 8]], 1)


def test_noisy_target_is_left_unsolved(make_matrix) -> None:
    rng = np.random.default_rng(5)
    donors = np.zeros((2, 256), dtype=np.int8)
    donors[1, [3, 50, 100, 150, 200]] = 2
    target = rng.choice([0, 2], size=256).astype(np.int8)
    target[rng.choice(256, size=20, replace=False)] = -1

    result = _worker(make_matrix, target, donors).run(0)

    assert result.stage_counts.segments_solved == 0
    assert result.stage_counts.unsolved_blocks == 4
    assert result.stage_counts.blocks_solved == 0
    np.testing.assert_array_equal(result.calls, target)
    assert result.breakpoints == []


def test_sparse_target_is_skipped(make_matrix, homozygous_donors) -> None:
    target = np.full(512, -1, dtype=np.int8)
    target[:20] = homozygous_donors[0, :20]

    result = _worker(make_matrix, target, homozygous_donors).run(0)

    assert result.skipped
    np.testing.assert_array_equal(result.calls, target)
    assert result.stage_counts.to_dict() == {
        "segments_solved": 0,
        "inbred_blocks": 0,
        "viterbi_blocks": 0,
        "smash_blocks": 0,
        "unsolved_blocks": 0,
    }


def test_donor_named_like_target_is_excluded(make_matrix, homozygous_donors) -> None:
    target = make_matrix(homozygous_donors[:1], taxa=["donors_0"], name="target")
    donors = make_matrix(homozygous_donors, name="donors")
    panel = load_donor_panels(target, [donors])[0]

    assert panel.donor_indices(["donors_0"]) == [1, 2, 3]

    cfg = ImputeConfig().apply_overrides({"donors.impute_donor_file": True})
    calls = target.genotypes[0].copy()
    calls[128:256] = -1
    masked = target.with_genotypes(calls[None])
    result = TaxonImputationWorker(masked, [panel], cfg).run(0)

    # Without its own row no donor explains the sample.
    assert result.stage_counts.segments_solved == 0
    assert np.all(result.calls[128:256] == -1)


def _mosaic_donors(agree_at: int) -> np.ndarray:
    """Donor 1 is the complement of donor 0 except at one site; donors 2 and 3 are random."""
    rng = np.random.default_rng(11)
    d0 = rng.choice([0, 2], size=512)
    d1 = 2 - d0
    d1[agree_at] = d0[agree_at]
    rest = rng.choice([0, 2], size=(2, 512))
    return np.vstack([d0, d1, rest]).astype(np.int8)


def test_segment_solved_by_phased_pair(make_matrix) -> None:
    donors = _mosaic_donors(255)
    truth = np.concatenate([donors[0, :256], donors[1, 256:]])
    target = truth.copy()
    target[::7] = -1

    result = _worker(make_matrix, target, donors).run(0)

    assert result.stage_counts.segments_solved == 1
    assert result.stage_counts.blocks_solved == 0
    np.testing.assert_array_equal(result.calls, truth)
    assert np.all(result.change_history[target < 0] == 1)
    assert np.all(result.change_history[target >= 0] == 0)
    assert result.breakpoints == [
        DonorInterval("1", 100, 25600, "donors_0", "donors_0"),
        DonorInterval("1", 25700, 51200, "donors_1", "donors_1"),
    ]


def test_focus_block_solved_by_viterbi(make_matrix) -> None:
    donors = _mosaic_donors(95)
    truth = np.concatenate([donors[0, :96], donors[1, 96:]])
    target = truth.copy()
    target[::7] = -1

    worker = _worker(
        make_matrix,
        target,
        donors,
        {"search.max_hybrid_error_rate": 0.0, "search.min_minor_count": 5},
    )
    result = worker.run(0)

    assert result.stage_counts.segments_solved == 0
    assert result.stage_counts.viterbi_blocks == 1
    assert result.stage_counts.inbred_blocks == 7
    np.testing.assert_array_equal(result.calls, truth)

    block = np.arange(64, 128)
    missing = block[target[block] < 0]
    assert len(missing) > 0
    np.testing.assert_array_equal(result.change_history[missing], 1)
    assert result.breakpoints == [
        DonorInterval("1", 100, 9600, "donors_0", "donors_0"),
        DonorInterval("1", 9700, 51200, "donors_1", "donors_1"),
    ]
