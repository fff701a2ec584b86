from __future__ import annotations

import logging

import numpy as np
import pytest

from pghap.impute.hypotheses import DonorHypothesis
from pghap.impute.phasing import (
    FORWARD,
    REVERSE,
    ViterbiPhaseResolver,
    expand_to_sites,
    informative_chain,
    reconcile_paths,
    states_to_calls,
)


def test_informative_chain_classifies_sites() -> None:
    target = np.array([0, 2, 1, 0, -1, 0, 2, 0])
    donor1 = np.array([0, 0, 0, 0, 0, 1, 2, 2])
    donor2 = np.array([2, 2, 2, 0, 2, 2, 2, 2])

    chain = informative_chain(target, donor1, donor2)

    np.testing.assert_array_equal(chain.sites, [0, 1, 2])
    np.testing.assert_array_equal(chain.observations, [0, 2, 1])
    assert chain.n_informative == 3
    assert chain.n_agreeing == 3
    assert chain.non_mendelian == 1
    assert chain.non_mendelian_rate == pytest.approx(1 / 3)


def test_states_to_calls() -> None:
    np.testing.assert_array_equal(states_to_calls(np.arange(5)), [0, 1, 1, 1, 2])


def test_reconcile_paths_prefers_reverse_in_first_half() -> None:
    forward = np.array([0, 0, 0, 0, 2, 2])
    reverse = np.array([1, 0, 0, 0, 1, 2])

    calls, sources = reconcile_paths(forward, reverse)

    np.testing.assert_array_equal(calls, [1, 0, 0, 0, 2, 2])
    np.testing.assert_array_equal(sources, [REVERSE] + [FORWARD] * 5)


def test_expand_to_sites_switches_one_site_late() -> None:
    out = expand_to_sites(np.array([5, 6, 7]), np.array([2, 4, 7]), 9)
    np.testing.assert_array_equal(out, [5, 5, 5, 5, 6, 6, 7, 7, 7])

    out = expand_to_sites(np.array([0, 2]), np.array([5, 10]), 12)
    np.testing.assert_array_equal(out, [0] * 7 + [2] * 5)


def test_expand_to_sites_adjacent_informative_sites() -> None:
    out = expand_to_sites(np.array([0, 2, 0]), np.array([0, 1, 2]), 5)
    np.testing.assert_array_equal(out, [0, 0, 2, 0, 0])


@pytest.fixture
def two_donors() -> np.ndarray:
    return np.vstack([np.zeros(128, dtype=np.int8), np.full(128, 2, dtype=np.int8)])


@pytest.fixture
def positions() -> np.ndarray:
    return np.arange(1, 129) * 100


def _pair() -> DonorHypothesis:
    return DonorHypothesis(0, 0, 1, 0, 0, 1, tested_sites=128)


def test_resolve_without_crossover(two_donors, positions) -> None:
    target = np.zeros(128, dtype=np.int8)

    phased = ViterbiPhaseResolver().resolve(_pair(), target, two_donors, positions)

    assert phased is not None
    np.testing.assert_array_equal(phased.phased_results, np.zeros(128))
    np.testing.assert_array_equal(phased.phase_sources, np.full(128, FORWARD))


def test_resolve_single_crossover(two_donors, positions) -> None:
    target = np.array([0] * 64 + [2] * 64, dtype=np.int8)
    target[[10, 90]] = -1

    phased = ViterbiPhaseResolver().resolve(_pair(), target, two_donors, positions)

    assert phased is not None
    assert len(phased.phased_results) == 128
    assert np.count_nonzero(np.diff(phased.phased_results)) == 1
    assert phased.phase_for_site(10) == 0
    assert phased.phase_for_site(90) == 2


def test_forward_only_resolver(two_donors, positions) -> None:
    target = np.array([0] * 64 + [2] * 64, dtype=np.int8)

    phased = ViterbiPhaseResolver(bidirectional=False).resolve(
        _pair(), target, two_donors, positions
    )

    assert phased is not None
    assert np.all(phased.phase_sources == FORWARD)


def test_resolve_rejects_short_chain(two_donors, positions, caplog) -> None:
    target = np.full(128, -1, dtype=np.int8)
    target[:9] = 0

    with caplog.at_level(logging.DEBUG, logger="pghap.impute.phasing"):
        phased = ViterbiPhaseResolver().resolve(_pair(), target, two_donors, positions)

    assert phased is None
    assert "insufficient_informative_sites" in caplog.text


def test_resolve_rejects_non_mendelian_pair(positions) -> None:
    donors = np.zeros((2, 128), dtype=np.int8)
    donors[1, 64:] = 2
    target = np.zeros(128, dtype=np.int8)
    target[:64:4] = 2

    resolver = ViterbiPhaseResolver(max_non_mendelian_rate=0.05)

    assert resolver.resolve(_pair(), target, donors, positions) is None


def test_posteriors(two_donors, positions) -> None:
    target = np.array([0] * 64 + [2] * 64, dtype=np.int8)

    sites, gamma = ViterbiPhaseResolver().posteriors(_pair(), target, two_donors, positions)

    np.testing.assert_array_equal(sites, np.arange(128))
    assert gamma.shape == (128, 5)
    assert gamma[0].argmax() == 0
    assert gamma[-1].argmax() == 4
