from __future__ import annotations

import json
import multiprocessing
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

pytest.importorskip("snpio")

from sklearn.exceptions import NotFittedError

from pghap.data_processing.containers import ImputeConfig
from pghap.data_processing.donors import MalformedDonorPanelError
from pghap.impute.orchestrator import ImputeDonorHMM, ensure_impute_config
from pghap.impute.worker import TaxonImputationWorker


@pytest.fixture
def dataset(make_matrix, homozygous_donors):
    """Three samples: two copies of donor rows with a missing stretch, one too sparse to impute."""
    target = np.vstack([homozygous_donors[0], homozygous_donors[2], np.full(512, -1)])
    target[0, 128:256] = -1
    target[1, 300:364] = -1
    target[2, :10] = 0
    target_m = make_matrix(target, taxa=["s0", "s1", "s2"], name="target")
    donors_m = make_matrix(homozygous_donors, name="donors")
    return target_m, donors_m


def _config(tmp_path: Path, **overrides) -> dict:
    cfg = {"io": {"prefix": str(tmp_path / "run"), "n_jobs": 1, "seed": 1}}
    for key, value in overrides.items():
        section, field = key.split("__")
        cfg.setdefault(section, {})[field] = value
    return cfg


def test_ensure_impute_config_variants(tmp_path: Path) -> None:
    assert isinstance(ensure_impute_config(None), ImputeConfig)

    cfg = ensure_impute_config({"preset": "fast", "search": {"min_test_sites": 30}})
    assert cfg.search.min_test_sites == 30
    assert cfg.search.max_donor_hypotheses == 10

    path = tmp_path / "cfg.yaml"
    path.write_text("io:\n  prefix: from_yaml\n", encoding="utf-8")
    assert ensure_impute_config(str(path)).io.prefix == "from_yaml"

    with pytest.raises(TypeError):
        ensure_impute_config(42)


def test_fit_transform_sequential(tmp_path: Path, dataset, homozygous_donors) -> None:
    target, donors = dataset
    model = ImputeDonorHMM(
        target, [donors], config=_config(tmp_path, output__projection=True, output__plot=True)
    )

    imputed = model.fit_transform()

    np.testing.assert_array_equal(imputed.genotypes[0], homozygous_donors[0])
    np.testing.assert_array_equal(imputed.genotypes[1], homozygous_donors[2])
    np.testing.assert_array_equal(imputed.genotypes[2], target.genotypes[2])
    assert model.stage_counts_.segments_solved == 2
    assert model.metrics_["samples_skipped"] == 1

    summary = model.summary_dataframe()
    assert list(summary["taxon"]) == ["s0", "s1", "s2"]
    assert list(summary["skipped"]) == [False, False, True]

    paths = model.write_outputs()
    for key in ("imputed", "summary", "metrics", "intervals", "stage_plot"):
        assert paths[key].exists()
    written = pd.read_csv(paths["imputed"], sep="\t")
    assert list(written.columns[4:]) == ["s0", "s1", "s2"]
    metrics = json.loads(paths["metrics"].read_text())
    assert metrics["stages"]["segments_solved"] == 2
    intervals = pd.read_csv(paths["intervals"], sep="\t")
    assert set(intervals["taxon"]) == {"s0", "s1"}
    assert (tmp_path / "run_output" / "parameters" / "config.yaml").exists()


def test_parallel_matches_sequential(tmp_path: Path, dataset) -> None:
    target, donors = dataset
    seq = ImputeDonorHMM(target, [donors], config=_config(tmp_path)).fit_transform()
    par = ImputeDonorHMM(
        target, [donors], config=_config(tmp_path), overrides={"io.n_jobs": 2}
    ).fit_transform()

    np.testing.assert_array_equal(seq.genotypes, par.genotypes)


def test_accuracy_mode_restores_masked_calls(tmp_path: Path, dataset) -> None:
    target, donors = dataset
    model = ImputeDonorHMM(
        target,
        [donors],
        config=_config(tmp_path, accuracy__enabled=True, accuracy__prop_sites_mask=0.05),
    )

    imputed = model.fit_transform()

    assert model.accuracy_ is not None
    assert model.accuracy_.n_masked == int(model.sim_mask_.sum())
    assert model.accuracy_.error_rate() == 0.0
    np.testing.assert_array_equal(
        imputed.genotypes[model.sim_mask_], target.genotypes[model.sim_mask_]
    )
    assert "accuracy" in model.metrics_
    assert "accuracy" in model.write_outputs()


def test_failed_sample_is_emitted_unresolved(tmp_path: Path, dataset, monkeypatch) -> None:
    target, donors = dataset

    def boom(self, taxon_index, truth=None):
        raise RuntimeError("worker crashed")

    monkeypatch.setattr(TaxonImputationWorker, "run", boom)
    model = ImputeDonorHMM(target, [donors], config=_config(tmp_path))

    imputed = model.fit_transform()

    np.testing.assert_array_equal(imputed.genotypes, target.genotypes)
    assert model.metrics_["samples_failed"] == 3


def test_timeout_stops_running_workers(tmp_path: Path, dataset) -> None:
    target, donors = dataset
    model = ImputeDonorHMM(
        target,
        [donors],
        config=_config(tmp_path),
        overrides={"io.n_jobs": 2, "io.timeout_hours": 1e-9},
    )

    before = set(multiprocessing.active_children())
    imputed = model.fit_transform()

    np.testing.assert_array_equal(imputed.genotypes, target.genotypes)
    assert model.metrics_["samples_failed"] == 3
    assert set(multiprocessing.active_children()) <= before


def test_transform_before_fit_raises(tmp_path: Path, dataset) -> None:
    target, donors = dataset
    model = ImputeDonorHMM(target, [donors], config=_config(tmp_path))

    with pytest.raises(NotFittedError):
        model.transform()
    with pytest.raises(NotFittedError):
        model.write_outputs()


def test_invalid_inputs(tmp_path: Path, dataset, make_matrix) -> None:
    target, donors = dataset

    with pytest.raises(ValueError):
        ImputeDonorHMM(target, [], config=_config(tmp_path))

    far = make_matrix(np.zeros((1, 10)), positions=np.arange(1, 11) * 7, name="far")
    with pytest.raises(MalformedDonorPanelError):
        ImputeDonorHMM(target, [far], config=_config(tmp_path)).fit()

    with pytest.raises(ValueError):
        ImputeDonorHMM(target, [donors], config=_config(tmp_path, io__n_jobs=0)).fit_transform()
