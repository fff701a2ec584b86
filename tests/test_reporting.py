from __future__ import annotations

import json
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from pghap.utils.accuracy import AccuracyTally
from pghap.utils.pretty_metrics import PrettyMetrics

METRICS = {
    "samples": 3,
    "proportion_missing_after": 0.05,
    "stages": {"segments_solved": 2, "unsolved_blocks": 1},
    "accuracy": {"accuracy": 0.91, "error_overall": float("nan")},
}


def test_pretty_metrics_flattens_nested_names() -> None:
    df = PrettyMetrics(METRICS).to_dataframe()

    assert list(df["metric"]) == [
        "samples",
        "proportion_missing_after",
        "stages → segments_solved",
        "stages → unsolved_blocks",
        "accuracy → accuracy",
        "accuracy → error_overall",
    ]
    assert df.loc[0, "value"] == 3.0


def test_pretty_metrics_text_and_json() -> None:
    pm = PrettyMetrics(METRICS, title="Run", precision=2)

    text = pm.to_text()

    assert "Run" in text
    assert "0.91" in text
    assert json.loads(pm.to_json())["stages"]["segments_solved"] == 2


def test_plots_are_written(tmp_path: Path) -> None:
    pytest.importorskip("snpio")
    from pghap.utils.plotting import Plotting

    plotter = Plotting(prefix=str(tmp_path / "p"), plot_format="png", output_dir=tmp_path / "plots")
    summary = pd.DataFrame(
        {
            "taxon": ["a", "b"],
            "inbred_blocks": [3, 0],
            "viterbi_blocks": [1, 0],
            "smash_blocks": [0, 0],
            "unsolved_blocks": [0, 0],
        }
    )
    tally = AccuracyTally().update(np.array([0, 1, 2]), np.array([0, 1, -1]))

    stage = plotter.plot_stage_proportions(summary)
    confusion = plotter.plot_accuracy_confusion(tally.to_dataframe())

    assert stage.exists() and stage.suffix == ".png"
    assert confusion.exists()
