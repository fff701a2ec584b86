from __future__ import annotations

import argparse
from pathlib import Path

import numpy as np
import pytest

from pghap import cli


@pytest.fixture
def tables(tmp_path: Path, make_matrix, homozygous_donors):
    target = homozygous_donors[:2].copy()
    target[:, 128:192] = -1
    target_path = tmp_path / "target.tsv"
    donors_path = tmp_path / "donors.tsv"
    make_matrix(target, taxa=["s0", "s1"], name="target").to_table(target_path)
    make_matrix(homozygous_donors, name="donors").to_table(donors_path)
    return target_path, donors_path


def test_version(capsys) -> None:
    assert cli.main(["--version"]) == 0
    assert "PG-HAP" in capsys.readouterr().out


def test_parse_seed() -> None:
    assert cli._parse_seed("random") is None
    assert cli._parse_seed("deterministic") == 42
    assert cli._parse_seed("7") == 7
    with pytest.raises(argparse.ArgumentTypeError):
        cli._parse_seed("abc")


def test_parse_overrides() -> None:
    parsed = cli._parse_overrides(["search.min_test_sites=30", "io.prefix=run1", "a=[1, 2]"])
    assert parsed == {"search.min_test_sites": 30, "io.prefix": "run1", "a": [1, 2]}
    with pytest.raises(argparse.ArgumentTypeError):
        cli._parse_overrides(["novalue"])


def test_format_seconds() -> None:
    assert cli._format_seconds(75) == "1:15"
    assert cli._format_seconds(3725) == "1:02:05"


def test_print_config_applies_precedence(tmp_path: Path, capsys) -> None:
    yaml_path = tmp_path / "cfg.yaml"
    yaml_path.write_text("search:\n  min_test_sites: 25\n  max_donor_hypotheses: 7\n")

    rc = cli.main(
        [
            "--preset",
            "thorough",
            "--config",
            str(yaml_path),
            "--max-donor-hypotheses",
            "9",
            "--set",
            "search.min_test_sites=31",
            "--print-config",
        ]
    )

    out = capsys.readouterr().out
    assert rc == 0
    assert "min_test_sites: 31" in out
    assert "max_donor_hypotheses: 9" in out
    assert "projection: true" in out


def test_dump_config(tmp_path: Path) -> None:
    path = tmp_path / "dumped.yaml"

    assert cli.main(["--n-jobs", "3", "--dump-config", str(path)]) == 0
    assert "n_jobs: 3" in path.read_text()


def test_missing_inputs_errors() -> None:
    with pytest.raises(SystemExit):
        cli.main([])


def test_unknown_format_errors(tmp_path: Path) -> None:
    with pytest.raises(SystemExit):
        cli.main(["--input", str(tmp_path / "x.bed"), "--donors", "d.tsv"])


def test_dry_run_loads_target(tables, tmp_path: Path) -> None:
    target_path, donors_path = tables

    rc = cli.main(
        [
            "--input",
            str(target_path),
            "--donors",
            str(donors_path),
            "--prefix",
            str(tmp_path / "dry"),
            "--dry-run",
        ]
    )

    assert rc == 0
    assert not (tmp_path / "dry_output").exists()


def test_full_run_writes_outputs(tables, tmp_path: Path, homozygous_donors) -> None:
    pytest.importorskip("snpio")
    target_path, donors_path = tables
    prefix = tmp_path / "full"

    rc = cli.main(
        [
            "--input",
            str(target_path),
            "--donors",
            str(donors_path),
            "--prefix",
            str(prefix),
            "--projection",
            "--seed",
            "deterministic",
        ]
    )

    assert rc == 0
    imputed = tmp_path / "full_output" / "imputed" / "full_imputed.tsv"
    assert imputed.exists()
    from pghap.data_processing.genotypes import GenotypeMatrix

    result = GenotypeMatrix.from_table(imputed)
    np.testing.assert_array_equal(result.genotypes, homozygous_donors[:2])
