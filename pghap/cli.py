#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""PG-HAP Imputation CLI

Argument-precedence model:
    code defaults  <  preset (--preset)  <  YAML (--config)  <  explicit CLI flags  <  --set k=v

Notes
-----
- Preset is a CLI-only choice; a 'preset' key in YAML is ignored with a warning.
- CLI flags only override when explicitly provided (argparse uses SUPPRESS).
- --set key=value has the highest precedence and applies dot-path overrides.

Examples
--------
pghap --input target.tsv --donors donors_chr1.tsv donors_chr2.tsv --prefix run1
pghap --input target.vcf.gz --donors donors.tsv --preset thorough --n-jobs -1 \
    --set search.smash_mode=False --verbose
pghap --input target.tsv --donors donors.tsv --accuracy --seed deterministic
"""

from __future__ import annotations

import argparse
import ast
import logging
import sys
import time
from functools import wraps
from pathlib import Path
from typing import Callable, List, Optional, ParamSpec, TypeVar, cast

from pghap.data_processing.config import (
    apply_dot_overrides,
    dataclass_to_yaml,
    load_yaml_to_dataclass,
    save_dataclass_yaml,
)
from pghap.data_processing.containers import ImputeConfig
from pghap.data_processing.genotypes import GenotypeMatrix

P = ParamSpec("P")
R = TypeVar("R")


# ----------------------------- CLI Utilities ----------------------------- #
def _print_version() -> None:
    from pghap import __version__ as version

    logging.info(f"Using PG-HAP version: {version}")


def _configure_logging(
    verbose: bool, debug: bool = False, log_file: Optional[str] = None
) -> None:
    """Configure the root logger.

    Args:
        verbose (bool): If True, INFO; else ERROR.
        debug (bool): If True, DEBUG (takes precedence over verbose).
        log_file (Optional[str]): Optional file to tee logs to.
    """
    level = logging.DEBUG if debug else logging.INFO if verbose else logging.ERROR
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode="w", encoding="utf-8"))
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )


def _parse_seed(seed_arg: str) -> Optional[int]:
    """Parse --seed into an int or None."""
    s = seed_arg.strip().lower()
    if s == "random":
        return None
    if s == "deterministic":
        return 42
    try:
        return int(seed_arg)
    except ValueError as e:
        raise argparse.ArgumentTypeError(
            "Invalid --seed. Use 'random', 'deterministic', or an integer."
        ) from e


def _parse_overrides(pairs: list[str]) -> dict:
    """Parse --set key=value into typed values via literal_eval."""
    out: dict = {}
    for kv in pairs or []:
        if "=" not in kv:
            raise argparse.ArgumentTypeError(f"--set expects key=value, got '{kv}'")
        k, v = kv.split("=", 1)
        v = v.strip()
        try:
            out[k.strip()] = ast.literal_eval(v)
        except (ValueError, SyntaxError):
            out[k.strip()] = v
    return out


def _args_to_cli_overrides(args: argparse.Namespace) -> dict:
    """Convert explicitly provided CLI flags into config dot-overrides."""
    overrides: dict = {}

    if hasattr(args, "prefix"):
        overrides["io.prefix"] = args.prefix
    if getattr(args, "verbose", False):
        overrides["io.verbose"] = True
    if getattr(args, "debug", False):
        overrides["io.debug"] = True
    if hasattr(args, "n_jobs"):
        overrides["io.n_jobs"] = int(args.n_jobs)
    if hasattr(args, "seed"):
        overrides["io.seed"] = _parse_seed(args.seed)
    if hasattr(args, "timeout_hours"):
        overrides["io.timeout_hours"] = float(args.timeout_hours)

    if hasattr(args, "max_donor_hypotheses"):
        overrides["search.max_donor_hypotheses"] = int(args.max_donor_hypotheses)
    if hasattr(args, "no_smash"):
        overrides["search.smash_mode"] = False
    if hasattr(args, "forward_only"):
        overrides["hmm.bidirectional_viterbi"] = False

    if hasattr(args, "chunk_sites"):
        overrides["donors.chunk"] = True
        overrides["donors.approx_sites_per_panel"] = int(args.chunk_sites)
    if hasattr(args, "impute_donor_file"):
        overrides["donors.impute_donor_file"] = True

    if hasattr(args, "accuracy"):
        overrides["accuracy.enabled"] = True
    if hasattr(args, "mask_prop"):
        overrides["accuracy.prop_sites_mask"] = float(args.mask_prop)

    if hasattr(args, "projection"):
        overrides["output.projection"] = True
    if hasattr(args, "plot"):
        overrides["output.plot"] = True
    if hasattr(args, "plot_format"):
        overrides["plot.fmt"] = args.plot_format

    return overrides


def _format_seconds(seconds: float) -> str:
    total = int(round(seconds))
    minutes, secs = divmod(total, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours:d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:d}:{secs:02d}"


def log_run_time(fn: Callable[P, R]) -> Callable[P, R]:
    """Decorator that logs how long the wrapped call took, or when it failed."""

    @wraps(fn)
    def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        start = time.perf_counter()
        try:
            result = fn(*args, **kwargs)
        except Exception:
            elapsed = time.perf_counter() - start
            logging.error(
                f"Imputation failed after {elapsed:0.2f}s ({_format_seconds(elapsed)}).",
                exc_info=True,
            )
            raise
        elapsed = time.perf_counter() - start
        logging.info(
            f"Imputation finished in {elapsed:0.2f}s ({_format_seconds(elapsed)})."
        )
        return result

    return cast(Callable[P, R], wrapper)


# ------------------------------ Core Runner ------------------------------ #
def _infer_format(path: str) -> Optional[str]:
    if path.endswith((".vcf", ".vcf.gz")):
        return "vcf"
    if path.endswith((".tsv", ".txt", ".tab")):
        return "table"
    return None


def load_target(
    input_path: str,
    fmt: str,
    *,
    popmap_path: Optional[str] = None,
    verbose: bool = False,
    prefix: str = "pghap",
) -> GenotypeMatrix:
    """Load the target matrix from a genotype table or a VCF (through SNPio)."""
    logging.info(f"Loading {fmt.upper()} target genotypes from {input_path}...")
    if fmt == "table":
        return GenotypeMatrix.from_table(input_path)
    if fmt == "vcf":
        from snpio import VCFReader

        gd = VCFReader(
            filename=input_path,
            popmapfile=popmap_path,
            force_popmap=False,
            verbose=verbose,
            prefix=f"snpio_{prefix}",
        )
        return GenotypeMatrix.from_genotype_data(gd, name=Path(input_path).stem)
    raise ValueError(f"Unsupported genotype data format: {fmt}")


def build_effective_config(args: argparse.Namespace) -> ImputeConfig:
    """Build the effective config.

    Precedence (lowest → highest):
        defaults < preset (--preset) < YAML (--config) < explicit CLI flags < --set
    """
    if hasattr(args, "preset"):
        cfg = ImputeConfig.from_preset(args.preset)
        logging.info(f"Initialized config from '{args.preset}' preset.")
    else:
        cfg = ImputeConfig()

    yaml_path = getattr(args, "config", None)
    if yaml_path:
        cfg = load_yaml_to_dataclass(
            yaml_path, ImputeConfig, base=cfg, yaml_preset_behavior="ignore"
        )
        logging.info(f"Loaded YAML config from {yaml_path}.")

    cli_overrides = _args_to_cli_overrides(args)
    if cli_overrides:
        cfg = apply_dot_overrides(cfg, cli_overrides)

    user_overrides = _parse_overrides(getattr(args, "set", []))
    if user_overrides:
        cfg = apply_dot_overrides(cfg, user_overrides)
    return cfg


@log_run_time
def run_imputation(target: GenotypeMatrix, donors: List[str], cfg: ImputeConfig):
    from pghap.impute.orchestrator import ImputeDonorHMM

    model = ImputeDonorHMM(target, donors, config=cfg)
    imputed = model.fit_transform()
    model.write_outputs()
    return imputed


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="pghap",
        description="Impute missing genotypes from donor haplotype panels with a block-wise donor search and HMM phasing. Handle configuration via presets, YAML, and CLI flags.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
        usage="%(prog)s [options]",
    )

    # ----------------------------- Required I/O ----------------------------- #
    parser.add_argument(
        "--input",
        default=argparse.SUPPRESS,
        help="Path to the target genotypes: a tab-separated genotype table or a VCF.",
    )
    parser.add_argument(
        "--donors",
        nargs="+",
        default=argparse.SUPPRESS,
        help="One or more tab-separated donor haplotype tables.",
    )
    parser.add_argument(
        "--format",
        choices=("infer", "table", "vcf"),
        default=argparse.SUPPRESS,
        help="Target input format. If 'infer', deduced from file extension. The default is 'infer'.",
    )
    parser.add_argument(
        "--popmap",
        default=argparse.SUPPRESS,
        help="Optional population map passed to SNPio when reading a VCF.",
    )
    parser.add_argument(
        "--prefix",
        default=argparse.SUPPRESS,
        help="Output prefix. Outputs go to <prefix>_output/.",
    )

    # ---------------------- Generic Config Inputs -------------------------- #
    parser.add_argument(
        "--config", default=argparse.SUPPRESS, help="YAML config file."
    )
    parser.add_argument(
        "--preset",
        choices=("fast", "balanced", "thorough"),
        default=argparse.SUPPRESS,
        help="If provided, initialize the config from this preset; otherwise start from dataclass defaults.",
    )
    parser.add_argument(
        "--set",
        action="append",
        default=argparse.SUPPRESS,
        help="Dot-key overrides, e.g. --set search.min_minor_count=30",
    )
    parser.add_argument(
        "--print-config",
        action="store_true",
        help="Print the effective config and exit.",
    )
    parser.add_argument(
        "--dump-config",
        default=argparse.SUPPRESS,
        help="Write the effective config YAML to this path and exit.",
    )

    # ------------------------------ Toggles -------------------------------- #
    parser.add_argument(
        "--n-jobs",
        type=int,
        default=argparse.SUPPRESS,
        help="Worker processes; -1 uses every core.",
    )
    parser.add_argument(
        "--timeout-hours",
        type=float,
        default=argparse.SUPPRESS,
        help="Wall-clock limit for the worker pool.",
    )
    parser.add_argument(
        "--max-donor-hypotheses",
        type=int,
        default=argparse.SUPPRESS,
        help="Ranked hypotheses kept per window.",
    )
    parser.add_argument(
        "--no-smash",
        action="store_true",
        default=argparse.SUPPRESS,
        help="Disable the unphased donor-pair fallback.",
    )
    parser.add_argument(
        "--forward-only",
        action="store_true",
        default=argparse.SUPPRESS,
        help="Decode donor pairs with forward Viterbi only.",
    )
    parser.add_argument(
        "--chunk-sites",
        type=int,
        default=argparse.SUPPRESS,
        help="Split each donor file into panels of about this many sites.",
    )
    parser.add_argument(
        "--impute-donor-file",
        action="store_true",
        default=argparse.SUPPRESS,
        help="Target samples also appear among the donors; exclude each sample from its own search.",
    )
    parser.add_argument(
        "--accuracy",
        action="store_true",
        default=argparse.SUPPRESS,
        help="Mask a proportion of known calls and report imputation accuracy.",
    )
    parser.add_argument(
        "--mask-prop",
        type=float,
        default=argparse.SUPPRESS,
        help="Proportion of known calls to mask with --accuracy (0-1).",
    )
    parser.add_argument(
        "--projection",
        action="store_true",
        default=argparse.SUPPRESS,
        help="Write donor intervals per sample.",
    )
    parser.add_argument(
        "--plot",
        action="store_true",
        default=argparse.SUPPRESS,
        help="Write summary plots.",
    )
    parser.add_argument(
        "--plot-format",
        choices=("png", "pdf", "svg", "jpg", "jpeg"),
        default=argparse.SUPPRESS,
        help="Figure format for plots.",
    )

    # --------------------------- Seed & logging ---------------------------- #
    parser.add_argument(
        "--seed",
        default=argparse.SUPPRESS,
        help="Random seed: 'random', 'deterministic', or an integer.",
    )
    parser.add_argument("--verbose", action="store_true", help="Info-level logging.")
    parser.add_argument("--debug", action="store_true", help="Debug-level logging.")
    parser.add_argument(
        "--log-file", default=argparse.SUPPRESS, help="Also write logs to a file."
    )

    # ------------------------------ Safety/UX ------------------------------ #
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Parse args, build the config and load data, but skip imputation.",
    )
    parser.add_argument(
        "--version", action="store_true", help="Print PG-HAP version and exit."
    )

    args = parser.parse_args(argv)

    if getattr(args, "version", False):
        from pghap import __version__

        print(f"PG-HAP {__version__}")
        return 0

    _configure_logging(
        verbose=getattr(args, "verbose", False),
        debug=getattr(args, "debug", False),
        log_file=getattr(args, "log_file", None),
    )
    logging.info("Starting PG-HAP imputation...")
    _print_version()

    try:
        cfg = build_effective_config(args)
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))
        return 2

    if getattr(args, "print_config", False) or hasattr(args, "dump_config"):
        if getattr(args, "print_config", False):
            print(dataclass_to_yaml(cfg))
        if hasattr(args, "dump_config"):
            save_dataclass_yaml(cfg, args.dump_config)
            logging.info(f"Saved config to {args.dump_config}")
        return 0

    input_path = getattr(args, "input", None)
    donors = getattr(args, "donors", None)
    if input_path is None or not donors:
        parser.error("You must provide --input and --donors.")
        return 2

    fmt = getattr(args, "format", "infer")
    if fmt == "infer":
        fmt = _infer_format(input_path)
        if fmt is None:
            parser.error(
                "Could not infer input format from file extension. Please provide --format."
            )
            return 2

    if not hasattr(args, "prefix"):
        cfg = apply_dot_overrides(cfg, {"io.prefix": Path(input_path).name.split(".")[0]})

    target = load_target(
        input_path,
        fmt,
        popmap_path=getattr(args, "popmap", None),
        verbose=cfg.io.verbose,
        prefix=cfg.io.prefix,
    )
    logging.info(
        f"Loaded {target.n_taxa} samples x {target.n_sites} sites; "
        f"{len(donors)} donor file(s)."
    )

    if getattr(args, "dry_run", False):
        logging.info("Dry run complete. Exiting without imputation.")
        return 0

    run_imputation(target, donors, cfg)
    logging.info("PG-HAP imputation complete.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
