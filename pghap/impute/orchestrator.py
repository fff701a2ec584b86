# Standard library imports
import copy
import os
from concurrent.futures import ProcessPoolExecutor, wait
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Union

# Third-party imports
import numpy as np
import pandas as pd
from sklearn.exceptions import NotFittedError
from snpio.utils.logging import LoggerManager

# Local imports
from pghap.data_processing.config import (
    apply_dot_overrides,
    flatten_overrides,
    load_yaml_to_dataclass,
    save_dataclass_yaml,
)
from pghap.data_processing.containers import ImputeConfig
from pghap.data_processing.donors import DonorPanel, load_donor_panels
from pghap.data_processing.genotypes import GenotypeMatrix
from pghap.data_processing.transformers import SimGenotypeDataTransformer
from pghap.impute.worker import StageCounts, TaxonImputationWorker, TaxonResult
from pghap.utils.accuracy import AccuracyTally
from pghap.utils.logging_utils import configure_logger
from pghap.utils.plotting import Plotting
from pghap.utils.pretty_metrics import PrettyMetrics

# Type checking imports
if TYPE_CHECKING:
    from snpio.read_input.genotype_data import GenotypeData


def ensure_impute_config(
    config: Union[ImputeConfig, dict, str, None],
) -> ImputeConfig:
    """Return a concrete ImputeConfig (dataclass, dict, YAML path, or None).

    A dict may carry a top-level ``preset`` key, applied before the rest of the dict.

    Args:
        config (Union[ImputeConfig, dict, str, None]): The configuration to normalise.

    Returns:
        ImputeConfig: The ensured ImputeConfig.

    Raises:
        TypeError: For any other input type.
    """
    if config is None:
        return ImputeConfig()
    if isinstance(config, ImputeConfig):
        return config
    if isinstance(config, (str, Path)):
        return load_yaml_to_dataclass(str(config), ImputeConfig)
    if isinstance(config, dict):
        config = copy.deepcopy(config)
        preset = config.pop("preset", None)
        base = ImputeConfig.from_preset(preset) if preset else ImputeConfig()
        return apply_dot_overrides(base, flatten_overrides(config))

    raise TypeError("config must be an ImputeConfig, dict, YAML path, or None.")


# ---- Process-pool plumbing ---- #
# Per-process state, set once by the pool initializer.
_WORKER: Optional[TaxonImputationWorker] = None
_TRUTH: Optional[np.ndarray] = None


def _init_worker(
    target: GenotypeMatrix,
    panels: Sequence[DonorPanel],
    config: ImputeConfig,
    truth: Optional[np.ndarray],
) -> None:
    global _WORKER, _TRUTH
    _WORKER = TaxonImputationWorker(target, panels, config)
    _TRUTH = truth


def _impute_taxon_task(taxon_index: int) -> TaxonResult:
    truth = None if _TRUTH is None else _TRUTH[taxon_index]
    return _WORKER.run(taxon_index, truth)


def _terminate(processes: Sequence[Any]) -> None:
    """Stop pool processes still working on samples abandoned at the timeout."""
    for proc in processes:
        if proc.is_alive():
            proc.terminate()
    for proc in processes:
        proc.join()


class ImputeDonorHMM:
    """Impute a target genotype matrix from donor haplotype panels.

    Each target sample is matched against every donor panel: single donors and donor pairs are ranked by block-wise distance, two-donor candidates are phased with a Viterbi HMM, and accepted donor calls fill the sample's missing genotypes. Samples are processed independently, in parallel when ``io.n_jobs`` is not 1.

    Example:
        >>> imputer = ImputeDonorHMM(target, ["donors_chr1.tsv"], config={"io": {"n_jobs": 4}})
        >>> imputed = imputer.fit_transform()
        >>> imputer.write_outputs()
    """

    def __init__(
        self,
        genotype_data: Union[GenotypeMatrix, "GenotypeData"],
        donors: Sequence[Union[GenotypeMatrix, str, Path]],
        *,
        config: Optional[Union[ImputeConfig, dict, str]] = None,
        overrides: Optional[dict] = None,
    ) -> None:
        """Initialize the imputer from a unified config.

        Args:
            genotype_data (GenotypeMatrix | GenotypeData): Target genotypes, as a GenotypeMatrix or a SNPio GenotypeData object.
            donors (Sequence[GenotypeMatrix | str | Path]): Donor matrices or paths to donor tables.
            config (ImputeConfig | dict | str | None): Configuration as a dataclass, nested dict, or YAML path. If None, defaults are used.
            overrides (dict | None): Flat dot-key overrides applied last with highest precedence, e.g. {'search.smash_mode': False}.

        Raises:
            ValueError: If no donor sources are given or the target matrix is empty.
        """
        cfg = ensure_impute_config(config)
        if overrides:
            cfg = apply_dot_overrides(cfg, overrides)
        self.cfg = cfg

        self.prefix = cfg.io.prefix
        self.verbose = cfg.io.verbose
        self.debug = cfg.io.debug

        self.parameters_dir: Path
        self.metrics_dir: Path
        self.plots_dir: Path
        self.imputed_dir: Path

        logman = LoggerManager(
            __name__, prefix=self.prefix, verbose=self.verbose, debug=self.debug
        )
        self.logger = configure_logger(
            logman.get_logger(), verbose=self.verbose, debug=self.debug
        )

        if isinstance(genotype_data, GenotypeMatrix):
            self.target = genotype_data
        else:
            self.target = GenotypeMatrix.from_genotype_data(genotype_data, name=self.prefix)

        if self.target.n_taxa == 0 or self.target.n_sites == 0:
            msg = f"Target matrix is empty (shape {self.target.genotypes.shape})."
            self.logger.error(msg)
            raise ValueError(msg)

        self.donor_sources = list(donors)
        if not self.donor_sources:
            msg = "At least one donor panel is required."
            self.logger.error(msg)
            raise ValueError(msg)

        self.model_name = "ImputeDonorHMM"
        self._create_output_directories(
            self.prefix, ["parameters", "metrics", "plots", "imputed"]
        )

        # State
        self.is_fit_: bool = False
        self.panels_: List[DonorPanel] = []
        self.masked_target_: Optional[GenotypeMatrix] = None
        self.truth_: Optional[np.ndarray] = None
        self.sim_mask_: Optional[np.ndarray] = None
        self.results_: List[TaxonResult] = []
        self.stage_counts_: StageCounts = StageCounts()
        self.accuracy_: Optional[AccuracyTally] = None
        self.imputed_: Optional[GenotypeMatrix] = None
        self.metrics_: Dict[str, Any] = {}

    def fit(self) -> "ImputeDonorHMM":
        """Load and align donor panels, and mask calls for accuracy scoring when enabled.

        Returns:
            ImputeDonorHMM: The fitted imputer.

        Raises:
            MalformedDonorPanelError: If a donor panel cannot be aligned to the target.
        """
        donor_cfg = self.cfg.donors
        self.panels_ = load_donor_panels(
            self.target,
            self.donor_sources,
            approx_sites_per_panel=donor_cfg.approx_sites_per_panel if donor_cfg.chunk else None,
            min_test_sites=self.cfg.search.min_test_sites,
            logger=self.logger,
        )

        self.masked_target_ = self.target
        self.truth_ = None
        self.sim_mask_ = None
        if self.cfg.accuracy.enabled:
            tr = SimGenotypeDataTransformer(
                prop_missing=self.cfg.accuracy.prop_sites_mask,
                strategy=self.cfg.accuracy.strategy,
                seed=self.cfg.io.seed,
                logger=self.logger,
            )
            masked, masks = tr.fit_transform(self.target.genotypes)
            self.masked_target_ = self.target.with_genotypes(masked)
            self.truth_ = self.target.genotypes.copy()
            self.sim_mask_ = masks["simulated"]
            self.logger.info(
                f"Masked {int(self.sim_mask_.sum())} known calls for accuracy scoring."
            )

        save_dataclass_yaml(self.cfg, str(self.parameters_dir / "config.yaml"))
        self.is_fit_ = True
        self.logger.info(
            f"Fit complete. {self.target.n_taxa} samples, {self.target.n_sites} sites, "
            f"{len(self.panels_)} donor panels."
        )
        return self

    def transform(self) -> GenotypeMatrix:
        """Impute every target sample.

        Returns:
            GenotypeMatrix: The imputed matrix, same shape as the target.

        Raises:
            NotFittedError: If fit() has not been called prior to transform().
        """
        if not self.is_fit_:
            msg = "Model is not fitted. Call fit() before transform()."
            self.logger.error(msg)
            raise NotFittedError(msg)

        results = self._run_samples()
        self.results_ = results

        imputed = self.masked_target_.genotypes.copy()
        for r in results:
            imputed[r.taxon_index] = r.calls

        self.stage_counts_ = sum((r.stage_counts for r in results), StageCounts())
        if self.truth_ is not None:
            self.accuracy_ = sum(
                (r.accuracy for r in results if r.accuracy is not None), AccuracyTally()
            )
            # Masked cells go back to their known calls in the delivered matrix.
            imputed[self.sim_mask_] = self.truth_[self.sim_mask_]

        self.imputed_ = self.target.with_genotypes(imputed)
        self.metrics_ = self._collect_metrics()
        if self.verbose:
            PrettyMetrics(self.metrics_, title=f"{self.model_name} summary").render()
        return self.imputed_

    def fit_transform(self) -> GenotypeMatrix:
        return self.fit().transform()

    # ---- Dispatch ---- #
    def _n_workers(self) -> int:
        n_jobs = int(self.cfg.io.n_jobs)
        if n_jobs == -1:
            n_jobs = os.cpu_count() or 1
        if n_jobs < 1:
            msg = f"io.n_jobs must be -1 or a positive integer, got {self.cfg.io.n_jobs}."
            self.logger.error(msg)
            raise ValueError(msg)
        return min(n_jobs, self.target.n_taxa)

    def _unresolved(self, taxon_index: int) -> TaxonResult:
        return TaxonResult.unresolved(
            taxon_index,
            self.target.taxa[taxon_index],
            self.masked_target_.genotypes[taxon_index],
        )

    def _run_samples(self) -> List[TaxonResult]:
        target = self.masked_target_
        n_jobs = self._n_workers()
        self.logger.info(f"Imputing {target.n_taxa} samples with {n_jobs} worker(s).")

        if n_jobs == 1:
            worker = TaxonImputationWorker(target, self.panels_, self.cfg, self.logger)
            results = []
            for i in range(target.n_taxa):
                truth = None if self.truth_ is None else self.truth_[i]
                try:
                    results.append(worker.run(i, truth))
                except Exception as e:
                    self.logger.error(f"Imputation of {target.taxa[i]} failed: {e}")
                    results.append(self._unresolved(i))
            return results

        timeout = self.cfg.io.timeout_hours * 3600.0
        results: Dict[int, TaxonResult] = {}
        not_done: set = set()
        executor = ProcessPoolExecutor(
            max_workers=n_jobs,
            initializer=_init_worker,
            initargs=(target, self.panels_, self.cfg, self.truth_),
        )
        try:
            futures = {executor.submit(_impute_taxon_task, i): i for i in range(target.n_taxa)}
            done, not_done = wait(futures, timeout=timeout)
            for fut in done:
                i = futures[fut]
                try:
                    results[i] = fut.result()
                except Exception as e:
                    self.logger.error(f"Imputation of {target.taxa[i]} failed: {e}")
                    results[i] = self._unresolved(i)
            for fut in not_done:
                i = futures[fut]
                self.logger.warning(
                    f"Imputation of {target.taxa[i]} did not finish within "
                    f"{self.cfg.io.timeout_hours} hours; its calls are left unchanged."
                )
                results[i] = self._unresolved(i)
        finally:
            # Captured before shutdown, which drops the executor's handle on them.
            workers = list((executor._processes or {}).values())
            executor.shutdown(wait=False, cancel_futures=True)
            if not_done:
                _terminate(workers)

        return [results[i] for i in range(target.n_taxa)]

    # ---- Reporting ---- #
    def _collect_metrics(self) -> Dict[str, Any]:
        before = self.target.genotypes
        after = self.imputed_.genotypes
        metrics: Dict[str, Any] = {
            "samples": self.target.n_taxa,
            "sites": self.target.n_sites,
            "donor_panels": len(self.panels_),
            "samples_skipped": sum(r.skipped for r in self.results_),
            "samples_failed": sum(r.failed for r in self.results_),
            "samples_segment_solved": sum(
                r.stage_counts.segments_solved > 0 for r in self.results_
            ),
            "stages": self.stage_counts_.to_dict(),
            "proportion_missing_before": float(np.mean(before < 0)),
            "proportion_missing_after": float(np.mean(after < 0)),
            "proportion_het_after": float(np.mean(after == 1)),
        }
        if self.accuracy_ is not None:
            metrics["accuracy"] = self.accuracy_.report()
        return metrics

    def summary_dataframe(self) -> pd.DataFrame:
        """One row per sample: cascade counts, remaining missing/het proportions and breakpoint count.

        Raises:
            NotFittedError: If transform() has not been run.
        """
        if not self.results_:
            msg = "No results yet. Call fit_transform() first."
            self.logger.error(msg)
            raise NotFittedError(msg)

        rows = []
        for r in self.results_:
            row = {"taxon": r.taxon}
            row.update(r.stage_counts.to_dict())
            row.update(
                {
                    "heterozygous_like": r.heterozygous_like,
                    "skipped": r.skipped,
                    "failed": r.failed,
                    "proportion_missing": r.proportion_missing,
                    "proportion_het": r.proportion_het,
                    "breakpoints": len(r.breakpoints),
                }
            )
            rows.append(row)
        return pd.DataFrame(rows)

    def intervals_dataframe(self) -> pd.DataFrame:
        """Donor intervals of every sample."""
        rows = [
            {
                "taxon": r.taxon,
                "chromosome": iv.chromosome,
                "start": iv.start_pos,
                "end": iv.end_pos,
                "donor1": iv.donor1,
                "donor2": iv.donor2,
            }
            for r in self.results_
            for iv in r.breakpoints
        ]
        return pd.DataFrame(
            rows, columns=["taxon", "chromosome", "start", "end", "donor1", "donor2"]
        )

    def write_outputs(self) -> Dict[str, Path]:
        """Write the imputed table and the configured summaries and plots.

        Returns:
            Dict[str, Path]: Written files keyed by artifact name.

        Raises:
            NotFittedError: If transform() has not been run.
        """
        if self.imputed_ is None:
            msg = "Nothing to write. Call fit_transform() first."
            self.logger.error(msg)
            raise NotFittedError(msg)

        out: Dict[str, Path] = {}
        stem = Path(self.prefix).name
        out["imputed"] = self.imputed_dir / f"{stem}_imputed.tsv"
        self.imputed_.to_table(out["imputed"])

        summary = self.summary_dataframe()
        if self.cfg.output.write_summary:
            out["summary"] = self.metrics_dir / "sample_summary.tsv"
            summary.to_csv(out["summary"], sep="\t", index=False)
            out["metrics"] = self.metrics_dir / "run_metrics.json"
            out["metrics"].write_text(PrettyMetrics(self.metrics_).to_json())

        if self.cfg.output.projection:
            out["intervals"] = self.imputed_dir / f"{stem}_donor_intervals.tsv"
            self.intervals_dataframe().to_csv(out["intervals"], sep="\t", index=False)

        if self.accuracy_ is not None:
            out["accuracy"] = self.metrics_dir / "accuracy_confusion.tsv"
            self.accuracy_.to_dataframe().to_csv(out["accuracy"], sep="\t")

        if self.cfg.output.plot:
            plotter = Plotting(
                prefix=self.prefix,
                plot_format=self.cfg.plot.fmt,
                plot_fontsize=self.cfg.plot.fontsize,
                plot_dpi=self.cfg.plot.dpi,
                title_fontsize=self.cfg.plot.fontsize,
                despine=self.cfg.plot.despine,
                show_plots=self.cfg.plot.show,
                verbose=self.verbose,
                debug=self.debug,
                output_dir=self.plots_dir,
            )
            out["stage_plot"] = plotter.plot_stage_proportions(summary)
            if self.accuracy_ is not None:
                out["accuracy_plot"] = plotter.plot_accuracy_confusion(
                    self.accuracy_.to_dataframe()
                )

        for name, path in out.items():
            self.logger.info(f"Wrote {name}: {path}")
        return out

    def _create_output_directories(self, prefix: str, outdirs: List[str]) -> None:
        """Create ``<prefix>_output/<dir>`` for each name and set ``self.<dir>_dir``.

        Raises:
            OSError: If a directory cannot be created.
        """
        base_dir = Path(f"{prefix}_output")
        for d in outdirs:
            subdir = base_dir / d
            setattr(self, f"{d}_dir", subdir)
            try:
                subdir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                msg = f"Failed to create directory {subdir}: {e}"
                self.logger.error(msg)
                raise OSError(msg) from e
