from pathlib import Path
from typing import Literal, Optional

import matplotlib as mpl

# Use Agg backend for headless plotting
mpl.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from snpio.utils.logging import LoggerManager

from pghap.utils.logging_utils import configure_logger, quiet_loggers

quiet_loggers()


class Plotting:
    """Summary plots of an imputation run.

    Plots are written to ``<prefix>_output/plots``.

    Example:
        >>> plotter = Plotting(prefix="run1", plot_format="png")
        >>> plotter.plot_stage_proportions(summary_df)
        >>> plotter.plot_accuracy_confusion(tally)

    Attributes:
        prefix (str): Output prefix.
        plot_format (Literal["pdf", "png", "jpeg", "jpg", "svg"]): File format.
        plot_fontsize (int): Font size.
        plot_dpi (int): Dots per inch.
        show_plots (bool): Display figures after saving.
        output_dir (Path): Where plots are written.
        logger (logging.Logger): Logger.
    """

    def __init__(
        self,
        *,
        prefix: str = "pghap",
        plot_format: Literal["pdf", "png", "jpeg", "jpg", "svg"] = "pdf",
        plot_fontsize: int = 18,
        plot_dpi: int = 300,
        title_fontsize: int = 20,
        despine: bool = True,
        show_plots: bool = False,
        verbose: bool = False,
        debug: bool = False,
        output_dir: Optional[Path] = None,
    ) -> None:
        logman = LoggerManager(
            name=__name__, prefix=prefix, verbose=bool(verbose), debug=bool(debug)
        )
        self.logger = configure_logger(
            logman.get_logger(), verbose=bool(verbose), debug=bool(debug)
        )

        self.prefix = prefix
        self.plot_format = plot_format.lstrip(".")
        self.plot_fontsize = plot_fontsize
        self.plot_dpi = plot_dpi
        self.title_fontsize = title_fontsize
        self.show_plots = show_plots

        self.param_dict = {
            "axes.labelsize": self.plot_fontsize,
            "axes.titlesize": self.title_fontsize,
            "axes.spines.top": not despine,
            "axes.spines.right": not despine,
            "xtick.labelsize": self.plot_fontsize,
            "ytick.labelsize": self.plot_fontsize,
            "legend.fontsize": self.plot_fontsize,
            "legend.facecolor": "white",
            "figure.titlesize": self.title_fontsize,
            "figure.dpi": self.plot_dpi,
            "figure.facecolor": "white",
            "axes.linewidth": 2.0,
            "lines.linewidth": 2.0,
            "font.size": self.plot_fontsize,
            "savefig.bbox": "tight",
            "savefig.facecolor": "white",
            "savefig.dpi": self.plot_dpi,
        }
        mpl.rcParams.update(self.param_dict)

        self.output_dir = output_dir or Path(f"{self.prefix}_output", "plots")
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def _save(self, fig: plt.Figure, name: str) -> Path:
        path = self.output_dir / f"{name}.{self.plot_format}"
        fig.savefig(path)
        if self.show_plots:
            plt.show()
        plt.close(fig)
        self.logger.info(f"Saved plot: {path}")
        return path

    def plot_stage_proportions(self, summary: pd.DataFrame) -> Path:
        """Stacked bar chart of solved focus blocks per cascade stage, one bar per sample.

        Args:
            summary (pd.DataFrame): Per-sample summary with a ``taxon`` column and ``inbred_blocks``, ``viterbi_blocks``, ``smash_blocks``, ``unsolved_blocks`` columns.

        Returns:
            Path: The written file.
        """
        stages = ["inbred_blocks", "viterbi_blocks", "smash_blocks", "unsolved_blocks"]
        counts = summary.set_index("taxon")[stages].astype(float)
        totals = counts.sum(axis=1).replace(0, np.nan)
        props = counts.div(totals, axis=0).fillna(0.0)

        fig, ax = plt.subplots(figsize=(max(8, 0.4 * len(props)), 8))
        bottom = np.zeros(len(props))
        colors = sns.color_palette("colorblind", len(stages))
        for stage, color in zip(stages, colors):
            ax.bar(
                props.index,
                props[stage],
                bottom=bottom,
                label=stage.replace("_blocks", ""),
                color=color,
            )
            bottom += props[stage].to_numpy()

        ax.set_xlabel("Sample")
        ax.set_ylabel("Proportion of focus blocks")
        ax.set_title("Cascade stage per focus block")
        ax.tick_params(axis="x", labelrotation=90)
        ax.legend(title="Stage", bbox_to_anchor=(1.02, 1), loc="upper left")
        return self._save(fig, "stage_proportions")

    def plot_accuracy_confusion(self, confusion: pd.DataFrame) -> Path:
        """Heatmap of known vs imputed classes at masked sites.

        Args:
            confusion (pd.DataFrame): ``AccuracyTally.to_dataframe()`` output.

        Returns:
            Path: The written file.
        """
        cols = [c for c in confusion.columns if c != "total"]
        data = confusion[cols]

        fig, ax = plt.subplots(figsize=(12, 8))
        sns.heatmap(data, annot=True, fmt="d", cmap="viridis", cbar=True, ax=ax)
        ax.set_xlabel("Imputed")
        ax.set_ylabel("Known")
        ax.set_title("Masked-call accuracy")
        return self._save(fig, "accuracy_confusion")
