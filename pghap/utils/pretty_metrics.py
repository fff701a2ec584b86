from __future__ import annotations

import json
import math
from typing import Any, Iterable, List, Mapping, Optional, Tuple

import pandas as pd
from rich.console import Console
from rich.table import Table
from rich.text import Text


class PrettyMetrics:
    """Render nested run statistics as a two-column Rich table.

    Nested mappings are flattened into ``parent → child`` metric names. Proportions of metrics where higher is better (accuracy, F1, r²) or lower is better (error, missing, unimputed) are coloured.

    Attributes:
        metrics (Mapping[str, Any]): Metrics payload.
        precision (int): Decimal precision for numeric formatting.
        title (Optional[str]): Optional table title.
    """

    def __init__(
        self,
        metrics: Mapping[str, Any],
        *,
        precision: int = 4,
        title: Optional[str] = "Metrics",
    ) -> None:
        self.metrics = metrics
        self.precision = precision
        self.title = title

    def render(self, console: Optional[Console] = None) -> None:
        """Print the table to stdout (or ``console``)."""
        (console or Console()).print(self._table())

    def to_text(self) -> str:
        """Return the rendered table as plain text."""
        console = Console(record=True, width=100)
        console.print(self._table())
        return console.export_text(clear=False)

    def to_dataframe(self) -> pd.DataFrame:
        """Flattened metrics with columns ``metric`` and ``value``."""
        out: List[Tuple[str, Any]] = []
        for name, val in self._flatten(self.metrics):
            out.append((name, float(val) if self._is_numeric(val) else str(val)))
        return pd.DataFrame(out, columns=["metric", "value"])

    def to_json(self) -> str:
        return json.dumps(self.metrics, separators=(",", ":"), ensure_ascii=False, default=str)

    def _table(self) -> Table:
        table = Table(title=self.title or None, header_style="bold", show_lines=False)
        table.add_column("Metric", no_wrap=True)
        table.add_column("Value", justify="right")
        for name, val in self._flatten(self.metrics):
            table.add_row(name, self._styled(name, val))
        return table

    @staticmethod
    def _flatten(d: Mapping[str, Any], prefix: str = "") -> Iterable[Tuple[str, Any]]:
        for k, v in d.items():
            name = f"{prefix} → {k}" if prefix else str(k)
            if isinstance(v, Mapping):
                yield from PrettyMetrics._flatten(v, name)
            else:
                yield name, v

    def _format(self, v: float) -> str:
        if float(v).is_integer() and abs(v) < 1e12:
            return str(int(v))
        if abs(v) >= 1000 or (0 < abs(v) < 1e-3):
            return f"{v:.{self.precision}e}"
        return f"{v:.{self.precision}f}"

    @staticmethod
    def _is_numeric(x: Any) -> bool:
        if isinstance(x, bool) or not isinstance(x, (int, float)):
            return False
        return math.isfinite(float(x))

    @staticmethod
    def _better_is_higher(metric_name: str) -> Optional[bool]:
        name = metric_name.lower()
        if any(k in name for k in ("acc", "f1", "r2", "solved")):
            return True
        if any(k in name for k in ("error", "missing", "unimputed")):
            return False
        return None

    def _styled(self, metric: str, value: Any) -> Text:
        if not self._is_numeric(value):
            return Text(str(value))
        value = float(value)
        t = Text(self._format(value))
        pref = self._better_is_higher(metric)
        if pref is None or not 0.0 <= value <= 1.0:
            return t
        good = value if pref else 1.0 - value
        if good >= 0.8:
            t.stylize("bold green")
        elif good >= 0.6:
            t.stylize("green")
        elif good <= 0.3:
            t.stylize("red")
        return t
