"""
batch.py - Fan-out/fan-in computation of co-localisation across images

Every (image, from, to, parent) combination is an independent unit of
work. Units are built into a flat task list, run through a joblib
worker pool configured by ParallelConfig, and gathered into a single
result table once every unit has finished.

Per-unit failures (too few cells, invalid parent, degenerate window)
never abort the batch: they become rows with missing values plus an
entry in the exclusion table. Configuration errors abort before any
work is dispatched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from itertools import permutations
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Sequence, Tuple, Union

if TYPE_CHECKING:
    from kontextloji.data.core import CellTable, ImageCells
    from kontextloji.data.hierarchy import CellTypeHierarchy

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from kontextloji.data.config import (
    ConfigurationError,
    InvalidHierarchyError,
    SpatialStatConfig,
    UnitFailure,
)

from .kontextual import context_l
from .ripley import image_cross_l, l_summary

logger = logging.getLogger(__name__)

KEY_COLUMNS = ["image_id", "from_type", "to_type", "parent"]
RESULT_COLUMNS = KEY_COLUMNS + [
    "original", "kontextual", "n_from", "n_to", "n_parent", "status", "message",
]
CURVE_COLUMNS = KEY_COLUMNS + ["r", "original", "kontextual"]

Relationship = Union[Tuple[str, str], Tuple[str, str, Optional[Union[str, Iterable[str]]]]]


@dataclass(frozen=True)
class RelationshipTask:
    """
    One unit of work: a relationship evaluated in one image.

    Attributes
    ----------
    image_id : str
    from_type, to_type : str
        Labels as requested.
    from_types, to_types : frozenset
        Cell types pooled on each side (a hierarchy node expands to
        its population).
    parent : str or None
        Display label of the parent population.
    parent_types : frozenset or None
        Resolved parent population. None = plain L-function only.
    error : str or None
        Set when the parent could not be resolved; the task then
        reports an invalid hierarchy without computing anything.
    """

    image_id: str
    from_type: str
    to_type: str
    from_types: frozenset
    to_types: frozenset
    parent: Optional[str] = None
    parent_types: Optional[frozenset] = None
    error: Optional[str] = None


def _resolve_relationship(rel, hierarchy: Optional[CellTypeHierarchy]) -> dict:
    """Task fields (everything except image_id) for one relationship."""
    if len(rel) == 2:
        from_type, to_type = rel
        parent = None
    elif len(rel) == 3:
        from_type, to_type, parent = rel
    else:
        raise ConfigurationError(f"Relationship must be (from, to) or (from, to, parent), got {rel!r}")

    from_type, to_type = str(from_type), str(to_type)
    fields = dict(
        from_type=from_type,
        to_type=to_type,
        from_types=hierarchy.expand(from_type) if hierarchy is not None else frozenset([from_type]),
        to_types=hierarchy.expand(to_type) if hierarchy is not None else frozenset([to_type]),
    )
    if parent is None:
        return fields

    if isinstance(parent, str):
        if hierarchy is None:
            raise ConfigurationError(f"Parent label '{parent}' requires a hierarchy")
        fields["parent"] = parent
        try:
            fields["parent_types"] = hierarchy.resolve_parent(parent, to_type)
        except InvalidHierarchyError as err:
            fields["error"] = str(err)
        return fields

    parent_types = frozenset(str(p) for p in parent)
    fields["parent"] = "+".join(sorted(parent_types))
    if fields["to_types"] <= parent_types:
        fields["parent_types"] = parent_types
    else:
        fields["error"] = f"'{to_type}' is not part of parent population {sorted(parent_types)}"
    return fields


def default_relationships(table: CellTable,
                          hierarchy: Optional[CellTypeHierarchy] = None) -> List[tuple]:
    """
    Relationships evaluated when none are given.

    With a hierarchy: every (from, to, parent) where `to` is a child of
    `parent` and `from` is any cell type of the table. Without: every
    ordered pair of distinct cell types.
    """
    types = table.cell_type_vocabulary
    if hierarchy is not None:
        return hierarchy.parent_combinations(types)
    return list(permutations(types, 2))


def build_tasks(table: CellTable,
                relationships: Optional[Sequence[Relationship]] = None,
                hierarchy: Optional[CellTypeHierarchy] = None,
                images: Optional[Sequence[str]] = None) -> List[RelationshipTask]:
    """
    Flat task list (image × relationship).

    Raises
    ------
    ConfigurationError
        Unknown images or malformed relationships.
    """
    if images is None:
        image_ids = list(table.image_index)
    else:
        image_ids = [str(i) for i in images]
        unknown = [i for i in image_ids if i not in table.windows]
        if unknown:
            raise ConfigurationError(f"Images not found: {unknown}")

    if relationships is None:
        relationships = default_relationships(table, hierarchy)
    resolved = [_resolve_relationship(rel, hierarchy) for rel in relationships]

    return [
        RelationshipTask(image_id=image_id, **fields)
        for image_id in image_ids
        for fields in resolved
    ]


def _run_task(image: ImageCells, task: RelationshipTask, radii: np.ndarray,
              config: SpatialStatConfig) -> Tuple[dict, List[dict]]:
    """Evaluate one task. Unit failures are turned into a status."""
    keys = {
        "image_id": task.image_id,
        "from_type": task.from_type,
        "to_type": task.to_type,
        "parent": task.parent,
    }
    n_parent = int(image.select(list(task.parent_types)).sum()) if task.parent_types else np.nan
    row = dict(
        keys,
        original=np.nan,
        kontextual=np.nan,
        n_from=int(image.select(list(task.from_types)).sum()),
        n_to=int(image.select(list(task.to_types)).sum()),
        n_parent=n_parent,
        status="ok",
        message="",
    )
    original_curve = kontextual_curve = None

    # The full-window L stands on its own; a failed context leaves it in place
    try:
        l_values = image_cross_l(
            image, task.from_types, task.to_types, radii,
            config.correction, config.sigma, config.min_cells,
        )
        row["original"] = l_summary(l_values, radii)
        original_curve = l_values - radii
        if task.error is not None:
            raise InvalidHierarchyError(task.error)
        if task.parent_types is not None:
            kontextual_curve, row["kontextual"], _ = context_l(
                image, task.from_types, task.to_types, task.parent_types, radii,
                correction=config.correction,
                sigma=config.sigma,
                mode=config.mode,
                min_cells=config.min_cells,
            )
    except UnitFailure as err:
        row["status"] = err.reason
        row["message"] = str(err)

    curves = []
    if config.return_curves:
        for k, r in enumerate(radii):
            curves.append(dict(
                keys,
                r=float(r),
                original=np.nan if original_curve is None else float(original_curve[k]),
                kontextual=np.nan if kontextual_curve is None else float(kontextual_curve[k]),
            ))
    return row, curves


def _sorted(df: pd.DataFrame, extra: Sequence[str] = ()) -> pd.DataFrame:
    if df.empty:
        return df.reset_index(drop=True)
    order = df[KEY_COLUMNS].assign(parent=df["parent"].fillna(""))
    for col in extra:
        order[col] = df[col]
    idx = order.sort_values(KEY_COLUMNS + list(extra), kind="stable").index
    return df.loc[idx].reset_index(drop=True)


@dataclass
class ColocalizationResult:
    """
    Result of a batch co-localisation run.

    Attributes
    ----------
    table : pd.DataFrame
        One row per (image, from, to, parent). Failed units have a non-'ok'
        status and NaN for every value that could not be computed.
    exclusions : pd.DataFrame
        Audit record of failed units (keys, status, message).
    curves : pd.DataFrame or None
        Per-radius values (when requested).
    radii : np.ndarray
    config : SpatialStatConfig
    """

    table: pd.DataFrame
    exclusions: pd.DataFrame
    curves: Optional[pd.DataFrame] = None
    radii: np.ndarray = field(default_factory=lambda: np.empty(0))
    config: SpatialStatConfig = field(default_factory=SpatialStatConfig)

    @property
    def n_excluded(self) -> int:
        return len(self.exclusions)

    @property
    def excluded_images(self) -> List[str]:
        """Images where every unit failed."""
        failed = self.table.groupby("image_id")["status"].apply(lambda s: bool((s != "ok").all()))
        return sorted(failed[failed].index)

    def aggregate(self, value: str = "kontextual", func: str = "mean") -> pd.DataFrame:
        """
        Summarise each relationship across images.

        Missing values are skipped, never treated as zero.

        Parameters
        ----------
        value : str
            'original' or 'kontextual'.
        func : str
            Any pandas reduction name ('mean', 'median', 'std', ...).

        Returns
        -------
        pd.DataFrame
            One row per (from, to, parent) with the reduced value,
            the number of contributing images and the number excluded.
        """
        if value not in ("original", "kontextual"):
            raise ValueError(f"value must be 'original' or 'kontextual', got '{value}'")
        keys = ["from_type", "to_type", "parent"]
        stats = self.table.groupby(keys, dropna=False, sort=True)[value].agg([func, "count", "size"])
        out = pd.DataFrame({
            value: stats[func],
            "n_images": stats["count"],
            "n_excluded": stats["size"] - stats["count"],
        })
        return out.reset_index()

    def sign_flips(self) -> pd.DataFrame:
        """Rows where context reverses the sign of the raw association."""
        t = self.table
        mask = (t["status"] == "ok") & (np.sign(t["original"]) * np.sign(t["kontextual"]) < 0)
        return t[mask].reset_index(drop=True)

    def to_wide(self, value: str = "kontextual") -> pd.DataFrame:
        """Image × relationship matrix (e.g. as features for outcome models)."""
        t = self.table.copy()
        parent = t["parent"].fillna("")
        t["relationship"] = t["from_type"] + "__" + t["to_type"]
        t.loc[parent != "", "relationship"] = t["relationship"] + "__" + parent
        wide = t.pivot(index="image_id", columns="relationship", values=value)
        wide.columns.name = None
        return wide

    def impute(self, fill_value: float = 0.0) -> "ColocalizationResult":
        """
        Copy with missing values replaced by `fill_value`.

        Only values that exist for the relationship are filled:
        'kontextual' stays missing for rows without a parent.
        """
        t = self.table.copy()
        t["original"] = t["original"].fillna(fill_value)
        has_parent = t["parent"].notna()
        t.loc[has_parent, "kontextual"] = t.loc[has_parent, "kontextual"].fillna(fill_value)
        return ColocalizationResult(t, self.exclusions.copy(), self.curves, self.radii, self.config)

    def __repr__(self) -> str:
        return (
            f"ColocalizationResult({len(self.table)} units, "
            f"{self.table['image_id'].nunique() if len(self.table) else 0} images, "
            f"{self.n_excluded} excluded)"
        )


def compute_colocalization(table: CellTable,
                           relationships: Optional[Sequence[Relationship]] = None,
                           hierarchy: Optional[CellTypeHierarchy] = None,
                           config: Optional[SpatialStatConfig] = None,
                           images: Optional[Sequence[str]] = None,
                           verbose: bool = True) -> ColocalizationResult:
    """
    Compute L-function and Kontextual values for many relationships
    across all images.

    Parameters
    ----------
    table : CellTable
    relationships : sequence of tuples, optional
        (from, to) for the plain L-function, or (from, to, parent) for
        Kontextual. `parent` is a hierarchy label or a collection of cell
        types. Defaults to all hierarchy parent combinations, or all
        ordered type pairs without a hierarchy.
    hierarchy : CellTypeHierarchy, optional
    config : SpatialStatConfig, optional
        Radii, edge correction, inhomogeneity, mode and ParallelConfig.
    images : sequence of str, optional
        Restrict to these images.
    verbose : bool

    Returns
    -------
    ColocalizationResult

    Raises
    ------
    ConfigurationError
        Invalid radii, unknown images, parent labels without a hierarchy.

    Examples
    --------
    >>> cfg = SpatialStatConfig(r_max=50, parallel=ParallelConfig(4, 'processes'))
    >>> res = compute_colocalization(table, hierarchy=h, config=cfg)
    >>> res.aggregate('kontextual')
    """
    config = config or SpatialStatConfig()
    radii = config.get_radii()
    tasks = build_tasks(table, relationships, hierarchy, images)

    if verbose:
        print(f"\n[Co-localisation] {len(tasks)} units "
              f"({len({t.image_id for t in tasks})} images), "
              f"{len(radii)} radii, correction={config.correction}, "
              f"scheduler={config.parallel.scheduler}")

    views: Dict[str, ImageCells] = {i: table.image_view(i) for i in {t.image_id for t in tasks}}

    parallel = Parallel(n_jobs=config.parallel.n_jobs, backend=config.parallel.backend)
    outputs = parallel(
        delayed(_run_task)(views[task.image_id], task, radii, config) for task in tasks
    )

    rows = [row for row, _ in outputs]
    result_table = _sorted(pd.DataFrame(rows, columns=RESULT_COLUMNS))

    curves = None
    if config.return_curves:
        curve_rows = [c for _, task_curves in outputs for c in task_curves]
        curves = _sorted(pd.DataFrame(curve_rows, columns=CURVE_COLUMNS), extra=["r"])

    failed = result_table[result_table["status"] != "ok"]
    exclusions = failed[KEY_COLUMNS + ["status", "message"]].reset_index(drop=True)

    for rec in exclusions.itertuples(index=False):
        logger.debug("Excluded %s %s->%s (parent=%s): %s",
                     rec.image_id, rec.from_type, rec.to_type, rec.parent, rec.message)
    if len(exclusions):
        reasons = exclusions["status"].value_counts().to_dict()
        logger.warning("%d of %d units excluded: %s", len(exclusions), len(result_table), reasons)

    if verbose:
        print(f"  ✓ {len(result_table) - len(exclusions)} units computed, "
              f"{len(exclusions)} excluded")

    return ColocalizationResult(
        table=result_table,
        exclusions=exclusions,
        curves=curves,
        radii=radii,
        config=config,
    )
