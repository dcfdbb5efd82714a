"""
state_change.py - Marker state changes driven by spatial proximity

Tests whether the marker expression of one cell type ('to') changes
with its spatial relationship to another type ('from'): distance to the
nearest 'from' cell, or the number of 'from' cells within a radius.
Each marker is regressed on the spatial covariate with ordinary least
squares, per image and pooled across images with image fixed effects.

Lateral spill-over of signal from neighbouring cells can masquerade as
a state change. When a per-cell contamination covariate is supplied
(e.g. one minus the probability that the cell truly is of its assigned
type), it enters the model as an additional additive term:

    marker ~ 1 + spatial_covariate + contamination
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional, Sequence

if TYPE_CHECKING:
    from kontextloji.data.core import CellTable

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy.spatial import KDTree
from statsmodels.stats.multitest import multipletests

logger = logging.getLogger(__name__)

RESULT_COLUMNS = [
    "image_id", "from_type", "to_type", "marker",
    "coef", "std_err", "tval", "pval", "fdr", "n_cells",
]


def spatial_covariate(to_coords: np.ndarray, from_coords: np.ndarray,
                      method: str = "distance", radius: float = 50.0) -> np.ndarray:
    """
    Covariate of each 'to' cell relative to the 'from' cells.

    - 'distance': Euclidean distance to the nearest 'from' cell
    - 'abundance': number of 'from' cells within `radius`
    """
    tree = KDTree(from_coords)
    if method == "distance":
        d, _ = tree.query(to_coords, k=1)
        return np.asarray(d, dtype=float)
    if method == "abundance":
        return np.asarray(tree.query_ball_point(to_coords, radius, return_length=True), dtype=float)
    raise ValueError(f"Unknown method: {method}. Use 'distance' or 'abundance'.")


def _fit(y: np.ndarray, design: pd.DataFrame) -> Optional[dict]:
    """
    OLS of y on design (constant added), over complete rows only.

    None if the fit is not identifiable.
    """
    complete = np.isfinite(y) & np.isfinite(design.to_numpy(dtype=float)).all(axis=1)
    y, design = y[complete], design[complete]
    if len(y) <= design.shape[1] + 1 or np.ptp(y) == 0:
        return None
    if np.ptp(design["covariate"].to_numpy()) == 0:
        return None
    model = sm.OLS(y, sm.add_constant(design, has_constant="add")).fit()
    return {
        "coef": float(model.params["covariate"]),
        "std_err": float(model.bse["covariate"]),
        "tval": float(model.tvalues["covariate"]),
        "pval": float(model.pvalues["covariate"]),
        "n_cells": int(model.nobs),
    }


def _add_fdr(results: pd.DataFrame) -> pd.DataFrame:
    results["fdr"] = np.nan
    for _, idx in results.groupby("image_id").groups.items():
        pvals = results.loc[idx, "pval"]
        ok = pvals.notna()
        if ok.any():
            _, qvals, _, _ = multipletests(pvals[ok], method="fdr_bh")
            results.loc[pvals[ok].index, "fdr"] = qvals
    return results


def state_changes(
    table: CellTable,
    from_type: str,
    to_type: str,
    markers: Optional[Sequence[str]] = None,
    method: str = "distance",
    radius: float = 50.0,
    layer: Optional[str] = None,
    contamination_col: Optional[str] = None,
    image_ids: Optional[Sequence[str]] = None,
    min_cells: int = 10,
    pooled: bool = True,
) -> pd.DataFrame:
    """
    Regress 'to'-cell marker expression on proximity to 'from' cells.

    Parameters
    ----------
    table : CellTable
    from_type : str
        Cell type defining the spatial covariate.
    to_type : str
        Cell type whose markers are tested.
    markers : sequence of str, optional
        Markers to test. All markers if None.
    method : str
        'distance' or 'abundance'.
    radius : float
        Radius for 'abundance'.
    layer : str, optional
        Marker layer (raw markers if None).
    contamination_col : str, optional
        Column of table.cell_meta with a per-cell contamination
        covariate, entered additively.
    image_ids : sequence of str, optional
        Images to analyse. All images if None.
    min_cells : int
        Minimum 'to' cells for an image to be fitted.
    pooled : bool
        Also fit all images jointly with image fixed effects
        (reported with image_id 'pooled').

    Returns
    -------
    pd.DataFrame
        One row per (image, marker) with coefficient, standard error,
        t value, p value and BH FDR (within each image_id group).
    """
    markers = list(markers) if markers is not None else list(table.marker_names)
    if not markers:
        raise ValueError("No markers to test")
    if contamination_col is not None and contamination_col not in table.cell_meta.columns:
        raise KeyError(f"'{contamination_col}' not found in cell_meta")

    X_all = table.get_markers(marker_names=markers, layer=layer)
    images = list(table.image_index) if image_ids is None else [str(i) for i in image_ids]

    print(f"\n[State change] {from_type} → {to_type}: {len(markers)} markers, "
          f"{len(images)} images (method={method})")

    rows = []
    pooled_parts = []
    skipped = []
    for image_id in images:
        mask = table.image_ids == image_id
        types = np.asarray(table.cell_types)[mask]
        coords = table.get_spatial_coords()[mask]
        is_to, is_from = types == to_type, types == from_type

        if is_to.sum() < min_cells or is_from.sum() == 0:
            skipped.append(image_id)
            continue

        design = pd.DataFrame({
            "covariate": spatial_covariate(coords[is_to], coords[is_from], method, radius)
        })
        if contamination_col is not None:
            design["contamination"] = table.cell_meta[contamination_col].to_numpy(dtype=float)[mask][is_to]

        Y = X_all[mask][is_to]
        for m_idx, marker in enumerate(markers):
            fit = _fit(Y[:, m_idx], design)
            rows.append({
                "image_id": image_id, "from_type": from_type, "to_type": to_type,
                "marker": marker, "n_cells": int(is_to.sum()),
                **(fit or {"coef": np.nan, "std_err": np.nan, "tval": np.nan, "pval": np.nan}),
            })

        part = pd.concat([design, pd.DataFrame(Y, columns=markers)], axis=1)
        part["image_id"] = image_id
        pooled_parts.append(part)

    if skipped:
        logger.warning("State change %s->%s: skipped %d images with < %d '%s' cells or no '%s' cells",
                       from_type, to_type, len(skipped), min_cells, to_type, from_type)

    if pooled and pooled_parts:
        data = pd.concat(pooled_parts, ignore_index=True)
        fixed = pd.get_dummies(data["image_id"], prefix="image", drop_first=True, dtype=float)
        covariates = ["covariate"] + (["contamination"] if contamination_col is not None else [])
        design = pd.concat([data[covariates], fixed], axis=1)
        for marker in markers:
            fit = _fit(data[marker].to_numpy(dtype=float), design)
            rows.append({
                "image_id": "pooled", "from_type": from_type, "to_type": to_type,
                "marker": marker, "n_cells": len(data),
                **(fit or {"coef": np.nan, "std_err": np.nan, "tval": np.nan, "pval": np.nan}),
            })

    results = pd.DataFrame(rows, columns=[c for c in RESULT_COLUMNS if c != "fdr"])
    results = _add_fdr(results)[RESULT_COLUMNS]

    n_sig = int((results["fdr"] < 0.05).sum())
    print(f"  ✓ {len(results)} fits, {n_sig} significant (FDR < 0.05)")
    return results
