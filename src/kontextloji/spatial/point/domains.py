"""
domains.py - Spatial domains from local L-function profiles

Each cell gets a local L-function value for every cell type and radius
(how strongly that type concentrates around the cell compared with
complete spatial randomness). Cells with similar profiles are clustered
into spatial domains (regions) that recur across images.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Sequence

if TYPE_CHECKING:
    from kontextloji.data.core import CellTable

import numpy as np
import pandas as pd
from sklearn.cluster import KMeans

from kontextloji.data.config import validate_radii

from .ripley import edge_weights, pair_distances


def local_l_profiles(
    table: CellTable,
    radii: Sequence[float] = (10, 20, 50),
    cell_types: Optional[Sequence[str]] = None,
    correction: str = "isotropic",
) -> pd.DataFrame:
    """
    Per-cell local L-function deviations.

    For cell c, type t and radius r:

        L_c,t(r) = sqrt(|W| * sum_{q in t, q != c} 1[d(c, q) <= r] * e(c, q) / (pi * n_t)) - r

    computed within the cell's own image. Types absent from an image
    (no other cell of the type) give 0.

    Parameters
    ----------
    table : CellTable
    radii : sequence of float
    cell_types : sequence of str, optional
        Types to profile. All types if None.
    correction : str
        Edge correction ('isotropic', 'translation' or 'none').

    Returns
    -------
    pd.DataFrame
        Cells × (type, radius) columns named '{type}_r{radius:g}'.
    """
    radii = validate_radii(radii)
    types = list(cell_types) if cell_types is not None else table.cell_type_vocabulary
    columns = [f"{t}_r{r:g}" for t in types for r in radii]
    profiles = np.zeros((table.n_cells, len(columns)))

    for image_id in table.image_index:
        image = table.image_view(image_id)
        window = image.window
        if window.area <= 0:
            continue
        rows = np.flatnonzero(table.image_ids == image_id)

        for t_idx, cell_type in enumerate(types):
            coords_t, ids_t = image.points(cell_type)
            i_idx, j_idx, d = pair_distances(image.coords, coords_t, radii[-1], image.cell_ids, ids_t)
            weights = edge_weights(image.coords[i_idx], coords_t[j_idx], d, window, correction)

            # Exclude the cell itself from its own type's count
            n_other = len(coords_t) - (image.cell_types == cell_type).astype(int)

            for r_idx, r in enumerate(radii):
                within = d <= r
                sums = np.bincount(i_idx[within], weights=weights[within], minlength=len(image))
                with np.errstate(divide="ignore", invalid="ignore"):
                    local_l = np.sqrt(window.area * sums / (np.pi * n_other)) - r
                local_l[n_other <= 0] = 0.0
                profiles[rows, t_idx * len(radii) + r_idx] = local_l

    print(f"  ✓ Local L profiles: {table.n_cells:,} cells × {len(types)} types × {len(radii)} radii")
    return pd.DataFrame(profiles, index=table.cell_index, columns=columns)


def spatial_domains(
    table: CellTable,
    n_regions: int = 5,
    radii: Sequence[float] = (10, 20, 50),
    cell_types: Optional[Sequence[str]] = None,
    correction: str = "isotropic",
    label_col: str = "region",
    seed: Optional[int] = 42,
    store: bool = True,
) -> dict:
    """
    Identify recurring spatial domains by clustering local L profiles.

    Parameters
    ----------
    table : CellTable
    n_regions : int
        Number of regions (KMeans clusters).
    radii, cell_types, correction
        Passed to local_l_profiles.
    label_col : str
        Column name for storing region labels in table.cell_meta.
    seed : int, optional
        Random seed.
    store : bool
        Write labels into table.cell_meta[label_col].

    Returns
    -------
    dict with keys:
        'labels'      : pd.Series, region label per cell
        'signatures'  : pd.DataFrame, mean profile per region
        'composition' : pd.DataFrame, cell-type proportions per region
        'profiles'    : pd.DataFrame, the full profile matrix used
    """
    profiles = local_l_profiles(table, radii, cell_types, correction)
    n_regions = min(n_regions, table.n_cells)

    km = KMeans(n_clusters=n_regions, random_state=seed, n_init=10)
    assignments = km.fit_predict(profiles.values)
    labels = pd.Series(
        [f"region_{i + 1}" for i in assignments],
        index=profiles.index,
        name=label_col,
    )

    signatures = profiles.groupby(labels.values).mean()
    signatures.index.name = label_col

    composition = pd.crosstab(labels.values, np.asarray(table.cell_types), normalize="index")
    composition.index.name = label_col
    composition.columns.name = None

    if store:
        table.cell_meta[label_col] = labels.values

    region_counts = labels.value_counts().sort_index()
    print(f"  ✓ Identified {len(region_counts)} regions:")
    for region, count in region_counts.items():
        top_type = composition.loc[region].idxmax()
        top_pct = composition.loc[region].max() * 100
        print(f"    {region}: {count:,} cells (dominant: {top_type} {top_pct:.0f}%)")

    return {
        "labels": labels,
        "signatures": signatures,
        "composition": composition,
        "profiles": profiles,
    }
