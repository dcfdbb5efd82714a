"""
clustering.py - Cell clustering, cluster hierarchy and cell-type annotation

Clusters cells on (normalized) marker intensities, derives a
cell-type hierarchy from cluster mean profiles, and turns clusters into
cell-type labels either by an explicit mapping or by correlation to
reference marker profiles.
"""

import warnings
from typing import Literal, Mapping, Sequence

import numpy as np
import pandas as pd
from scipy.cluster.hierarchy import fcluster, linkage as scipy_linkage
from sklearn.cluster import KMeans

from ..data.hierarchy import CellTypeHierarchy


def _get_marker_matrix(table, layer: str | None, markers: Sequence[str] | None) -> tuple[np.ndarray, pd.Index]:
    """Marker matrix from a layer, falling back to raw markers."""
    if layer is not None and layer not in table.layers:
        warnings.warn(f"Layer '{layer}' not found. Using raw markers.", stacklevel=3)
        layer = None
    X = table.get_markers(marker_names=markers, layer=layer)
    names = table.marker_names if markers is None else pd.Index(markers)
    return np.asarray(X, dtype=float), names


def _cluster_labels(assignments: np.ndarray, prefix: str = "cluster") -> np.ndarray:
    return np.array([f"{prefix}_{i + 1}" for i in assignments], dtype=object)


def _report_sizes(labels: np.ndarray) -> None:
    _, counts = np.unique(labels, return_counts=True)
    print(f"    Cluster sizes - min: {counts.min()}, max: {counts.max()}, " f"mean: {counts.mean():.1f}")


def kmeans_clustering(
    table,
    n_clusters: int = 10,
    layer: str | None = "normalized",
    markers: Sequence[str] | None = None,
    n_init: int = 10,
    random_state: int = 42,
    output_column: str = "cluster",
    inplace: bool = True,
):
    """
    K-means clustering on marker intensities.

    Parameters
    ----------
    table : CellTable
        Table with marker data
    n_clusters : int, optional
        Number of clusters, by default 10
    layer : str, optional
        Which marker layer to use, by default 'normalized'
    markers : sequence of str, optional
        Markers to cluster on. All markers if None
    n_init : int, optional
        Number of k-means initializations, by default 10
    random_state : int, optional
        Random seed, by default 42
    output_column : str, optional
        Column name for cluster labels in cell_meta, by default 'cluster'
    inplace : bool, optional
        Add cluster labels to the table, by default True

    Returns
    -------
    np.ndarray or None
        Cluster labels if inplace=False, otherwise None
    """
    print(f"\nK-means clustering (n_clusters={n_clusters})")
    X, _ = _get_marker_matrix(table, layer, markers)

    kmeans = KMeans(n_clusters=n_clusters, n_init=n_init, random_state=random_state)
    labels = _cluster_labels(kmeans.fit_predict(X))

    print(f"  ✓ Clustered into {n_clusters} groups")
    _report_sizes(labels)
    print(f"    Inertia: {kmeans.inertia_:.2f}")

    if inplace:
        table.cell_meta[output_column] = pd.Categorical(labels)
        return None
    return labels


def codebook_clustering(
    table,
    n_codes: int = 100,
    n_clusters: int = 10,
    layer: str | None = "normalized",
    markers: Sequence[str] | None = None,
    linkage: Literal["ward", "complete", "average", "single"] = "average",
    random_state: int = 42,
    output_column: str = "cluster",
    inplace: bool = True,
):
    """
    Two-stage (FlowSOM-style) clustering.

    Cells are first summarised by a large codebook of k-means
    prototypes; the prototypes are then meta-clustered hierarchically
    and each cell inherits the meta-cluster of its prototype.

    Parameters
    ----------
    table : CellTable
    n_codes : int, optional
        Codebook size, by default 100
    n_clusters : int, optional
        Number of meta-clusters, by default 10
    layer, markers
        See kmeans_clustering
    linkage : {'ward', 'complete', 'average', 'single'}, optional
        Meta-clustering linkage, by default 'average'
    random_state : int, optional
    output_column : str, optional
    inplace : bool, optional

    Returns
    -------
    np.ndarray or None
        Cluster labels if inplace=False, otherwise None
    """
    print(f"\nCodebook clustering (n_codes={n_codes}, n_clusters={n_clusters})")
    X, _ = _get_marker_matrix(table, layer, markers)

    n_codes = min(n_codes, X.shape[0])
    if n_clusters > n_codes:
        raise ValueError(f"n_clusters ({n_clusters}) cannot exceed n_codes ({n_codes})")

    print(f"  Building codebook of {n_codes} prototypes...")
    codebook = KMeans(n_clusters=n_codes, n_init=1, random_state=random_state)
    codes = codebook.fit_predict(X)

    print(f"  Meta-clustering prototypes ({linkage} linkage)...")
    Z = scipy_linkage(codebook.cluster_centers_, method=linkage)
    meta = fcluster(Z, t=n_clusters, criterion="maxclust") - 1
    labels = _cluster_labels(meta[codes])

    print(f"  ✓ Found {len(np.unique(labels))} clusters")
    _report_sizes(labels)

    if inplace:
        table.cell_meta[output_column] = pd.Categorical(labels)
        return None
    return labels


def cluster_profiles(
    table,
    cluster_col: str | None = None,
    layer: str | None = "normalized",
    markers: Sequence[str] | None = None,
) -> pd.DataFrame:
    """Mean marker profile per cluster (or per cell type if cluster_col is None)."""
    X, names = _get_marker_matrix(table, layer, markers)
    if cluster_col is None:
        groups = np.asarray(table.cell_types)
    else:
        groups = table.cell_meta[cluster_col].astype(str).to_numpy()
    return pd.DataFrame(X, columns=names).groupby(groups).mean()


def cluster_hierarchy(
    table,
    cluster_col: str | None = None,
    layer: str | None = "normalized",
    markers: Sequence[str] | None = None,
    method: Literal["ward", "complete", "average", "single"] = "average",
    metric: str = "euclidean",
    n_parents: int | None = None,
    parent_prefix: str = "parent",
) -> CellTypeHierarchy:
    """
    Derive a cell-type hierarchy from cluster mean profiles.

    Parameters
    ----------
    table : CellTable
    cluster_col : str, optional
        Column of cell_meta with cluster labels. Uses cell types if None.
    layer, markers
        Marker source.
    method : str, optional
        scipy linkage method, by default 'average'
    metric : str, optional
        Distance metric, by default 'euclidean'
    n_parents : int, optional
        Cut the dendrogram into this many parent populations (two-level
        hierarchy). If None, the full binary tree is returned.
    parent_prefix : str, optional
        Name prefix of derived parent nodes.

    Returns
    -------
    CellTypeHierarchy
    """
    profiles = cluster_profiles(table, cluster_col, layer, markers)
    labels = [str(l) for l in profiles.index]
    if len(labels) < 2:
        return CellTypeHierarchy.from_nested({labels[0]: None}) if labels else CellTypeHierarchy.from_mapping({})

    metric_kwargs = {} if method == "ward" else {"metric": metric}
    Z = scipy_linkage(profiles.to_numpy(), method=method, **metric_kwargs)

    if n_parents is None:
        hierarchy = CellTypeHierarchy.from_linkage(labels, Z, node_prefix=parent_prefix)
    else:
        groups = fcluster(Z, t=n_parents, criterion="maxclust")
        mapping = {}
        for label, group in zip(labels, groups):
            mapping.setdefault(f"{parent_prefix}_{group}", []).append(label)
        hierarchy = CellTypeHierarchy.from_mapping(dict(sorted(mapping.items())))

    print(f"  ✓ Cluster hierarchy: {len(hierarchy.parents)} parents over {len(hierarchy.leaves)} leaves")
    return hierarchy


def annotate_clusters(
    table,
    cluster_col: str,
    mapping: Mapping[str, str],
    unassigned_label: str = "unassigned",
    set_cell_types: bool = True,
) -> pd.Series:
    """
    Map cluster labels to cell-type names.

    Clusters missing from `mapping` receive `unassigned_label`.

    Returns
    -------
    pd.Series
        Cell type per cell, indexed by cell id.
    """
    clusters = table.cell_meta[cluster_col].astype(str)
    mapping = {str(k): str(v) for k, v in mapping.items()}
    unmapped = sorted(set(clusters) - set(mapping))
    if unmapped:
        warnings.warn(
            f"{len(unmapped)} clusters have no annotation and are labelled "
            f"'{unassigned_label}': {unmapped}",
            stacklevel=2,
        )
    labels = clusters.map(mapping).fillna(unassigned_label)
    labels.name = "cell_type"

    if set_cell_types:
        table.set_cell_types(labels)
    print(f"  ✓ Annotated {clusters.nunique()} clusters into {labels.nunique()} cell types")
    return labels


def reference_annotation(
    table,
    reference: pd.DataFrame,
    layer: str | None = "normalized",
    min_correlation: float | None = None,
    unassigned_label: str = "unassigned",
    set_cell_types: bool = True,
) -> pd.DataFrame:
    """
    Annotate cells by correlation with reference marker profiles.

    Parameters
    ----------
    table : CellTable
    reference : pd.DataFrame
        Cell types (rows) × markers (columns). Only markers shared with
        the table are used.
    layer : str, optional
        Marker layer, by default 'normalized'
    min_correlation : float, optional
        Cells whose best Pearson correlation is below this threshold get
        `unassigned_label`.
    unassigned_label : str, optional
    set_cell_types : bool, optional
        Replace the table's cell types with the assigned labels.

    Returns
    -------
    pd.DataFrame
        Columns 'cell_type' and 'score' (best correlation), indexed by cell id.
    """
    shared = [m for m in reference.columns if m in set(table.marker_names)]
    if len(shared) < 2:
        raise ValueError(f"Need at least 2 markers shared with the reference, found {len(shared)}")

    X, _ = _get_marker_matrix(table, layer, shared)
    R = reference[shared].to_numpy(dtype=float)

    def _standardise(M):
        centred = M - M.mean(axis=1, keepdims=True)
        norms = np.linalg.norm(centred, axis=1, keepdims=True)
        return np.divide(centred, norms, out=np.zeros_like(centred), where=norms > 0)

    corr = _standardise(X) @ _standardise(R).T
    best = corr.argmax(axis=1)
    scores = corr[np.arange(len(best)), best]
    labels = np.asarray(reference.index.astype(str))[best].astype(object)

    if min_correlation is not None:
        labels[scores < min_correlation] = unassigned_label

    result = pd.DataFrame({"cell_type": labels, "score": scores}, index=table.cell_index)
    if set_cell_types:
        table.set_cell_types(result["cell_type"])

    n_unassigned = int((labels == unassigned_label).sum())
    print(f"  ✓ Reference annotation on {len(shared)} markers: "
          f"{result['cell_type'].nunique()} labels, {n_unassigned} unassigned")
    return result


__all__ = [
    "kmeans_clustering",
    "codebook_clustering",
    "cluster_profiles",
    "cluster_hierarchy",
    "annotate_clusters",
    "reference_annotation",
]
