"""
normalization.py - Marker intensity normalization across images

Per-marker transforms (asinh, trimming, rescaling) followed by an
optional cross-image correction that removes image-level intensity
shifts before clustering.
"""

from typing import Literal, Sequence

import numpy as np
from sklearn.decomposition import PCA
from sklearn.preprocessing import RobustScaler, StandardScaler

TRANSFORMATIONS = ("asinh", "sqrt", "log1p", "trim99", "minmax", "zscore", "robust")
IMAGE_METHODS = ("mean", "perc99", "pc1")


def _minmax(X: np.ndarray) -> np.ndarray:
    lo = X.min(axis=0)
    span = X.max(axis=0) - lo
    span[span == 0] = 1.0
    return (X - lo) / span


def transform_markers(X: np.ndarray, transformation: str, cofactor: float = 5.0) -> np.ndarray:
    """
    Apply one per-marker transformation.

    Parameters
    ----------
    X : np.ndarray
        Cells × markers.
    transformation : str
        'asinh' (arcsinh(x / cofactor)), 'sqrt', 'log1p', 'trim99'
        (clip each marker at its 99th percentile), 'minmax' (rescale to
        [0, 1]), 'zscore' or 'robust'.
    cofactor : float
        asinh cofactor.
    """
    if transformation == "asinh":
        return np.arcsinh(X / cofactor)
    if transformation == "sqrt":
        return np.sqrt(np.clip(X, 0, None))
    if transformation == "log1p":
        return np.log1p(np.clip(X, 0, None))
    if transformation == "trim99":
        return np.minimum(X, np.percentile(X, 99, axis=0))
    if transformation == "minmax":
        return _minmax(X)
    if transformation == "zscore":
        return StandardScaler().fit_transform(X)
    if transformation == "robust":
        return RobustScaler().fit_transform(X)
    raise ValueError(f"Unknown transformation: {transformation}. Use one of {TRANSFORMATIONS}")


def correct_images(X: np.ndarray, image_ids: np.ndarray,
                   method: Literal["mean", "perc99", "pc1"] = "mean") -> np.ndarray:
    """
    Remove image-level intensity shifts.

    - 'mean': shift each image so its marker means match the global means
    - 'perc99': scale each image so its 99th percentiles match the global ones
    - 'pc1': regress the first principal component of the image-mean
      matrix out of every cell of that image
    """
    images = np.unique(image_ids)
    X = X.copy()

    if method == "mean":
        global_mean = X.mean(axis=0)
        for img in images:
            mask = image_ids == img
            X[mask] = X[mask] - X[mask].mean(axis=0) + global_mean

    elif method == "perc99":
        global_p99 = np.percentile(X, 99, axis=0)
        for img in images:
            mask = image_ids == img
            image_p99 = np.percentile(X[mask], 99, axis=0)
            factor = np.divide(global_p99, image_p99, out=np.ones_like(global_p99), where=image_p99 > 0)
            X[mask] = X[mask] * factor

    elif method == "pc1":
        means = np.vstack([X[image_ids == img].mean(axis=0) for img in images])
        if len(images) < 2:
            return X
        pca = PCA(n_components=1)
        scores = pca.fit_transform(means)[:, 0]
        loading = pca.components_[0]
        for img, score in zip(images, scores):
            X[image_ids == img] -= score * loading

    else:
        raise ValueError(f"Unknown method: {method}. Use one of {IMAGE_METHODS}")

    return X


def normalize_markers(
    table,
    transformations: Sequence[str] = ("asinh", "trim99", "minmax"),
    method: Literal["mean", "perc99", "pc1"] | None = None,
    cofactor: float = 5.0,
    layer: str | None = None,
    output_layer: str = "normalized",
    inplace: bool = True,
):
    """
    Normalize marker intensities across images.

    Transformations are applied in order, then the optional
    cross-image correction.

    Parameters
    ----------
    table : CellTable
        Table with marker intensities
    transformations : sequence of str, optional
        Per-marker transforms, by default ('asinh', 'trim99', 'minmax')
    method : {'mean', 'perc99', 'pc1'}, optional
        Cross-image correction, by default None
    cofactor : float, optional
        asinh cofactor, by default 5.0
    layer : str, optional
        Input layer. If None, uses raw markers
    output_layer : str, optional
        Name for output layer, by default 'normalized'
    inplace : bool, optional
        Store the result as a layer, by default True

    Returns
    -------
    np.ndarray or None
        Normalized matrix if inplace=False, otherwise None

    Examples
    --------
    >>> kl.processing.normalize_markers(table, method='pc1')
    >>> table.get_markers('CD3', layer='normalized')
    """
    if table.n_markers == 0:
        raise ValueError("Table has no markers to normalize")

    X = table.get_markers(layer=layer).astype(float)

    print(f"\nNormalizing {X.shape[1]} markers "
          f"(transformations={list(transformations)}, method={method})")

    for transformation in transformations:
        X = transform_markers(X, transformation, cofactor=cofactor)

    if method is not None:
        X = correct_images(X, table.image_ids, method)
        print(f"  Corrected image effects across {table.n_images} images ({method})")

    print(f"  ✓ Normalized {X.shape[0]:,} cells × {X.shape[1]:,} markers")

    if inplace:
        table.add_layer(output_layer, X, overwrite=True)
        return None
    return X


__all__ = [
    "transform_markers",
    "correct_images",
    "normalize_markers",
]
