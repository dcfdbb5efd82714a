"""
ripley.py - Ripley's spatial statistics (K, L, cross-K, cross-L)

Classic point process statistics for analyzing spatial clustering
and dispersion patterns between cell types. Works directly from cell
coordinates without requiring a pre-built graph.

The cross-type estimator is

    K(r) = |W| / (n_i * n_j - s) * sum_{p in i} sum_{q in j, q != p} 1[d(p, q) <= r] * e(p, q)

where s is the number of cells shared by both sets (self-pairs are never
counted) and e is the edge-correction weight. L(r) = sqrt(K(r) / pi) and
the Poisson expectation is L(r) = r. The summary statistic is
u = sum_r (L(r) - r): positive for attraction, negative for dispersion.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from kontextloji.data.core import CellTable, ImageCells

from dataclasses import dataclass

import numpy as np
from scipy.spatial import KDTree

from kontextloji.data.config import (
    EDGE_CORRECTIONS,
    ConfigurationError,
    InsufficientCellsError,
    Window,
    validate_radii,
)

from .intensity import kernel_intensity, normalise_intensity

# Smallest fraction of a circle counted as inside the window.
_MIN_INSIDE_FRACTION = 0.01


@dataclass
class RipleyResult:
    """
    Container for Ripley's statistic results.

    Attributes
    ----------
    r : np.ndarray
        Distance values where statistic was evaluated.
    statistic : np.ndarray
        K(r) or L(r) values.
    csr_expected : np.ndarray
        Expected values under complete spatial randomness
        (pi * r^2 for K, r for L).
    function_type : str
        'K', 'L', 'cross-K' or 'cross-L'.
    correction : str
        Edge correction method used.
    envelope_lo : np.ndarray or None
        Lower simulation envelope (if computed).
    envelope_hi : np.ndarray or None
        Upper simulation envelope (if computed).
    label : str
        Description (e.g., cell type pair).
    sigma : float or None
        Inhomogeneity bandwidth, if used.
    """

    r: np.ndarray
    statistic: np.ndarray
    csr_expected: np.ndarray
    function_type: str
    correction: str
    envelope_lo: np.ndarray | None = None
    envelope_hi: np.ndarray | None = None
    label: str = ""
    sigma: float | None = None

    @property
    def deviation(self) -> np.ndarray:
        """Difference from CSR expectation."""
        return self.statistic - self.csr_expected

    @property
    def summary_statistic(self) -> float:
        """Sum of deviations over all radii (u)."""
        return float(self.deviation.sum())

    def summary(self) -> dict:
        dev = self.deviation
        return {
            "function": self.function_type,
            "label": self.label,
            "correction": self.correction,
            "sigma": self.sigma,
            "max_r": self.r.max(),
            "n_distances": len(self.r),
            "u": self.summary_statistic,
            "max_deviation": dev.max(),
            "min_deviation": dev.min(),
            "has_envelope": self.envelope_lo is not None,
        }

    def __repr__(self) -> str:
        s = self.summary()
        return (
            f"RipleyResult({s['function']}, label={s['label']}, "
            f"max_r={s['max_r']:.1f}, u={s['u']:.2f})"
        )


# ========== Edge correction ==========


def isotropic_weights(centres: np.ndarray, d: np.ndarray, window: Window) -> np.ndarray:
    """
    Ripley isotropic edge correction weights.

    1 / (fraction of the circumference of the circle centred at each
    point with radius d that lies inside the rectangular window).
    Corner overlaps are handled exactly.

    Parameters
    ----------
    centres : np.ndarray (m, 2)
    d : np.ndarray (m,)
    window : Window

    Returns
    -------
    np.ndarray (m,)
        Weights >= 1. 1.0 = entire circle inside window.
    """
    centres = np.asarray(centres, dtype=float).reshape(-1, 2)
    d = np.asarray(d, dtype=float)

    px, py = centres[:, 0], centres[:, 1]
    # Distance to left, right, bottom, top edges
    edges = np.column_stack([
        px - window.xmin,
        window.xmax - px,
        py - window.ymin,
        window.ymax - py,
    ])
    edges = np.clip(edges, 0, None)

    with np.errstate(divide="ignore", invalid="ignore"):
        ratio = np.where(d[:, None] > 0, edges / d[:, None], 1.0)
    alpha = np.arccos(np.clip(ratio, 0.0, 1.0))

    outside = 2.0 * alpha.sum(axis=1)
    # Arcs cut by two adjacent edges overlap when the corner is inside the circle
    for a, b in ((0, 2), (0, 3), (1, 2), (1, 3)):
        outside -= np.maximum(alpha[:, a] + alpha[:, b] - np.pi / 2, 0.0)

    inside = 1.0 - outside / (2.0 * np.pi)
    return 1.0 / np.maximum(inside, _MIN_INSIDE_FRACTION)


def translation_weights(delta: np.ndarray, window: Window) -> np.ndarray:
    """
    Translation edge correction weights |W| / |W ∩ (W + delta)|.

    Parameters
    ----------
    delta : np.ndarray (m, 2)
        Pair displacement vectors.
    """
    delta = np.abs(np.asarray(delta, dtype=float).reshape(-1, 2))
    overlap = (window.width - delta[:, 0]) * (window.height - delta[:, 1])
    overlap = np.maximum(overlap, _MIN_INSIDE_FRACTION * window.area)
    return window.area / overlap


def edge_weights(
    coords_i: np.ndarray,
    coords_j: np.ndarray,
    d: np.ndarray,
    window: Window,
    correction: str,
) -> np.ndarray:
    """Per-pair edge correction weights for pairs (coords_i[k], coords_j[k])."""
    if correction == "none":
        return np.ones(len(d))
    if correction == "isotropic":
        return isotropic_weights(coords_i, d, window)
    if correction == "translation":
        return translation_weights(coords_j - coords_i, window)
    raise ConfigurationError(f"Unknown edge correction '{correction}'. Use one of {EDGE_CORRECTIONS}")


# ========== Coordinate-level estimators ==========


def pair_distances(
    coords_i: np.ndarray,
    coords_j: np.ndarray,
    r_max: float,
    ids_i: np.ndarray | None = None,
    ids_j: np.ndarray | None = None,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    All (i, j) pairs within r_max.

    Pairs where ids_i[i] == ids_j[j] (the same cell in both sets) are
    dropped. Co-located distinct cells (d = 0) are kept.

    Returns
    -------
    i_idx, j_idx : np.ndarray of int
    d : np.ndarray of float
    """
    coords_i = np.asarray(coords_i, dtype=float).reshape(-1, 2)
    coords_j = np.asarray(coords_j, dtype=float).reshape(-1, 2)
    if len(coords_i) == 0 or len(coords_j) == 0:
        empty = np.empty(0, dtype=int)
        return empty, empty.copy(), np.empty(0)

    tree_j = KDTree(coords_j)
    neighbors = tree_j.query_ball_point(coords_i, r_max)

    counts = np.fromiter((len(nb) for nb in neighbors), dtype=int, count=len(coords_i))
    i_idx = np.repeat(np.arange(len(coords_i)), counts)
    j_idx = np.concatenate([np.asarray(nb, dtype=int) for nb in neighbors])

    if ids_i is not None and ids_j is not None and len(i_idx):
        keep = np.asarray(ids_i)[i_idx] != np.asarray(ids_j)[j_idx]
        i_idx, j_idx = i_idx[keep], j_idx[keep]

    diff = coords_i[i_idx] - coords_j[j_idx]
    d = np.hypot(diff[:, 0], diff[:, 1])
    return i_idx, j_idx, d


def cross_k_from_coords(
    coords_i: np.ndarray,
    coords_j: np.ndarray,
    window: Window,
    radii: Sequence[float],
    correction: str = "isotropic",
    ids_i: np.ndarray | None = None,
    ids_j: np.ndarray | None = None,
    intensity_i: np.ndarray | None = None,
    intensity_j: np.ndarray | None = None,
) -> np.ndarray:
    """
    Cross-type K function estimate.

    Parameters
    ----------
    coords_i, coords_j : np.ndarray (n, 2)
        'From' and 'to' point sets.
    window : Window
        Observation window.
    radii : sequence of float
        Strictly increasing positive radii.
    correction : str
        'none', 'isotropic' or 'translation'.
    ids_i, ids_j : np.ndarray, optional
        Cell ids; cells present in both sets are not paired with
        themselves and reduce the pair normalisation.
    intensity_i, intensity_j : np.ndarray, optional
        Intensity at each point (inhomogeneous estimator). Rescaled so
        that sum(1 / intensity) == |W|.

    Returns
    -------
    np.ndarray
        K(r) for each radius.

    Raises
    ------
    InsufficientCellsError
        If either set is empty or no distinct pair exists.
    """
    window.validate()
    radii = validate_radii(radii)
    coords_i = np.asarray(coords_i, dtype=float).reshape(-1, 2)
    coords_j = np.asarray(coords_j, dtype=float).reshape(-1, 2)
    n_i, n_j = len(coords_i), len(coords_j)

    if n_i == 0 or n_j == 0:
        raise InsufficientCellsError(f"Empty point set (n_from={n_i}, n_to={n_j})")

    shared = 0
    if ids_i is not None and ids_j is not None:
        shared = len(np.intersect1d(np.asarray(ids_i), np.asarray(ids_j)))
    n_pairs = n_i * n_j - shared
    if n_pairs <= 0:
        raise InsufficientCellsError("No distinct cell pairs")

    area = window.area
    i_idx, j_idx, d = pair_distances(coords_i, coords_j, radii[-1], ids_i, ids_j)
    weights = edge_weights(coords_i[i_idx], coords_j[j_idx], d, window, correction)

    if intensity_i is not None or intensity_j is not None:
        lam_i = np.full(n_i, n_i / area) if intensity_i is None else normalise_intensity(intensity_i, area)
        lam_j = np.full(n_j, n_j / area) if intensity_j is None else normalise_intensity(intensity_j, area)
        weights = weights / (lam_i[i_idx] * lam_j[j_idx])
        scale = (n_i * n_j / n_pairs) / area
    else:
        scale = area / n_pairs

    order = np.argsort(d, kind="stable")
    cumulative = np.concatenate([[0.0], np.cumsum(weights[order])])
    idx = np.searchsorted(d[order], radii, side="right")
    return scale * cumulative[idx]


def l_from_k(k_values: np.ndarray) -> np.ndarray:
    """Variance-stabilising transform L = sqrt(K / pi)."""
    return np.sqrt(np.maximum(np.asarray(k_values, dtype=float), 0.0) / np.pi)


def cross_l_from_coords(coords_i, coords_j, window, radii, correction="isotropic", **kwargs) -> np.ndarray:
    """Cross-type L function; see cross_k_from_coords for arguments."""
    return l_from_k(cross_k_from_coords(coords_i, coords_j, window, radii, correction, **kwargs))


def l_summary(l_values: np.ndarray, radii: Sequence[float]) -> float:
    """u = sum_r (L(r) - r). Positive = attraction, negative = dispersion."""
    return float(np.sum(np.asarray(l_values) - np.asarray(radii, dtype=float)))


# ========== Image-level helpers ==========


def type_label(types) -> str:
    if isinstance(types, str):
        return types
    return "+".join(sorted(types))


def image_cross_l(
    image: ImageCells,
    from_types,
    to_types,
    radii: Sequence[float],
    correction: str = "isotropic",
    sigma: float | None = None,
    min_cells: int = 1,
    window: Window | None = None,
) -> np.ndarray:
    """
    L curve between two cell-type groups of one image.

    Parameters
    ----------
    image : ImageCells
    from_types, to_types : str or collection of str
        Cell type(s) of each side. A collection is pooled.
    radii : sequence of float
    correction : str
    sigma : float, optional
        Inhomogeneity bandwidth; None = homogeneous baseline.
    min_cells : int
        Minimum cells on each side.
    window : Window, optional
        Restrict both sides to this window (defaults to the image window).

    Raises
    ------
    InsufficientCellsError, DegenerateWindowError
    """
    window = (window or image.window).validate()
    coords_i, ids_i = image.points(from_types)
    coords_j, ids_j = image.points(to_types)

    if window is not image.window:
        keep_i = window.contains(coords_i)
        keep_j = window.contains(coords_j)
        coords_i, ids_i = coords_i[keep_i], ids_i[keep_i]
        coords_j, ids_j = coords_j[keep_j], ids_j[keep_j]

    n_i, n_j = len(coords_i), len(coords_j)
    if n_i < min_cells or n_j < min_cells:
        raise InsufficientCellsError(
            f"Image '{image.image_id}': {n_i} '{type_label(from_types)}' and "
            f"{n_j} '{type_label(to_types)}' cells (min_cells={min_cells})"
        )

    intensity_i = intensity_j = None
    if sigma is not None:
        intensity_i = kernel_intensity(coords_i, window, sigma)
        intensity_j = kernel_intensity(coords_j, window, sigma)

    k_values = cross_k_from_coords(
        coords_i, coords_j, window, radii, correction,
        ids_i=ids_i, ids_j=ids_j,
        intensity_i=intensity_i, intensity_j=intensity_j,
    )
    return l_from_k(k_values)


def _resolve_radii(
    window: Window,
    radii: Sequence[float] | None,
    max_r: float | None,
    n_steps: int,
) -> np.ndarray:
    """
    Radii to evaluate. If neither radii nor max_r is given, uses 25% of
    the shortest window side (standard rule of thumb to avoid severe
    edge effects).
    """
    if radii is not None:
        return validate_radii(radii)
    if max_r is None:
        max_r = min(window.width, window.height) * 0.25
    return validate_radii(np.linspace(0, max_r, n_steps + 1)[1:])  # skip r=0


# ========== Table-level API ==========


def cross_k(
    table: CellTable,
    image_id: str,
    type_a: str,
    type_b: str,
    radii: Sequence[float] | None = None,
    max_r: float | None = None,
    n_steps: int = 50,
    correction: str = "isotropic",
    sigma: float | None = None,
) -> RipleyResult:
    """
    Compute the cross-K function between two cell types of one image.

    Measures whether cells of type_b are clustered around cells
    of type_a at each distance r. Asymmetric under edge correction.

    Parameters
    ----------
    table : CellTable
    image_id : str
        Image to analyse.
    type_a : str
        'From' cell type.
    type_b : str
        'To' cell type.
    radii : sequence of float, optional
        Explicit radii. Overrides max_r/n_steps.
    max_r : float, optional
        Maximum radius.
    n_steps : int
        Number of distance values.
    correction : str
        Edge correction: 'isotropic', 'translation' or 'none'.
    sigma : float, optional
        Bandwidth of the tissue-inhomogeneity correction.

    Returns
    -------
    RipleyResult
        Cross-K values. CSR expectation = pi*r^2.
    """
    image = table.image_view(image_id)
    r_values = _resolve_radii(image.window, radii, max_r, n_steps)
    l_values = image_cross_l(image, type_a, type_b, r_values, correction, sigma)
    k_values = np.pi * l_values ** 2

    n_a = int(image.select(type_a).sum())
    n_b = int(image.select(type_b).sum())
    print(f"  ✓ Cross-K ({type_a}→{type_b}): n_a={n_a}, n_b={n_b}, "
          f"max_r={r_values[-1]:.1f}")

    return RipleyResult(
        r=r_values,
        statistic=k_values,
        csr_expected=np.pi * r_values ** 2,
        function_type="cross-K",
        correction=correction,
        label=f"{type_a}→{type_b}",
        sigma=sigma,
    )


def cross_l(
    table: CellTable,
    image_id: str,
    type_a: str,
    type_b: str,
    radii: Sequence[float] | None = None,
    max_r: float | None = None,
    n_steps: int = 50,
    correction: str = "isotropic",
    sigma: float | None = None,
) -> RipleyResult:
    """
    Compute the cross-L function (variance-stabilized cross-K).

    L_AB(r) = sqrt(K_AB(r)/pi). Under CSR, L = r.
    A positive summary (sum of L - r) means type_b clusters around type_a.

    Parameters
    ----------
    See cross_k.

    Returns
    -------
    RipleyResult
        Cross-L values with csr_expected = r.
    """
    image = table.image_view(image_id)
    r_values = _resolve_radii(image.window, radii, max_r, n_steps)
    l_values = image_cross_l(image, type_a, type_b, r_values, correction, sigma)

    result = RipleyResult(
        r=r_values,
        statistic=l_values,
        csr_expected=r_values.copy(),
        function_type="cross-L",
        correction=correction,
        label=f"{type_a}→{type_b}",
        sigma=sigma,
    )
    print(f"  ✓ Cross-L ({type_a}→{type_b}): u = {result.summary_statistic:.3f}")
    return result


def ripleys_k(
    table: CellTable,
    image_id: str,
    cell_types: Sequence[str] | None = None,
    radii: Sequence[float] | None = None,
    max_r: float | None = None,
    n_steps: int = 50,
    correction: str = "isotropic",
    sigma: float | None = None,
) -> RipleyResult:
    """
    Compute Ripley's K function for the cells of one image.

    K(r) counts the average number of neighbors within distance r,
    normalized by overall density. Compares to CSR expectation (pi*r^2).

    Parameters
    ----------
    table : CellTable
    image_id : str
    cell_types : sequence of str, optional
        Pool these types. If None, uses all cells.
    radii, max_r, n_steps, correction, sigma
        See cross_k.

    Returns
    -------
    RipleyResult
        K function values and CSR expectation.
    """
    image = table.image_view(image_id)
    types = list(cell_types) if cell_types is not None else list(np.unique(image.cell_types))
    r_values = _resolve_radii(image.window, radii, max_r, n_steps)
    l_values = image_cross_l(image, types, types, r_values, correction, sigma, min_cells=2)

    n = int(image.select(types).sum())
    print(f"  ✓ Ripley's K: n={n}, max_r={r_values[-1]:.1f}, correction={correction}")

    return RipleyResult(
        r=r_values,
        statistic=np.pi * l_values ** 2,
        csr_expected=np.pi * r_values ** 2,
        function_type="K",
        correction=correction,
        label=type_label(types) if cell_types is not None else "all_cells",
        sigma=sigma,
    )


def ripleys_l(
    table: CellTable,
    image_id: str,
    cell_types: Sequence[str] | None = None,
    radii: Sequence[float] | None = None,
    max_r: float | None = None,
    n_steps: int = 50,
    correction: str = "isotropic",
    sigma: float | None = None,
) -> RipleyResult:
    """
    Compute Ripley's L function (variance-stabilized K).

    L(r) = sqrt(K(r)/pi); under CSR, L(r) = r. Positive deviation =
    clustering, negative = dispersion.

    Returns
    -------
    RipleyResult
        L function values (CSR expectation = r).
    """
    k_result = ripleys_k(table, image_id, cell_types, radii, max_r, n_steps, correction, sigma)
    l_values = l_from_k(k_result.statistic)

    result = RipleyResult(
        r=k_result.r,
        statistic=l_values,
        csr_expected=k_result.r.copy(),
        function_type="L",
        correction=correction,
        label=k_result.label,
        sigma=sigma,
    )
    print(f"  ✓ Ripley's L: max deviation = {np.max(np.abs(result.deviation)):.4f}")
    return result


def simulation_envelope(
    table: CellTable,
    image_id: str,
    function: str = "cross-L",
    type_a: str | None = None,
    type_b: str | None = None,
    n_simulations: int = 99,
    confidence: float = 0.95,
    radii: Sequence[float] | None = None,
    max_r: float | None = None,
    n_steps: int = 50,
    correction: str = "isotropic",
    sigma: float | None = None,
    seed: int | None = None,
) -> RipleyResult:
    """
    Compute simulation envelopes for significance testing.

    For L: simulates complete spatial randomness (uniform points).
    For cross-L: permutes cell type labels while keeping positions.

    The observed curve is significant at distance r if it falls
    outside the envelope at that r. The table is never modified.

    Parameters
    ----------
    table : CellTable
    image_id : str
    function : str
        'L' or 'cross-L'.
    type_a, type_b : str, optional
        Cell types (required for cross-L).
    n_simulations : int
        Number of simulations for envelope.
    confidence : float
        Confidence level for envelope (e.g., 0.95 = 95%).
    radii, max_r, n_steps, correction
        See cross_k.
    sigma : float, optional
        Inhomogeneity bandwidth. Each simulated pattern gets its own
        kernel intensities, so the envelope matches a corrected curve.
    seed : int, optional
        Random seed.

    Returns
    -------
    RipleyResult
        Observed statistic with envelope_lo and envelope_hi filled.
    """
    rng = np.random.default_rng(seed)
    image = table.image_view(image_id)
    window = image.window.validate()
    r_values = _resolve_radii(window, radii, max_r, n_steps)

    if function == "L":
        observed = ripleys_l(table, image_id, radii=r_values, correction=correction, sigma=sigma)
    elif function == "cross-L":
        if type_a is None or type_b is None:
            raise ValueError("cross-L requires type_a and type_b")
        observed = cross_l(table, image_id, type_a, type_b, radii=r_values,
                           correction=correction, sigma=sigma)
    else:
        raise ValueError(f"Unknown function: {function}. Use 'L' or 'cross-L'.")

    def _intensities(coords_i, coords_j):
        if sigma is None:
            return {}
        return {
            "intensity_i": kernel_intensity(coords_i, window, sigma),
            "intensity_j": kernel_intensity(coords_j, window, sigma),
        }

    print(f"  Running {n_simulations} simulations for envelope...")
    sim_stats = np.zeros((n_simulations, len(r_values)))

    if function == "L":
        n_points = len(image)
        for s in range(n_simulations):
            rand_coords = np.column_stack([
                rng.uniform(window.xmin, window.xmax, n_points),
                rng.uniform(window.ymin, window.ymax, n_points),
            ])
            ids = np.arange(n_points)
            sim_stats[s] = cross_l_from_coords(
                rand_coords, rand_coords, window, r_values, correction, ids_i=ids, ids_j=ids,
                **_intensities(rand_coords, rand_coords),
            )
    else:
        for s in range(n_simulations):
            shuffled = rng.permutation(image.cell_types)
            mask_a, mask_b = shuffled == type_a, shuffled == type_b
            coords_a, coords_b = image.coords[mask_a], image.coords[mask_b]
            sim_stats[s] = cross_l_from_coords(
                coords_a, coords_b, window, r_values, correction,
                ids_i=image.cell_ids[mask_a], ids_j=image.cell_ids[mask_b],
                **_intensities(coords_a, coords_b),
            )

    alpha = 1 - confidence
    envelope_lo = np.percentile(sim_stats, (alpha / 2) * 100, axis=0)
    envelope_hi = np.percentile(sim_stats, (1 - alpha / 2) * 100, axis=0)

    above = int(np.sum(observed.statistic > envelope_hi))
    below = int(np.sum(observed.statistic < envelope_lo))
    print(f"  ✓ Envelope ({confidence:.0%}): {above} distances above, {below} below, "
          f"{len(r_values) - above - below} inside")

    observed.envelope_lo = envelope_lo
    observed.envelope_hi = envelope_hi
    return observed
