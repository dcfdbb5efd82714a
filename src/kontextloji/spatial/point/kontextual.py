"""
kontextual.py - Context-aware co-localisation between cell types

Kontextual asks whether cells of a 'to' type lie closer to 'from' cells
than the rest of their parent population does. The plain L-function
compares against complete spatial randomness over the whole image,
which confounds tissue structure with cell-type specific attraction.
Kontextual instead compares

    L(from -> to)      within the parent population's spatial support
    L(from -> parent)  within the same support

so a value of 0 means 'to' cells are placed like any other member of
the parent population, positive means enriched near 'from' cells and
negative means depleted.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, Optional, Sequence, Union

if TYPE_CHECKING:
    from kontextloji.data.core import CellTable, ImageCells
    from kontextloji.data.hierarchy import CellTypeHierarchy

import numpy as np

from kontextloji.data.config import (
    KONTEXTUAL_MODES,
    ConfigurationError,
    InsufficientCellsError,
    InvalidHierarchyError,
    SpatialStatConfig,
    Window,
)

from .ripley import type_label, image_cross_l, l_summary


@dataclass
class KontextualResult:
    """
    Kontextual value for one (image, from, to, parent) relationship.

    Attributes
    ----------
    r : np.ndarray
        Radii.
    original_curve : np.ndarray
        L(r) - r between from and to over the whole image.
    kontextual_curve : np.ndarray
        Per-radius Kontextual value.
    original : float
        Sum of original_curve.
    kontextual : float
        Kontextual summary.
    mode : str
        'difference' or 'ratio'.
    n_from, n_to, n_parent : int
        Cells used (from-cells counted within the parent window).
    label : str
    """

    r: np.ndarray
    original_curve: np.ndarray
    kontextual_curve: np.ndarray
    original: float
    kontextual: float
    mode: str
    n_from: int
    n_to: int
    n_parent: int
    label: str = ""

    @property
    def sign_flip(self) -> bool:
        """True when context reverses the direction of association."""
        if not (np.isfinite(self.original) and np.isfinite(self.kontextual)):
            return False
        return bool(np.sign(self.original) * np.sign(self.kontextual) < 0)

    def summary(self) -> dict:
        return {
            "label": self.label,
            "mode": self.mode,
            "original": self.original,
            "kontextual": self.kontextual,
            "sign_flip": self.sign_flip,
            "n_from": self.n_from,
            "n_to": self.n_to,
            "n_parent": self.n_parent,
        }

    def __repr__(self) -> str:
        return (
            f"KontextualResult({self.label}, original={self.original:.2f}, "
            f"kontextual={self.kontextual:.2f}, mode={self.mode})"
        )


def parent_window(image: ImageCells, parent_types: Iterable[str]) -> Window:
    """
    Spatial support of a parent population: the bounding box of its cells.

    Raises
    ------
    InsufficientCellsError
        If the image holds no cell of the parent population.
    DegenerateWindowError
        If the bounding box has zero area.
    """
    coords, _ = image.points(list(parent_types))
    if len(coords) == 0:
        raise InsufficientCellsError(f"Image '{image.image_id}' has no parent population cells")
    return Window.from_points(coords).validate()


def _combine(l_to: np.ndarray, l_parent: np.ndarray, mode: str) -> tuple[np.ndarray, float]:
    if mode == "difference":
        curve = l_to - l_parent
        return curve, float(curve.sum())

    with np.errstate(divide="ignore", invalid="ignore"):
        curve = np.where(l_parent > 0, l_to / l_parent - 1.0, np.nan)
    total = float(l_parent.sum())
    value = float(l_to.sum()) / total - 1.0 if total > 0 else np.nan
    return curve, value


def _as_types(types: Union[str, Iterable[str]]) -> frozenset:
    return frozenset([types]) if isinstance(types, str) else frozenset(types)


def context_l(
    image: ImageCells,
    from_type: Union[str, Iterable[str]],
    to_type: Union[str, Iterable[str]],
    parent_types: Iterable[str],
    radii: Sequence[float],
    correction: str = "isotropic",
    sigma: Optional[float] = None,
    mode: str = "difference",
    min_cells: int = 1,
) -> tuple[np.ndarray, float, int]:
    """
    Context half of Kontextual: L(from -> to) against L(from -> parent)
    inside the parent window.

    Returns
    -------
    curve : np.ndarray
        Per-radius Kontextual value.
    value : float
        Kontextual summary.
    n_from : int
        From-cells inside the parent window.

    Raises
    ------
    InvalidHierarchyError, InsufficientCellsError, DegenerateWindowError
    """
    if mode not in KONTEXTUAL_MODES:
        raise ConfigurationError(f"Unknown Kontextual mode '{mode}'. Use one of {KONTEXTUAL_MODES}")
    parent_types = frozenset(parent_types)
    if not _as_types(to_type) <= parent_types:
        raise InvalidHierarchyError(
            f"'{type_label(to_type)}' is not part of parent population {sorted(parent_types)}"
        )
    radii = np.asarray(radii, dtype=float)

    window = parent_window(image, parent_types)
    l_to = image_cross_l(image, from_type, to_type, radii, correction, sigma, min_cells, window=window)
    l_parent = image_cross_l(
        image, from_type, parent_types, radii, correction, sigma, min_cells, window=window
    )
    curve, value = _combine(l_to, l_parent, mode)

    from_coords, _ = image.points(from_type)
    return curve, value, int(window.contains(from_coords).sum())


def kontextual_from_image(
    image: ImageCells,
    from_type: Union[str, Iterable[str]],
    to_type: Union[str, Iterable[str]],
    parent_types: Iterable[str],
    radii: Sequence[float],
    correction: str = "isotropic",
    sigma: Optional[float] = None,
    mode: str = "difference",
    min_cells: int = 1,
) -> KontextualResult:
    """
    Kontextual for one image, given a resolved parent population.

    Parameters
    ----------
    image : ImageCells
    from_type, to_type : str or collection of str
        A collection is pooled (e.g. the population of a hierarchy node).
    parent_types : collection of str
        Resolved parent population; must contain every `to_type`.
    radii : sequence of float
    correction : str
        Edge correction.
    sigma : float, optional
        Inhomogeneity bandwidth.
    mode : str
        'difference': L_to - L_parent per radius, summed.
        'ratio': L_to / L_parent - 1 per radius; the summary is
        sum(L_to) / sum(L_parent) - 1.
    min_cells : int

    Returns
    -------
    KontextualResult

    Raises
    ------
    InvalidHierarchyError, InsufficientCellsError, DegenerateWindowError
    """
    radii = np.asarray(radii, dtype=float)
    parent_types = frozenset(parent_types)
    curve, value, n_from = context_l(
        image, from_type, to_type, parent_types, radii, correction, sigma, mode, min_cells
    )
    original_l = image_cross_l(image, from_type, to_type, radii, correction, sigma, min_cells)

    return KontextualResult(
        r=radii,
        original_curve=original_l - radii,
        kontextual_curve=curve,
        original=l_summary(original_l, radii),
        kontextual=value,
        mode=mode,
        n_from=n_from,
        n_to=int(image.select(to_type).sum()),
        n_parent=int(image.select(list(parent_types)).sum()),
        label=f"{type_label(from_type)}→{type_label(to_type)} | {type_label(parent_types)}",
    )


def kontextual(
    table: CellTable,
    image_id: str,
    from_type: str,
    to_type: str,
    parent: Union[str, Iterable[str]],
    hierarchy: Optional[CellTypeHierarchy] = None,
    config: Optional[SpatialStatConfig] = None,
) -> KontextualResult:
    """
    Kontextual co-localisation of one relationship in one image.

    Parameters
    ----------
    table : CellTable
    image_id : str
    from_type : str
        Cell type whose neighbourhood is inspected.
    to_type : str
        Cell type tested for enrichment.
    parent : str or collection of str
        Parent label (resolved through `hierarchy`) or an explicit set
        of cell types forming the parent population.
    hierarchy : CellTypeHierarchy, optional
        Required when `parent` is a label.
    config : SpatialStatConfig, optional
        Radii, edge correction, sigma and mode.

    Returns
    -------
    KontextualResult

    Examples
    --------
    >>> res = kontextual(table, 'img1', 'tumour', 'cd8', parent='tcell', hierarchy=h)
    >>> res.kontextual
    """
    config = config or SpatialStatConfig()
    if isinstance(parent, str):
        if hierarchy is None:
            raise ConfigurationError("A parent label requires a hierarchy")
        parent_types = hierarchy.resolve_parent(parent, to_type)
    else:
        parent_types = frozenset(str(p) for p in parent)

    # Internal hierarchy nodes stand for their whole population
    from_types = hierarchy.expand(from_type) if hierarchy is not None else from_type
    to_types = hierarchy.expand(to_type) if hierarchy is not None else to_type

    result = kontextual_from_image(
        table.image_view(image_id),
        from_types,
        to_types,
        parent_types,
        config.get_radii(),
        correction=config.correction,
        sigma=config.sigma,
        mode=config.mode,
        min_cells=config.min_cells,
    )
    print(f"  ✓ Kontextual ({result.label}): original = {result.original:.3f}, "
          f"kontextual = {result.kontextual:.3f}")
    return result
