"""
config.py - Configuration and small data structures for kontextloji

Contains:
- KontextlojiConfig: Column names for tabular input
- ParallelConfig: Worker pool settings for batch computations
- SpatialStatConfig: Radii, edge correction and Kontextual settings
- Window: Rectangular observation window of one image
- CellRecord: Typed per-cell record
- Exception hierarchy
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np


class KontextlojiError(Exception):
    """Base exception for kontextloji errors."""

    pass


class ValidationError(KontextlojiError):
    """Raised when input data validation fails."""

    pass


class ConfigurationError(KontextlojiError):
    """Raised for invalid run configuration. Aborts the whole run."""

    pass


class HierarchyDefinitionError(ConfigurationError):
    """Raised when a cell-type hierarchy is malformed."""

    pass


class UnitFailure(KontextlojiError):
    """
    Failure of a single unit of work (one image/relationship).

    Batch computations record these as missing values instead of
    aborting. Subclasses set ``reason``, the code stored in result tables.
    """

    reason = "failed"


class InsufficientCellsError(UnitFailure):
    """Raised when a cell type has too few cells in an image."""

    reason = "insufficient_cells"


class InvalidHierarchyError(UnitFailure):
    """Raised when a parent population does not contain the child type."""

    reason = "invalid_hierarchy"


class DegenerateWindowError(UnitFailure):
    """Raised when an observation window has zero area or bad bounds."""

    reason = "degenerate_window"


@dataclass
class KontextlojiConfig:
    """Configuration for kontextloji column names."""

    # Column names
    cell_id_col: str = "cell_id"
    image_id_col: str = "image_id"
    x_col: str = "x"
    y_col: str = "y"
    cell_type_col: str = "cell_type"

    def get_coordinate_columns(self) -> tuple[str, str]:
        return self.x_col, self.y_col

    def required_columns(self) -> list[str]:
        return [self.image_id_col, self.x_col, self.y_col, self.cell_type_col]


_SCHEDULER_BACKENDS = {
    "sequential": "sequential",
    "threads": "threading",
    "processes": "loky",
}


@dataclass
class ParallelConfig:
    """
    Worker pool settings.

    Passed explicitly into batch entry points; nothing is stored globally.

    Attributes
    ----------
    n_workers : int
        Number of workers. -1 uses all cores (joblib convention).
    scheduler : str
        'sequential', 'threads' or 'processes'.
    """

    n_workers: int = 1
    scheduler: str = "sequential"

    def __post_init__(self):
        if self.scheduler not in _SCHEDULER_BACKENDS:
            raise ConfigurationError(
                f"Unknown scheduler '{self.scheduler}'. "
                f"Use one of {sorted(_SCHEDULER_BACKENDS)}"
            )
        if self.n_workers == 0 or self.n_workers < -1:
            raise ConfigurationError(f"n_workers must be positive or -1, got {self.n_workers}")

    @property
    def backend(self) -> str:
        """joblib backend name."""
        return _SCHEDULER_BACKENDS[self.scheduler]

    @property
    def n_jobs(self) -> int:
        return 1 if self.scheduler == "sequential" else self.n_workers


EDGE_CORRECTIONS = ("none", "isotropic", "translation")
KONTEXTUAL_MODES = ("difference", "ratio")


@dataclass
class SpatialStatConfig:
    """
    Settings for L-function and Kontextual computations.

    Attributes
    ----------
    radii : tuple of float, optional
        Explicit radii. Overrides r_min/r_max/n_steps.
    r_min : float, optional
        Smallest radius. Defaults to r_max / n_steps.
    r_max : float
        Largest radius.
    n_steps : int
        Number of radii between r_min and r_max.
    correction : str
        Edge correction: 'none', 'isotropic' or 'translation'.
    sigma : float, optional
        Kernel bandwidth for the tissue-inhomogeneity correction.
        None uses the homogeneous Poisson baseline.
    min_cells : int
        Minimum cells of each type per image; fewer gives a missing value.
    mode : str
        Kontextual transform, 'difference' or 'ratio'.
    return_curves : bool
        Also return per-radius values.
    parallel : ParallelConfig
        Worker pool settings.
    """

    radii: tuple[float, ...] | None = None
    r_min: float | None = None
    r_max: float = 50.0
    n_steps: int = 50
    correction: str = "isotropic"
    sigma: float | None = None
    min_cells: int = 1
    mode: str = "difference"
    return_curves: bool = False
    parallel: ParallelConfig = field(default_factory=ParallelConfig)

    def __post_init__(self):
        if self.correction not in EDGE_CORRECTIONS:
            raise ConfigurationError(
                f"Unknown edge correction '{self.correction}'. Use one of {EDGE_CORRECTIONS}"
            )
        if self.mode not in KONTEXTUAL_MODES:
            raise ConfigurationError(f"Unknown Kontextual mode '{self.mode}'. Use one of {KONTEXTUAL_MODES}")
        if self.sigma is not None and not (np.isfinite(self.sigma) and self.sigma > 0):
            raise ConfigurationError(f"sigma must be a positive number, got {self.sigma}")
        if self.min_cells < 1:
            raise ConfigurationError(f"min_cells must be >= 1, got {self.min_cells}")

    def get_radii(self) -> np.ndarray:
        """
        Radii at which curves are evaluated.

        Returns
        -------
        np.ndarray
            Strictly increasing positive radii.
        """
        if self.radii is not None:
            radii = np.asarray(self.radii, dtype=float).ravel()
        else:
            if self.n_steps < 1:
                raise ConfigurationError(f"n_steps must be >= 1, got {self.n_steps}")
            r_min = self.r_min if self.r_min is not None else self.r_max / self.n_steps
            radii = np.linspace(r_min, self.r_max, self.n_steps)
        return validate_radii(radii)


def validate_radii(radii) -> np.ndarray:
    """Check radii are finite, positive and strictly increasing."""
    radii = np.atleast_1d(np.asarray(radii, dtype=float))
    if radii.size == 0:
        raise ConfigurationError("At least one radius is required")
    if not np.all(np.isfinite(radii)) or np.any(radii <= 0):
        raise ConfigurationError(f"Radii must be finite and positive, got {radii}")
    if np.any(np.diff(radii) <= 0):
        raise ConfigurationError("Radii must be strictly increasing")
    return radii


@dataclass(frozen=True)
class Window:
    """Rectangular observation window (xmin, ymin, xmax, ymax)."""

    xmin: float
    ymin: float
    xmax: float
    ymax: float

    @property
    def width(self) -> float:
        return self.xmax - self.xmin

    @property
    def height(self) -> float:
        return self.ymax - self.ymin

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def bounds(self) -> tuple[float, float, float, float]:
        return self.xmin, self.ymin, self.xmax, self.ymax

    def validate(self) -> Window:
        """Raise DegenerateWindowError unless the window has positive area."""
        if not np.all(np.isfinite(self.bounds)):
            raise DegenerateWindowError(f"Window has non-finite bounds: {self.bounds}")
        if self.width <= 0 or self.height <= 0:
            raise DegenerateWindowError(
                f"Window has zero area (width={self.width}, height={self.height})"
            )
        return self

    def contains(self, coords: np.ndarray) -> np.ndarray:
        """Boolean mask of points inside the window (boundary included)."""
        coords = np.asarray(coords, dtype=float).reshape(-1, 2)
        return (
            (coords[:, 0] >= self.xmin)
            & (coords[:, 0] <= self.xmax)
            & (coords[:, 1] >= self.ymin)
            & (coords[:, 1] <= self.ymax)
        )

    @classmethod
    def from_points(cls, coords: np.ndarray) -> Window:
        """Bounding box of a point set."""
        coords = np.asarray(coords, dtype=float).reshape(-1, 2)
        if len(coords) == 0:
            raise DegenerateWindowError("Cannot build a window from zero points")
        xmin, ymin = coords.min(axis=0)
        xmax, ymax = coords.max(axis=0)
        return cls(float(xmin), float(ymin), float(xmax), float(ymax))


@dataclass(frozen=True)
class CellRecord:
    """One segmented cell."""

    cell_id: str
    image_id: str
    x: float
    y: float
    cell_type: str
    markers: np.ndarray = field(default_factory=lambda: np.empty(0))

    @property
    def coords(self) -> tuple[float, float]:
        return self.x, self.y
