"""
data - Core data structures

This module contains the CellTable container, the cell-type
hierarchy, configuration classes and the exception hierarchy.
"""

from .config import (
    KontextlojiConfig,
    ParallelConfig,
    SpatialStatConfig,
    Window,
    CellRecord,
    KontextlojiError,
    ValidationError,
    ConfigurationError,
    HierarchyDefinitionError,
    UnitFailure,
    InsufficientCellsError,
    InvalidHierarchyError,
    DegenerateWindowError,
)

from .core import CellTable, ImageCells
from .hierarchy import CellTypeHierarchy, HierarchyNode

__all__ = [
    # Core class
    'CellTable',
    'ImageCells',

    # Hierarchy
    'CellTypeHierarchy',
    'HierarchyNode',

    # Configuration
    'KontextlojiConfig',
    'ParallelConfig',
    'SpatialStatConfig',
    'Window',
    'CellRecord',

    # Exceptions
    'KontextlojiError',
    'ValidationError',
    'ConfigurationError',
    'HierarchyDefinitionError',
    'UnitFailure',
    'InsufficientCellsError',
    'InvalidHierarchyError',
    'DegenerateWindowError',
]
