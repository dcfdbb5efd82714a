# src/kontextloji/__init__.py

"""
kontextloji - Context-aware spatial co-localisation for multiplexed imaging
"""

# Core data structures
from .data.core import CellTable, ImageCells
from .data.config import (
    KontextlojiConfig,
    ParallelConfig,
    SpatialStatConfig,
    Window,
    CellRecord,
)
from .data.hierarchy import CellTypeHierarchy

# Import submodules
from . import data
from . import processing
from . import spatial
from . import analysis

__version__ = '0.1.0'

__all__ = [
    # Core classes
    'CellTable',
    'ImageCells',
    'CellTypeHierarchy',
    'KontextlojiConfig',
    'ParallelConfig',
    'SpatialStatConfig',
    'Window',
    'CellRecord',

    # Submodules
    'data',
    'processing',
    'spatial',
    'analysis',
]
