# src/kontextloji/spatial/point/__init__.py

"""
Point-based spatial statistics using cell centroids.

Every statistic is computed per image, inside the image's observation
window. Multi-image runs go through compute_colocalization, which fans
the work out over a joblib worker pool.

Modules
-------
- intensity: Kernel intensity surfaces (tissue-inhomogeneity correction)
- ripley: Ripley's K/L and cross-K/L functions with edge correction
- kontextual: Context-normalised co-localisation relative to a parent population
- batch: Fan-out/fan-in over images and relationships
- domains: Local L profiles and spatial domain clustering

Quick Start
-----------
>>> import kontextloji as kl
>>>
>>> # One image, one pair
>>> res = kl.spatial.point.cross_l(table, 'img1', 'tumour', 'cd8', max_r=50)
>>> res.summary_statistic
>>>
>>> # Context relative to the T-cell population
>>> kl.spatial.point.kontextual(table, 'img1', 'tumour', 'cd8', parent='tcell', hierarchy=h)
>>>
>>> # All images, all hierarchy relationships, 4 processes
>>> cfg = kl.SpatialStatConfig(r_max=50, parallel=kl.ParallelConfig(4, 'processes'))
>>> out = kl.spatial.point.compute_colocalization(table, hierarchy=h, config=cfg)
>>> out.aggregate('kontextual')
"""

# Intensity estimation
from .intensity import (
    kernel_intensity,
    normalise_intensity,
)

# Point pattern analysis (Ripley's K/L)
from .ripley import (
    RipleyResult,
    cross_k_from_coords,
    cross_l_from_coords,
    l_summary,
    ripleys_k,
    ripleys_l,
    cross_k,
    cross_l,
    simulation_envelope,
)

# Kontextual
from .kontextual import (
    KontextualResult,
    context_l,
    kontextual,
    kontextual_from_image,
)

# Batch computation
from .batch import (
    RelationshipTask,
    ColocalizationResult,
    build_tasks,
    compute_colocalization,
)

# Spatial domains
from .domains import (
    local_l_profiles,
    spatial_domains,
)

__all__ = [
    # Intensity
    'kernel_intensity',
    'normalise_intensity',

    # Point pattern analysis
    'RipleyResult',
    'cross_k_from_coords',
    'cross_l_from_coords',
    'l_summary',
    'ripleys_k',
    'ripleys_l',
    'cross_k',
    'cross_l',
    'simulation_envelope',

    # Kontextual
    'KontextualResult',
    'context_l',
    'kontextual',
    'kontextual_from_image',

    # Batch
    'RelationshipTask',
    'ColocalizationResult',
    'build_tasks',
    'compute_colocalization',

    # Domains
    'local_l_profiles',
    'spatial_domains',
]
