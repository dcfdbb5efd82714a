"""
spatial - Spatial analysis for kontextloji

point : Centroid-based point pattern statistics
    Ripley's K/L, cross-type L, Kontextual, batch co-localisation
    across images and spatial domain detection.

Usage
-----
>>> import kontextloji as kl
>>>
>>> res = kl.spatial.point.cross_l(table, 'img1', 'tumour', 'cd8')
>>> out = kl.spatial.point.compute_colocalization(table, hierarchy=h)
"""

from . import point

__all__ = [
    'point',
]
