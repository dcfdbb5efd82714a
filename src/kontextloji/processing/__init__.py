"""
kontextloji.processing - Marker normalization, clustering and annotation

Turns raw per-cell marker intensities into cell-type labels and a
cell-type hierarchy for the spatial statistics.
"""

# Import all functions
from .normalization import *
from .clustering import *

# Define what gets imported with "from kontextloji.processing import *"
__all__ = [
    # Normalization
    'transform_markers', 'correct_images', 'normalize_markers',

    # Clustering / annotation
    'kmeans_clustering', 'codebook_clustering', 'cluster_profiles',
    'cluster_hierarchy', 'annotate_clusters', 'reference_annotation',
]
