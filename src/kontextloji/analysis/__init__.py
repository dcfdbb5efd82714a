"""
kontextloji.analysis - Downstream analyses of spatial features

state_change : Marker expression versus proximity to another cell type
outcome      : Image-level features versus clinical groups and survival
"""

from .state_change import spatial_covariate, state_changes
from .outcome import cell_type_proportions, group_test, survival_association

__all__ = [
    # State change
    'spatial_covariate',
    'state_changes',

    # Outcome association
    'cell_type_proportions',
    'group_test',
    'survival_association',
]
