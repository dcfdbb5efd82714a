"""
conftest.py - Shared test fixtures for kontextloji

pytest reads this file before running any test. Every fixture defined
here is available to all test files: a test asks for a fixture by
naming it as an argument and pytest injects it.

All synthetic data uses fixed seeds so results are reproducible.
"""

import numpy as np
import pandas as pd
import pytest

from kontextloji.data.config import Window
from kontextloji.data.core import CellTable
from kontextloji.data.hierarchy import CellTypeHierarchy

# ===========================================================================
# Constants
# ===========================================================================

WINDOW = Window(0.0, 0.0, 100.0, 100.0)
RADII = tuple(float(r) for r in range(1, 11))
MARKERS = ["CD3", "CD8", "CD4", "PanCK", "SMA"]


# ===========================================================================
# Helpers
# ===========================================================================


def uniform_points(rng, n, xmin=0.0, xmax=100.0, ymin=0.0, ymax=100.0):
    """n points uniformly distributed in a rectangle."""
    return np.column_stack([rng.uniform(xmin, xmax, n), rng.uniform(ymin, ymax, n)])


def build_table(groups, image_id="img1", window=None, markers=None, start=0, verbose=False):
    """
    CellTable for one image from {cell_type: coords}.

    Cell ids are '{image_id}_c{i}'.
    """
    coords, types = [], []
    for cell_type, pts in groups.items():
        pts = np.asarray(pts, dtype=float).reshape(-1, 2)
        coords.append(pts)
        types.extend([cell_type] * len(pts))
    coords = np.vstack(coords)
    n = len(coords)
    return CellTable(
        cell_ids=[f"{image_id}_c{i}" for i in range(start, start + n)],
        image_ids=[image_id] * n,
        x=coords[:, 0],
        y=coords[:, 1],
        cell_types=types,
        markers=markers,
        marker_names=MARKERS if markers is not None else None,
        windows={image_id: window} if window is not None else None,
        verbose=verbose,
    )


def tissue_frame(rng, image_id, cd8_near_tumour=True, include_cd8=True):
    """
    Per-cell DataFrame of one synthetic tissue image.

    - tumour: uniform in the right half (x in [50, 100])
    - cd8: jittered around tumour cells (or uniform in the right half)
    - cd4: uniform in the right half
    - stroma: uniform over the whole 100 x 100 image
    """
    tumour = uniform_points(rng, 150, xmin=50.0)
    cd4 = uniform_points(rng, 200, xmin=50.0)
    stroma = uniform_points(rng, 100)
    stroma[0] = (0.0, 0.0)
    stroma[1] = (100.0, 100.0)

    groups = {"tumour": tumour, "cd4": cd4, "stroma": stroma}
    if include_cd8:
        if cd8_near_tumour:
            anchors = tumour[rng.integers(0, len(tumour), 200)]
            cd8 = anchors + rng.normal(0.0, 2.0, size=anchors.shape)
            cd8[:, 0] = np.clip(cd8[:, 0], 50.0, 100.0)
            cd8[:, 1] = np.clip(cd8[:, 1], 0.0, 100.0)
        else:
            cd8 = uniform_points(rng, 200, xmin=50.0)
        groups["cd8"] = cd8

    frames = []
    for cell_type, pts in groups.items():
        frames.append(pd.DataFrame({"x": pts[:, 0], "y": pts[:, 1], "cell_type": cell_type}))
    df = pd.concat(frames, ignore_index=True)
    df["image_id"] = image_id
    df["cell_id"] = [f"{image_id}_c{i}" for i in range(len(df))]
    return df


# ===========================================================================
# Fixtures
# ===========================================================================


@pytest.fixture
def rng():
    """Seeded random generator."""
    return np.random.default_rng(42)


@pytest.fixture
def hierarchy():
    """
    immune
    ├── tcell
    │   ├── cd4
    │   └── cd8
    └── bcell
    """
    return CellTypeHierarchy.from_mapping({
        "immune": ["tcell", "bcell"],
        "tcell": ["cd4", "cd8"],
    })


@pytest.fixture
def tcell_hierarchy():
    """Single parent: tcell = {cd4, cd8}."""
    return CellTypeHierarchy.from_mapping({"tcell": ["cd4", "cd8"]})


@pytest.fixture
def small_table():
    """
    3 images × 4 cells with known coordinates and 2 markers per cell.

    img1 and img2 hold types A and B; img3 holds only A.
    """
    df = pd.DataFrame({
        "cell_id": [f"c{i}" for i in range(12)],
        "image_id": ["img1"] * 4 + ["img2"] * 4 + ["img3"] * 4,
        "x": [0, 10, 0, 10, 5, 15, 5, 15, 1, 2, 3, 4],
        "y": [0, 0, 10, 10, 5, 5, 15, 15, 1, 3, 2, 4],
        "cell_type": ["A", "A", "B", "B", "A", "B", "A", "B", "A", "A", "A", "A"],
        "CD3": np.arange(12, dtype=float),
        "PanCK": np.arange(12, dtype=float)[::-1],
        "region": ["core"] * 6 + ["margin"] * 6,
    })
    image_meta = pd.DataFrame({
        "image_id": ["img1", "img2", "img3"],
        "outcome": ["good", "poor", "good"],
    })
    return CellTable.from_dataframe(df, marker_cols=["CD3", "PanCK"],
                                    image_metadata=image_meta, verbose=False)


@pytest.fixture
def tissue_table():
    """
    Two tissue images (see tissue_frame).

    img1: cd8 attracted to tumour. img2: no cd8 cells at all.
    """
    rng = np.random.default_rng(7)
    df = pd.concat([
        tissue_frame(rng, "img1", cd8_near_tumour=True),
        tissue_frame(rng, "img2", include_cd8=False),
    ], ignore_index=True)
    return CellTable.from_dataframe(df, verbose=False)


@pytest.fixture
def marker_table():
    """
    Two images, three cell types with distinct marker profiles.

    tcell: high CD3; tumour: high PanCK; fibroblast: high SMA.
    img2 intensities are shifted upward by a constant.
    """
    rng = np.random.default_rng(3)
    profiles = {
        "tcell": [20.0, 10.0, 10.0, 1.0, 1.0],
        "tumour": [1.0, 1.0, 1.0, 25.0, 1.0],
        "fibroblast": [1.0, 1.0, 1.0, 1.0, 20.0],
    }
    frames = []
    for image_id, shift in (("img1", 0.0), ("img2", 5.0)):
        for cell_type, profile in profiles.items():
            n = 60
            values = np.asarray(profile) + shift + rng.normal(0.0, 1.0, size=(n, len(profile)))
            pts = uniform_points(rng, n)
            frame = pd.DataFrame(np.clip(values, 0, None), columns=MARKERS)
            frame["x"], frame["y"] = pts[:, 0], pts[:, 1]
            frame["cell_type"] = cell_type
            frame["image_id"] = image_id
            frames.append(frame)
    df = pd.concat(frames, ignore_index=True)
    df["cell_id"] = [f"cell_{i}" for i in range(len(df))]
    return CellTable.from_dataframe(df, marker_cols=MARKERS, verbose=False)
