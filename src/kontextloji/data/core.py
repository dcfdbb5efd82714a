"""
core.py - Main CellTable class for per-cell spatial data

The CellTable keeps every per-cell component (coordinates, cell types,
marker intensities, processed layers) aligned to one master cell index,
and every per-image component (windows, covariates) aligned to one
master image index.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from .config import (
    CellRecord,
    KontextlojiConfig,
    ValidationError,
    Window,
)


@dataclass
class ImageCells:
    """
    All cells of one image, as plain arrays.

    This is the only data a batch worker receives, so it is kept
    small and picklable.

    Attributes
    ----------
    image_id : str
    cell_ids : np.ndarray
        Cell identifiers (n,).
    coords : np.ndarray
        Coordinates (n, 2).
    cell_types : np.ndarray
        Cell-type label per cell (n,).
    window : Window
        Observation window of the image.
    """
    image_id: str
    cell_ids: np.ndarray
    coords: np.ndarray
    cell_types: np.ndarray
    window: Window

    def __len__(self) -> int:
        return len(self.cell_ids)

    def select(self, types: Union[str, Sequence[str]]) -> np.ndarray:
        """Boolean mask of cells whose type is in `types`."""
        if isinstance(types, str):
            types = [types]
        return np.isin(self.cell_types, list(types))

    def points(self, types: Union[str, Sequence[str]]) -> tuple[np.ndarray, np.ndarray]:
        """(coords, cell_ids) for cells of the given type(s)."""
        mask = self.select(types)
        return self.coords[mask], self.cell_ids[mask]


class CellTable:
    """
    Typed per-cell table for multi-image spatial data.

    Core Principles:
    - Master Index: cell IDs stored once as the primary index
    - Fixed schema: image id, coordinates, categorical type, marker vector
    - Automatic Consistency: all components aligned to master indices
    - Fast Operations: integer-based indexing internally

    Attributes
    ----------
    _cell_index : pd.Index
        Master cell index (single source of truth)
    _image_index : pd.Index
        Master image index
    _image_ids : np.ndarray
        Image id per cell
    _coords : np.ndarray
        Coordinates (n_cells, 2)
    _cell_types : pd.Categorical
        Cell-type label per cell
    _markers : np.ndarray
        Marker intensities (n_cells, n_markers)
    _marker_index : pd.Index
        Marker names
    _windows : Dict[str, Window]
        Observation window per image
    _image_meta : pd.DataFrame
        Image covariates (aligned to _image_index)
    _layers : Dict[str, np.ndarray]
        Processed marker matrices
    """

    def __init__(self,
                 cell_ids: Union[List[str], pd.Index],
                 image_ids: Sequence,
                 x: Sequence[float],
                 y: Sequence[float],
                 cell_types: Sequence,
                 markers: Optional[np.ndarray] = None,
                 marker_names: Optional[Sequence[str]] = None,
                 cell_metadata: Optional[pd.DataFrame] = None,
                 windows: Optional[Dict[str, Union[Window, Sequence[float]]]] = None,
                 image_metadata: Optional[pd.DataFrame] = None,
                 config: Optional[KontextlojiConfig] = None,
                 verbose: bool = True):
        """
        Initialize a CellTable.

        Parameters
        ----------
        cell_ids : list or Index
            Unique cell identifiers.
        image_ids : sequence
            Image identifier per cell.
        x, y : sequence of float
            Cell centroid coordinates.
        cell_types : sequence
            Cell-type label per cell.
        markers : np.ndarray, optional
            Marker intensities (n_cells × n_markers).
        marker_names : sequence of str, optional
            Marker names. Defaults to marker_0, marker_1, ...
        cell_metadata : DataFrame, optional
            Extra per-cell columns. Aligned to cell_ids.
        windows : dict, optional
            Window (or (xmin, ymin, xmax, ymax)) per image.
            Images without one use the bounding box of their cells.
            Every cell of an image must lie inside its window.
        image_metadata : DataFrame, optional
            Image covariates (e.g. outcome) indexed by image id.
        config : KontextlojiConfig, optional
            Column name configuration.
        verbose : bool
            Print a construction summary.
        """
        self.config = config or KontextlojiConfig()

        # Master indices
        self._cell_index = pd.Index([str(c) for c in cell_ids], name=self.config.cell_id_col)
        if self._cell_index.has_duplicates:
            n_dup = self._cell_index.duplicated().sum()
            raise ValidationError(f"{n_dup} duplicated cell IDs")
        n = len(self._cell_index)

        self._image_ids = np.asarray([str(i) for i in image_ids], dtype=object)
        self._coords = self._prepare_coords(x, y, n)
        self._cell_types = self._prepare_cell_types(cell_types, n)
        self._check_length(self._image_ids, n, "image_ids")

        self._image_index = pd.Index(pd.unique(self._image_ids), name=self.config.image_id_col)

        self._markers, self._marker_index = self._prepare_markers(markers, marker_names, n)
        self._cell_meta = self._prepare_cell_metadata(cell_metadata)
        self._windows = self._prepare_windows(windows)
        self._image_meta = self._prepare_image_metadata(image_metadata)
        self._layers = {}
        self._create_index_maps()

        if verbose:
            self._print_summary()

    # ========== Data Preparation Methods ==========

    @staticmethod
    def _check_length(arr, n: int, name: str) -> None:
        if len(arr) != n:
            raise ValidationError(f"'{name}' length ({len(arr)}) != n_cells ({n})")

    def _prepare_coords(self, x, y, n: int) -> np.ndarray:
        x = np.asarray(x, dtype=float)
        y = np.asarray(y, dtype=float)
        self._check_length(x, n, "x")
        self._check_length(y, n, "y")
        coords = np.column_stack([x, y]) if n > 0 else np.empty((0, 2))
        bad = ~np.isfinite(coords).all(axis=1)
        if bad.any():
            raise ValidationError(f"{bad.sum()} cells have missing or non-finite coordinates")
        return coords

    def _prepare_cell_types(self, cell_types, n: int) -> pd.Categorical:
        self._check_length(cell_types, n, "cell_types")
        labels = pd.Categorical([str(t) for t in cell_types])
        return labels

    def _prepare_markers(self, markers, marker_names, n: int):
        if markers is None:
            return np.empty((n, 0)), pd.Index([], name="marker")

        markers = np.asarray(markers, dtype=float)
        if markers.ndim == 1:
            markers = markers[:, np.newaxis]
        if markers.shape[0] != n:
            raise ValidationError(f"Marker matrix has {markers.shape[0]} rows, expected {n}")

        if marker_names is None:
            marker_names = [f"marker_{i}" for i in range(markers.shape[1])]
        if len(marker_names) != markers.shape[1]:
            raise ValidationError(
                f"{len(marker_names)} marker names for {markers.shape[1]} marker columns"
            )
        return markers, pd.Index([str(m) for m in marker_names], name="marker")

    def _prepare_cell_metadata(self, cell_metadata: Optional[pd.DataFrame]) -> pd.DataFrame:
        """Align extra per-cell columns to the master index."""
        if cell_metadata is None:
            return pd.DataFrame(index=self._cell_index)

        cell_id_col = self.config.cell_id_col
        if cell_id_col in cell_metadata.columns:
            cell_metadata = cell_metadata.set_index(cell_id_col)
        cell_metadata = cell_metadata.copy()
        cell_metadata.index = cell_metadata.index.astype(str)

        aligned = cell_metadata.reindex(self._cell_index)
        n_missing = (~self._cell_index.isin(cell_metadata.index)).sum()
        if n_missing > 0:
            print(f"    ⚠ {n_missing} cells missing metadata (filled with NaN)")
        return aligned

    def _prepare_windows(self, windows) -> Dict[str, Window]:
        windows = dict(windows or {})
        prepared = {}
        for image_id in self._image_index:
            win = windows.pop(image_id, None)
            if win is None:
                mask = self._image_ids == image_id
                win = Window.from_points(self._coords[mask])
            else:
                if not isinstance(win, Window):
                    win = Window(*[float(v) for v in win])
                n_outside = int((~win.contains(self._coords[self._image_ids == image_id])).sum())
                if n_outside > 0:
                    raise ValidationError(
                        f"Image '{image_id}': {n_outside} cells lie outside window {win.bounds}"
                    )
            prepared[image_id] = win
        if windows:
            print(f"    ⚠ Dropped windows for {len(windows)} images without cells")
        return prepared

    def _prepare_image_metadata(self, image_metadata: Optional[pd.DataFrame]) -> pd.DataFrame:
        if image_metadata is None:
            return pd.DataFrame(index=self._image_index)

        image_id_col = self.config.image_id_col
        if image_id_col in image_metadata.columns:
            image_metadata = image_metadata.set_index(image_id_col)
        image_metadata = image_metadata.copy()
        image_metadata.index = image_metadata.index.astype(str)
        aligned = image_metadata.reindex(self._image_index)
        aligned.index.name = image_id_col
        return aligned

    def _create_index_maps(self) -> None:
        self._cell_id_to_idx = {cid: i for i, cid in enumerate(self._cell_index)}
        self._marker_to_idx = {m: i for i, m in enumerate(self._marker_index)}

    # ========== Alternate constructor ==========

    @classmethod
    def from_dataframe(cls,
                       df: pd.DataFrame,
                       marker_cols: Optional[Sequence[str]] = None,
                       windows: Optional[Dict] = None,
                       image_metadata: Optional[pd.DataFrame] = None,
                       config: Optional[KontextlojiConfig] = None,
                       verbose: bool = True) -> 'CellTable':
        """
        Build a CellTable from a per-cell DataFrame.

        Parameters
        ----------
        df : pd.DataFrame
            One row per cell with image id, x, y and cell type columns
            (names from `config`). Cell ids come from the cell id column
            if present, otherwise from the index.
        marker_cols : sequence of str, optional
            Columns holding marker intensities.
        windows, image_metadata, config, verbose
            Passed to the constructor.

        Returns
        -------
        CellTable

        Examples
        --------
        >>> table = CellTable.from_dataframe(cells, marker_cols=['CD3', 'CD20'])
        """
        config = config or KontextlojiConfig()
        missing = [c for c in config.required_columns() if c not in df.columns]
        if missing:
            raise ValidationError(f"Missing columns: {missing}")

        if config.cell_id_col in df.columns:
            cell_ids = df[config.cell_id_col].astype(str).tolist()
        else:
            cell_ids = df.index.astype(str).tolist()

        marker_cols = list(marker_cols or [])
        absent = [c for c in marker_cols if c not in df.columns]
        if absent:
            raise ValidationError(f"Marker columns not found: {absent}")
        markers = df[marker_cols].to_numpy(dtype=float) if marker_cols else None

        used = set(config.required_columns()) | set(marker_cols) | {config.cell_id_col}
        extra = [c for c in df.columns if c not in used]
        cell_meta = None
        if extra:
            cell_meta = df[extra].copy()
            cell_meta.index = pd.Index(cell_ids)

        return cls(
            cell_ids=cell_ids,
            image_ids=df[config.image_id_col].tolist(),
            x=df[config.x_col].to_numpy(),
            y=df[config.y_col].to_numpy(),
            cell_types=df[config.cell_type_col].tolist(),
            markers=markers,
            marker_names=marker_cols or None,
            cell_metadata=cell_meta,
            windows=windows,
            image_metadata=image_metadata,
            config=config,
            verbose=verbose,
        )

    # ========== Properties ==========

    @property
    def cell_index(self) -> pd.Index:
        return self._cell_index

    @property
    def image_index(self) -> pd.Index:
        return self._image_index

    @property
    def marker_names(self) -> pd.Index:
        return self._marker_index

    @property
    def n_cells(self) -> int:
        return len(self._cell_index)

    @property
    def n_images(self) -> int:
        return len(self._image_index)

    @property
    def n_markers(self) -> int:
        return len(self._marker_index)

    @property
    def image_ids(self) -> np.ndarray:
        """Image id per cell."""
        return self._image_ids

    @property
    def cell_types(self) -> pd.Categorical:
        return self._cell_types

    @property
    def cell_type_vocabulary(self) -> List[str]:
        return list(self._cell_types.categories)

    @property
    def markers(self) -> np.ndarray:
        return self._markers

    @property
    def cell_meta(self) -> pd.DataFrame:
        return self._cell_meta

    @property
    def image_meta(self) -> pd.DataFrame:
        return self._image_meta

    @property
    def windows(self) -> Dict[str, Window]:
        return self._windows

    @property
    def layers(self) -> Dict[str, np.ndarray]:
        return self._layers

    # ========== Lookup helpers ==========

    def _get_cell_indices(self, cell_ids: Union[List[str], np.ndarray, pd.Index]) -> np.ndarray:
        indices = [self._cell_id_to_idx.get(str(cid)) for cid in cell_ids]
        missing = [cid for cid, idx in zip(cell_ids, indices) if idx is None]
        if missing:
            raise KeyError(f"{len(missing)} cell IDs not found, e.g. {missing[:3]}")
        return np.asarray(indices, dtype=int)

    def _get_marker_indices(self, marker_names: Union[str, Sequence[str]]) -> np.ndarray:
        if isinstance(marker_names, str):
            marker_names = [marker_names]
        indices = [self._marker_to_idx.get(m) for m in marker_names]
        missing = [m for m, idx in zip(marker_names, indices) if idx is None]
        if missing:
            raise KeyError(f"Markers not found: {missing}")
        return np.asarray(indices, dtype=int)

    def _image_mask(self, image_id: str) -> np.ndarray:
        image_id = str(image_id)
        if image_id not in self._windows:
            raise KeyError(f"Image '{image_id}' not found")
        return self._image_ids == image_id

    # ========== Accessors ==========

    def get_cells_in_image(self, image_id: str) -> pd.Index:
        return self._cell_index[self._image_mask(image_id)]

    def get_window(self, image_id: str) -> Window:
        return self._windows[str(image_id)]

    def get_spatial_coords(self,
                           cell_ids: Optional[Sequence[str]] = None,
                           image_id: Optional[str] = None) -> np.ndarray:
        """
        Get coordinates (n × 2).

        Parameters
        ----------
        cell_ids : sequence of str, optional
            Specific cells. Takes precedence over image_id.
        image_id : str, optional
            All cells of one image.
        """
        if cell_ids is not None:
            return self._coords[self._get_cell_indices(cell_ids)]
        if image_id is not None:
            return self._coords[self._image_mask(image_id)]
        return self._coords

    def get_markers(self,
                    marker_names: Optional[Union[str, Sequence[str]]] = None,
                    layer: Optional[str] = None,
                    as_dataframe: bool = False) -> Union[np.ndarray, pd.DataFrame]:
        """
        Get marker intensities, optionally from a processed layer.

        Parameters
        ----------
        marker_names : str or sequence of str, optional
            Subset of markers. All markers if None.
        layer : str, optional
            Layer name (e.g. 'normalized'). Raw markers if None.
        as_dataframe : bool
            Return a DataFrame indexed by cell id.
        """
        X = self._markers if layer is None else self.get_layer(layer)
        names = self._marker_index
        if marker_names is not None:
            idx = self._get_marker_indices(marker_names)
            X = X[:, idx]
            names = self._marker_index[idx]
        if as_dataframe:
            return pd.DataFrame(X, index=self._cell_index, columns=names)
        return X

    def image_view(self, image_id: str) -> ImageCells:
        """Plain-array slice of one image for worker processes."""
        mask = self._image_mask(image_id)
        return ImageCells(
            image_id=str(image_id),
            cell_ids=self._cell_index.to_numpy()[mask],
            coords=self._coords[mask],
            cell_types=np.asarray(self._cell_types)[mask].astype(object),
            window=self._windows[str(image_id)],
        )

    def records(self) -> Iterator[CellRecord]:
        """Iterate over cells as CellRecord objects."""
        types = np.asarray(self._cell_types)
        for i, cid in enumerate(self._cell_index):
            yield CellRecord(
                cell_id=cid,
                image_id=self._image_ids[i],
                x=float(self._coords[i, 0]),
                y=float(self._coords[i, 1]),
                cell_type=str(types[i]),
                markers=self._markers[i].copy(),
            )

    def count_cell_types(self) -> pd.DataFrame:
        """Cell counts per image (rows) and type (columns)."""
        counts = pd.crosstab(
            pd.Series(self._image_ids, name=self.config.image_id_col),
            pd.Series(np.asarray(self._cell_types), name=self.config.cell_type_col),
        )
        return counts.reindex(index=self._image_index, columns=self.cell_type_vocabulary, fill_value=0)

    # ========== Mutation ==========

    def set_cell_types(self, labels: Union[Sequence, pd.Series]) -> None:
        """
        Replace cell-type labels (e.g. after clustering/annotation).

        A Series is aligned to the master cell index by its index.
        """
        if isinstance(labels, pd.Series):
            aligned = labels.copy()
            aligned.index = aligned.index.astype(str)
            aligned = aligned.reindex(self._cell_index)
            if aligned.isna().any():
                raise ValidationError(f"{aligned.isna().sum()} cells have no label")
            labels = aligned.tolist()
        self._cell_types = self._prepare_cell_types(labels, self.n_cells)

    def add_layer(self, name: str, data: np.ndarray, overwrite: bool = False) -> None:
        """Add a processed marker matrix aligned to cells × markers."""
        if name in self._layers and not overwrite:
            raise ValueError(f"Layer '{name}' already exists. Use overwrite=True to replace.")
        data = np.asarray(data, dtype=float)
        if data.shape != self._markers.shape:
            raise ValidationError(
                f"Layer shape {data.shape} does not match markers {self._markers.shape}"
            )
        self._layers[name] = data

    def get_layer(self, name: str) -> np.ndarray:
        if name not in self._layers:
            raise KeyError(f"Layer '{name}' not found. Available: {list(self._layers)}")
        return self._layers[name]

    def list_layers(self) -> List[str]:
        return list(self._layers)

    # ========== Subsetting ==========

    def _subset(self, indices: np.ndarray, verbose: bool = False) -> 'CellTable':
        image_ids = self._image_ids[indices]
        kept_images = pd.unique(image_ids)
        table = CellTable(
            cell_ids=self._cell_index[indices],
            image_ids=image_ids,
            x=self._coords[indices, 0],
            y=self._coords[indices, 1],
            cell_types=np.asarray(self._cell_types)[indices],
            markers=self._markers[indices],
            marker_names=self._marker_index,
            cell_metadata=self._cell_meta.iloc[indices],
            windows={img: self._windows[img] for img in kept_images},
            image_metadata=self._image_meta.loc[list(kept_images)].reset_index(),
            config=self.config,
            verbose=verbose,
        )
        for name, data in self._layers.items():
            table.add_layer(name, data[indices])
        return table

    def subset_by_cells(self, cell_ids: Sequence[str]) -> 'CellTable':
        return self._subset(np.sort(self._get_cell_indices(cell_ids)))

    def subset_by_images(self, image_ids: Sequence[str]) -> 'CellTable':
        image_ids = [str(i) for i in image_ids]
        unknown = [i for i in image_ids if i not in self._windows]
        if unknown:
            raise KeyError(f"Images not found: {unknown}")
        return self._subset(np.flatnonzero(np.isin(self._image_ids, image_ids)))

    # ========== Conversion / reporting ==========

    def to_dataframe(self, layer: Optional[str] = None) -> pd.DataFrame:
        """Flatten to one row per cell (cell metadata and markers included)."""
        cfg = self.config
        df = pd.DataFrame({
            cfg.image_id_col: self._image_ids,
            cfg.x_col: self._coords[:, 0],
            cfg.y_col: self._coords[:, 1],
            cfg.cell_type_col: np.asarray(self._cell_types),
        }, index=self._cell_index)
        if self.n_markers:
            df = df.join(self.get_markers(layer=layer, as_dataframe=True))
        if len(self._cell_meta.columns):
            df = df.join(self._cell_meta)
        return df

    def summary(self) -> Dict[str, object]:
        counts = self.count_cell_types()
        return {
            'n_cells': self.n_cells,
            'n_images': self.n_images,
            'n_markers': self.n_markers,
            'n_cell_types': len(self.cell_type_vocabulary),
            'cells_per_image_median': float(counts.sum(axis=1).median()) if self.n_images else 0.0,
            'layers': self.list_layers(),
        }

    def _print_summary(self) -> None:
        s = self.summary()
        print(f"  ✓ CellTable: {s['n_cells']:,} cells × {s['n_markers']} markers, "
              f"{s['n_images']} images, {s['n_cell_types']} cell types")

    def __len__(self) -> int:
        return self.n_cells

    def __repr__(self) -> str:
        return (f"CellTable(n_cells={self.n_cells}, n_images={self.n_images}, "
                f"n_markers={self.n_markers}, cell_types={self.cell_type_vocabulary})")
