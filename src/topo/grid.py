"""
Georeferenced raster grids.

A GridRaster pairs a 2-D elevation-like array with its affine transform so
that linear cell indices, (row, col) pairs and map coordinates can be
converted into each other. NaN marks missing cells; a true zero is a value.

Linear indices are row-major, matching ``np.ravel_multi_index`` on the
array shape.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple, Union
import logging

import numpy as np
import rasterio
from rasterio import Affine

logger = logging.getLogger(__name__)


@dataclass
class GridRaster:
    """2-D raster with affine georeferencing."""

    z: np.ndarray
    """Cell values (float; NaN = missing)."""

    transform: Affine
    """Affine transform mapping (col, row) to map coordinates (cell corner)."""

    crs: Optional[str] = None
    """Coordinate reference system as WKT or any rasterio-readable string."""

    def __post_init__(self):
        self.z = np.asarray(self.z)
        if self.z.ndim != 2:
            raise ValueError(f"GridRaster values must be 2D, got shape {self.z.shape}")
        if not isinstance(self.transform, Affine):
            self.transform = Affine(*tuple(self.transform)[:6])

    @property
    def shape(self) -> Tuple[int, int]:
        return self.z.shape

    @property
    def size(self) -> int:
        return self.z.size

    @property
    def cellsize(self) -> float:
        """Pixel width in map units."""
        return float(abs(self.transform.a))

    @property
    def missing(self) -> np.ndarray:
        """Boolean mask of cells holding the missing sentinel (NaN)."""
        if not np.issubdtype(self.z.dtype, np.floating):
            return np.zeros(self.shape, dtype=bool)
        return np.isnan(self.z)

    @property
    def valid(self) -> np.ndarray:
        return ~self.missing

    # ------------------------------------------------------------------
    # Index / coordinate conversion
    # ------------------------------------------------------------------

    def sub2ind(self, rows, cols) -> np.ndarray:
        return np.ravel_multi_index((np.asarray(rows), np.asarray(cols)), self.shape)

    def ind2sub(self, ix) -> Tuple[np.ndarray, np.ndarray]:
        return np.unravel_index(np.asarray(ix, dtype=np.int64), self.shape)

    def ind2coord(self, ix) -> Tuple[np.ndarray, np.ndarray]:
        """Map coordinates of the centers of cells ``ix``."""
        rows, cols = self.ind2sub(np.atleast_1d(ix))
        x, y = self.transform @ (cols + 0.5, rows + 0.5)
        return np.asarray(x, dtype=np.float64), np.asarray(y, dtype=np.float64)

    def coord2ind(self, x, y) -> np.ndarray:
        """
        Linear index of the cells containing map coordinates (x, y).

        Raises
        ------
        ValueError
            If any coordinate falls outside the grid.
        """
        x = np.atleast_1d(np.asarray(x, dtype=np.float64))
        y = np.atleast_1d(np.asarray(y, dtype=np.float64))
        cols, rows = ~self.transform @ (x, y)
        rows = np.floor(rows).astype(np.int64)
        cols = np.floor(cols).astype(np.int64)
        outside = (rows < 0) | (rows >= self.shape[0]) | (cols < 0) | (cols >= self.shape[1])
        if np.any(outside):
            raise ValueError(f"{int(outside.sum())} coordinate(s) fall outside the grid")
        return self.sub2ind(rows, cols)

    # ------------------------------------------------------------------
    # Derived grids
    # ------------------------------------------------------------------

    def like(self, values: np.ndarray) -> "GridRaster":
        """New grid with the same georeferencing and different values."""
        values = np.asarray(values)
        if values.shape != self.shape:
            raise ValueError(f"Shape mismatch: {values.shape} vs grid {self.shape}")
        return GridRaster(values, self.transform, self.crs)

    def blank_like(self, fill: float = np.nan) -> "GridRaster":
        return GridRaster(np.full(self.shape, fill, dtype=np.float64), self.transform, self.crs)

    def scatter(self, ix, values, fill: float = np.nan) -> "GridRaster":
        """
        Grid holding ``values`` at cells ``ix`` and ``fill`` everywhere else.

        Used to turn per-node stream results back into a full raster.
        """
        out = self.blank_like(fill)
        out.z.flat[np.asarray(ix, dtype=np.int64)] = values
        return out

    # ------------------------------------------------------------------
    # File I/O
    # ------------------------------------------------------------------

    @classmethod
    def from_file(cls, path: Union[str, Path], band: int = 1) -> "GridRaster":
        """
        Read one band of a raster file; nodata cells become NaN.

        Raises
        ------
        FileNotFoundError
            If the file does not exist.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Raster file not found: {path}")

        with rasterio.open(path) as src:
            data = src.read(band).astype(np.float64)
            if src.nodata is not None:
                data[data == src.nodata] = np.nan
            crs = src.crs.to_wkt() if src.crs is not None else None
            transform = src.transform

        logger.info(f"Loaded raster {path.name}: shape={data.shape}, cellsize={abs(transform.a)}")
        return cls(data, transform, crs)

    def write(self, path: Union[str, Path], nodata: float = -9999.0) -> Path:
        """Write the grid as a single-band LZW-compressed GeoTIFF."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = self.z
        if data.dtype == bool:
            data = data.astype(np.uint8)
            nodata = None
        elif np.issubdtype(data.dtype, np.floating):
            data = np.where(np.isnan(data), nodata, data).astype(np.float32)

        height, width = data.shape
        with rasterio.open(
            path,
            "w",
            driver="GTiff",
            height=height,
            width=width,
            count=1,
            dtype=data.dtype,
            crs=self.crs,
            transform=self.transform,
            nodata=nodata,
            compress="lzw",
        ) as dst:
            dst.write(data, 1)

        logger.info(f"Wrote {path}")
        return path
