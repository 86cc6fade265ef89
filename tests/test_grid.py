"""Tests for GridRaster georeferencing, derived grids and GeoTIFF I/O."""

import pytest
import numpy as np
from rasterio import Affine

from src.topo.grid import GridRaster


class TestGridRasterBasics:
    """Shape, cellsize and missing-value handling."""

    def test_rejects_non_2d_values(self, transform):
        """A 1-D array is not a raster."""
        with pytest.raises(ValueError, match="2D"):
            GridRaster(np.zeros(5), transform)

    def test_transform_tuple_is_coerced_to_affine(self):
        grid = GridRaster(np.zeros((3, 4)), (10.0, 0.0, 0.0, 0.0, -10.0, 30.0))
        assert isinstance(grid.transform, Affine)
        assert grid.cellsize == 10.0

    def test_nan_is_missing_but_zero_is_a_value(self, transform):
        z = np.array([[0.0, np.nan], [1.0, 2.0]])
        grid = GridRaster(z, transform)
        assert grid.missing.tolist() == [[False, True], [False, False]]
        assert grid.valid.sum() == 3


class TestCoordinates:
    """Index and coordinate conversions."""

    def test_cell_center_maps_back_to_same_cell(self, valley_dem):
        ix = np.array([0, 17, valley_dem.size - 1])
        x, y = valley_dem.ind2coord(ix)
        np.testing.assert_array_equal(valley_dem.coord2ind(x, y), ix)

    def test_first_cell_center_is_half_a_cell_from_corner(self, valley_dem, transform):
        x, y = valley_dem.ind2coord(0)
        assert x.shape == y.shape == (1,)
        assert x[0] == pytest.approx(transform.c + 5.0)
        assert y[0] == pytest.approx(transform.f - 5.0)

    @pytest.mark.filterwarnings("error::DeprecationWarning")
    @pytest.mark.filterwarnings("error::PendingDeprecationWarning")
    def test_conversions_use_current_affine_operator(self, valley_dem):
        x, y = valley_dem.ind2coord([0, 1])
        np.testing.assert_array_equal(valley_dem.coord2ind(x, y), [0, 1])

    def test_coordinate_outside_grid_raises(self, valley_dem, transform):
        with pytest.raises(ValueError, match="outside the grid"):
            valley_dem.coord2ind(transform.c - 1.0, transform.f - 1.0)


class TestDerivedGrids:
    def test_scatter_fills_other_cells_with_nan(self, valley_dem):
        out = valley_dem.scatter([0, 5], [1.5, 2.5])
        assert out.z.flat[0] == 1.5
        assert out.z.flat[5] == 2.5
        assert np.isnan(out.z).sum() == valley_dem.size - 2
        assert out.transform == valley_dem.transform

    def test_like_rejects_wrong_shape(self, valley_dem):
        with pytest.raises(ValueError, match="Shape mismatch"):
            valley_dem.like(np.zeros((2, 2)))

    def test_subtraction_gives_difference_grid(self, valley_dem):
        diff = valley_dem - valley_dem.like(valley_dem.z - 1.0)
        np.testing.assert_allclose(diff.z, 1.0)


class TestGeoTiffIO:
    def test_write_and_read_preserves_values_and_nan(self, tmp_path, transform):
        z = np.arange(12, dtype=np.float64).reshape(3, 4)
        z[1, 2] = np.nan
        path = GridRaster(z, transform, "EPSG:32610").write(tmp_path / "grid.tif")

        loaded = GridRaster.from_file(path)
        assert loaded.shape == (3, 4)
        assert np.isnan(loaded.z[1, 2])
        np.testing.assert_allclose(loaded.z[~np.isnan(z)], z[~np.isnan(z)])
        assert loaded.transform == transform
        assert loaded.crs is not None

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="Raster file not found"):
            GridRaster.from_file(tmp_path / "nope.tif")
