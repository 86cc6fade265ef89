"""Pytest configuration and fixtures for channel-threshold tests."""
import sys
from pathlib import Path

# Add project root to Python path for imports
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

import matplotlib

matplotlib.use("Agg")

import pytest
import numpy as np
from rasterio import Affine

from src.topo import GridRaster, FlowDirection, make_streams

CELLSIZE = 10.0
ROWS, COLS = 40, 30
STREAM_AREA = 500.0  # 5 cells


def valley_elevation(rows=ROWS, cols=COLS):
    """V-shaped valley draining south to a single outlet at the bottom center."""
    r, c = np.indices((rows, cols))
    center = cols // 2
    return (2.0 * (rows - 1 - r) + 1.0 * np.abs(c - center)).astype(np.float64)


@pytest.fixture
def transform():
    return Affine(CELLSIZE, 0.0, 500000.0, 0.0, -CELLSIZE, 4000000.0)


@pytest.fixture
def valley_dem(transform):
    """Noise-free valley DEM (40 x 30 cells, 10 m)."""
    return GridRaster(valley_elevation(), transform, "EPSG:32610")


@pytest.fixture
def noisy_dem(transform):
    """Valley DEM with reproducible noise, so profiles are not monotone."""
    rng = np.random.default_rng(42)
    z = valley_elevation() + rng.uniform(0.0, 1.5, size=(ROWS, COLS))
    return GridRaster(z, transform, "EPSG:32610")


@pytest.fixture
def valley_flow(valley_dem):
    return FlowDirection.from_dem(valley_dem)


@pytest.fixture
def valley_bundle(valley_dem):
    """Topo bundle of the valley DEM with a 500 m² channel threshold."""
    return make_streams(valley_dem, STREAM_AREA)


@pytest.fixture
def noisy_bundle(noisy_dem):
    return make_streams(noisy_dem, STREAM_AREA)


@pytest.fixture
def project_root():
    """Get the project root directory."""
    return Path(__file__).parent.parent
