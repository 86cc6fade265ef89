"""
Conditioning strategies and their validated parameter records.

Each ``ConditioningMethod`` has one frozen dataclass holding its options.
Records validate on construction, so a bad value is rejected before any
computation starts. ``make_params`` builds a record from a method name and
keyword options, rejecting option names the method does not accept.
"""

from dataclasses import dataclass, fields
from enum import Enum
from numbers import Real
from typing import ClassVar, Dict, Optional, Type, Union

import numpy as np


class ConditioningMethod(str, Enum):
    """Available DEM conditioning strategies."""

    MINCOST = "mincost"
    """Minimum-cost hydrologic conditioning (mix of carving and filling)."""

    MINGRAD = "mingrad"
    """Impose a minimum downstream gradient on the whole grid."""

    QUANTC = "quantc"
    """Quantile carving along the stream network."""

    QUANTC_GRID = "quantc_grid"
    """Quantile carving over every flow path of the grid."""

    SMOOTH = "smooth"
    """Regularized (or moving-mean) smoothing along the network."""

    CRS = "crs"
    """Constrained regularized smoothing with a quantile data term."""

    CRSLIN = "crslin"
    """Constrained regularized smoothing with a least-squares data term."""

    @property
    def is_grid_method(self) -> bool:
        """True if the method returns a full grid instead of stream nodes."""
        return self in (ConditioningMethod.MINGRAD, ConditioningMethod.QUANTC_GRID)


# ==============================================================================
# Validation helpers
# ==============================================================================


def _is_number(value) -> bool:
    return isinstance(value, (Real, np.number)) and not isinstance(value, (bool, np.bool_))


def _check_number(name: str, value, low: Optional[float] = None, high: Optional[float] = None):
    if not _is_number(value):
        raise TypeError(f"'{name}' must be a numeric scalar, got {type(value).__name__}")
    if not np.isfinite(value):
        raise ValueError(f"'{name}' must be finite, got {value}")
    if low is not None and value < low:
        raise ValueError(f"'{name}' must be >= {low}, got {value}")
    if high is not None and value > high:
        raise ValueError(f"'{name}' must be <= {high}, got {value}")


def _check_bool(name: str, value):
    if not isinstance(value, (bool, np.bool_)):
        raise TypeError(f"'{name}' must be a logical (True/False), got {value!r}")


def _check_choice(name: str, value, choices):
    if value not in choices:
        raise ValueError(f"'{name}' must be one of {list(choices)}, got {value!r}")


def _as_coordinates(name: str, value, ncols: int) -> Optional[np.ndarray]:
    if value is None:
        return None
    arr = np.asarray(value, dtype=np.float64)
    if arr.size == 0:
        return None
    if arr.ndim == 1 and arr.size == ncols:
        arr = arr.reshape(1, ncols)
    if arr.ndim != 2 or arr.shape[1] != ncols:
        raise ValueError(f"'{name}' must be an n x {ncols} array, got shape {arr.shape}")
    return arr


# ==============================================================================
# Parameter records
# ==============================================================================


@dataclass(frozen=True)
class MinCostParams:
    method: ClassVar[ConditioningMethod] = ConditioningMethod.MINCOST

    mc_method: str = "interp"
    """'interp' blends fill and carve by ``fillp``; 'minmax' keeps the smaller change per node."""

    fillp: float = 0.1
    """Fraction of filling versus carving, in [0, 1]."""

    def __post_init__(self):
        _check_choice("mc_method", self.mc_method, ("minmax", "interp"))
        _check_number("fillp", self.fillp, 0.0, 1.0)


@dataclass(frozen=True)
class MinGradParams:
    method: ClassVar[ConditioningMethod] = ConditioningMethod.MINGRAD

    ming: float = 0.0
    """Minimum downstream gradient (m/m)."""

    def __post_init__(self):
        _check_number("ming", self.ming, 0.0)


@dataclass(frozen=True)
class QuantCarveParams:
    method: ClassVar[ConditioningMethod] = ConditioningMethod.QUANTC

    tau: float = 0.5
    ming: float = 0.0
    split: bool = True
    """Solve each connected component separately."""

    def __post_init__(self):
        _check_number("tau", self.tau, 0.0, 1.0)
        _check_number("ming", self.ming, 0.0)
        _check_bool("split", self.split)


@dataclass(frozen=True)
class QuantCarveGridParams:
    method: ClassVar[ConditioningMethod] = ConditioningMethod.QUANTC_GRID

    tau: float = 0.5

    def __post_init__(self):
        _check_number("tau", self.tau, 0.0, 1.0)


@dataclass(frozen=True)
class SmoothParams:
    method: ClassVar[ConditioningMethod] = ConditioningMethod.SMOOTH

    sm_method: str = "regularization"
    split: bool = True
    stiffness: float = 10.0
    stiff_tribs: bool = True
    """Relax the stiffness penalty at tributary junctions."""

    positive: bool = True
    """Forbid elevation increases in the downstream direction."""

    def __post_init__(self):
        _check_choice("sm_method", self.sm_method, ("regularization", "movmean"))
        _check_bool("split", self.split)
        _check_number("stiffness", self.stiffness, 0.0)
        _check_bool("stiff_tribs", self.stiff_tribs)
        _check_bool("positive", self.positive)


@dataclass(frozen=True)
class CrsParams:
    method: ClassVar[ConditioningMethod] = ConditioningMethod.CRS

    stiffness: float = 10.0
    tau: float = 0.5
    ming: float = 0.0
    stiff_tribs: bool = True
    knicks: Optional[np.ndarray] = None
    """n x 2 map coordinates where the stiffness penalty is relaxed."""

    split: bool = True

    def __post_init__(self):
        _check_number("stiffness", self.stiffness, 0.0)
        _check_number("tau", self.tau, 0.0, 1.0)
        _check_number("ming", self.ming, 0.0)
        _check_bool("stiff_tribs", self.stiff_tribs)
        _check_bool("split", self.split)
        object.__setattr__(self, "knicks", _as_coordinates("knicks", self.knicks, 2))


@dataclass(frozen=True)
class CrsLinParams:
    method: ClassVar[ConditioningMethod] = ConditioningMethod.CRSLIN

    stiffness: float = 10.0
    stiff_tribs: bool = True
    ming: float = 0.0
    knicks: Optional[np.ndarray] = None
    imposemin: bool = False
    """Carve the profile with the minimum gradient before smoothing."""

    attachtomin: bool = False
    """Keep the result at or below the profile's running minimum."""

    attachheads: bool = False
    """Hold channel-head elevations fixed."""

    discardflats: bool = False
    """Ignore flat reaches in the data term."""

    maxcurvature: Optional[float] = None
    """Maximum convex curvature at any node."""

    precisecoords: Optional[np.ndarray] = None
    """n x 3 (x, y, z) points the profile must pass through."""

    def __post_init__(self):
        _check_number("stiffness", self.stiffness, 0.0)
        _check_bool("stiff_tribs", self.stiff_tribs)
        _check_number("ming", self.ming, 0.0)
        for name in ("imposemin", "attachtomin", "attachheads", "discardflats"):
            _check_bool(name, getattr(self, name))
        if self.maxcurvature is not None:
            _check_number("maxcurvature", self.maxcurvature)
        object.__setattr__(self, "knicks", _as_coordinates("knicks", self.knicks, 2))
        object.__setattr__(self, "precisecoords", _as_coordinates("precisecoords", self.precisecoords, 3))


ConditioningParams = Union[
    MinCostParams,
    MinGradParams,
    QuantCarveParams,
    QuantCarveGridParams,
    SmoothParams,
    CrsParams,
    CrsLinParams,
]

PARAMS_BY_METHOD: Dict[ConditioningMethod, Type] = {
    ConditioningMethod.MINCOST: MinCostParams,
    ConditioningMethod.MINGRAD: MinGradParams,
    ConditioningMethod.QUANTC: QuantCarveParams,
    ConditioningMethod.QUANTC_GRID: QuantCarveGridParams,
    ConditioningMethod.SMOOTH: SmoothParams,
    ConditioningMethod.CRS: CrsParams,
    ConditioningMethod.CRSLIN: CrsLinParams,
}


def parse_method(method: Union[str, ConditioningMethod]) -> ConditioningMethod:
    """Resolve a method name (case-insensitive) to a ConditioningMethod."""
    if isinstance(method, ConditioningMethod):
        return method
    try:
        return ConditioningMethod(str(method).lower())
    except ValueError:
        valid = ", ".join(m.value for m in ConditioningMethod)
        raise ValueError(f"Unknown conditioning method '{method}'; valid methods: {valid}") from None


def make_params(method: Union[str, ConditioningMethod], **options) -> ConditioningParams:
    """
    Build the validated parameter record for ``method``.

    Raises:
        ValueError: Unknown method, option name not used by the method, or
            out-of-range value.
        TypeError: Option of the wrong type.
    """
    method = parse_method(method)
    cls = PARAMS_BY_METHOD[method]
    allowed = {f.name for f in fields(cls)}
    unknown = sorted(set(options) - allowed)
    if unknown:
        raise ValueError(
            f"Option(s) {', '.join(unknown)} not valid for method '{method.value}'; "
            f"valid options: {', '.join(sorted(allowed))}"
        )
    return cls(**options)
