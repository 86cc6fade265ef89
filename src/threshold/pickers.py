"""
Pick strategies.

A picker chooses one x coordinate on a candidate's pick plot (chi in chi
mode, drainage area in slope-area mode). ``Picker.pick`` turns that choice
into a PickResult, so strategies only differ in where the number comes
from: a cursor click, a prepared list, a function, or a fixed rule.
"""

from abc import ABC, abstractmethod
from typing import Callable, Iterable
import logging

import matplotlib.pyplot as plt
import numpy as np

from src.threshold.candidates import CandidateStream, PickResult
from src.threshold.rendering import plot_candidate, render_session

logger = logging.getLogger(__name__)


class PicksExhaustedError(IndexError, ValueError):
    """A scripted picker was asked for more picks than it holds."""


class Picker(ABC):
    """Base class for pick strategies."""

    @abstractmethod
    def choose_x(self, candidate: CandidateStream) -> float:
        """x coordinate picked on the candidate's pick plot."""

    def pick(self, candidate: CandidateStream) -> PickResult:
        return candidate.resolve(self.choose_x(candidate))


class InteractivePicker(Picker):
    """Read one mouse click on the candidate's plots."""

    def choose_x(self, candidate: CandidateStream) -> float:
        with render_session() as fig:
            plot_candidate(fig, candidate)
            plt.show(block=False)
            clicks = fig.ginput(1, timeout=0)
        if not clicks:
            raise RuntimeError(f"No point picked for stream {candidate.position}")
        return float(clicks[0][0])


class ScriptedPicker(Picker):
    """Return prepared x values, one per candidate, in order."""

    def __init__(self, values: Iterable[float]):
        self.values = [float(v) for v in values]
        self._next = 0

    def choose_x(self, candidate: CandidateStream) -> float:
        if self._next >= len(self.values):
            raise PicksExhaustedError(
                f"Scripted picker has {len(self.values)} values; stream {candidate.position} needs another"
            )
        value = self.values[self._next]
        self._next += 1
        return value


class CallbackPicker(Picker):
    """Delegate the choice to ``func(candidate) -> float``."""

    def __init__(self, func: Callable[[CandidateStream], float]):
        self.func = func

    def choose_x(self, candidate: CandidateStream) -> float:
        return float(self.func(candidate))


class QuantilePicker(Picker):
    """
    Pick at a quantile of the binned values.

    Uses binned areas (slope-area mode) or binned chi (chi mode), falling
    back to the per-node profile values when the stream has no bins.
    """

    def __init__(self, quantile: float = 0.5):
        if not 0.0 <= quantile <= 1.0:
            raise ValueError(f"quantile must be in [0, 1], got {quantile}")
        self.quantile = quantile

    def choose_x(self, candidate: CandidateStream) -> float:
        if candidate.pick_method == "chi":
            values = candidate.bins.chi if not candidate.bins.is_empty else candidate.chi.chi
        else:
            values = candidate.bins.area if not candidate.bins.is_empty else candidate.chi.area
        return float(np.nanquantile(values, self.quantile))
