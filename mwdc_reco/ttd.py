from __future__ import annotations

from typing import Dict, Protocol, Sequence, Type, runtime_checkable

import numpy as np

__all__ = [
    "TimeToDistConv",
    "LinearTTDConv",
    "TanhTTDConv",
    "TableTTDConv",
    "TTD_CONVERTERS",
    "make_converter",
]


@runtime_checkable
class TimeToDistConv(Protocol):
    r"""
    Drift time :math:`\to` drift distance capability.

    Implementations accept scalars or numpy arrays (seconds) and return
    distances (meters) of the same shape. Negative times map to zero.
    """

    def convert(self, time): ...

    def inverse(self, distance): ...


class LinearTTDConv:
    r"""
    Constant drift velocity: :math:`d(t) = v\,t` for :math:`t \ge 0`.

    Parameters
    ----------
    drift_vel : float
        Drift velocity (m/s). Must be positive.
    """

    __slots__ = ("drift_vel",)
    n_params = 1

    def __init__(self, drift_vel: float) -> None:
        if not drift_vel > 0.0:
            raise ValueError(f"drift velocity must be positive, got {drift_vel}")
        self.drift_vel = float(drift_vel)

    def convert(self, time):
        return self.drift_vel * np.maximum(time, 0.0)

    def inverse(self, distance):
        return np.maximum(distance, 0.0) / self.drift_vel

    def __repr__(self) -> str:
        return f"LinearTTDConv(drift_vel={self.drift_vel:g})"


class TanhTTDConv:
    r"""
    Saturating drift relation

    .. math::

        d(t) = d_{\max}\,\tanh\!\left(\frac{v\,t}{d_{\max}}\right),

    linear with velocity :math:`v` near the wire and approaching the half
    cell size :math:`d_{\max}` for long drift times.

    Parameters
    ----------
    drift_vel : float
        Drift velocity near the wire (m/s).
    max_dist : float
        Saturation distance (m).
    """

    __slots__ = ("drift_vel", "max_dist")
    n_params = 2

    def __init__(self, drift_vel: float, max_dist: float) -> None:
        if not drift_vel > 0.0 or not max_dist > 0.0:
            raise ValueError(
                f"drift velocity and max distance must be positive, got {drift_vel}, {max_dist}"
            )
        self.drift_vel = float(drift_vel)
        self.max_dist = float(max_dist)

    def convert(self, time):
        t = np.maximum(time, 0.0)
        return self.max_dist * np.tanh(self.drift_vel * t / self.max_dist)

    def inverse(self, distance):
        # clip just below saturation so arctanh stays finite
        d = np.clip(distance, 0.0, self.max_dist * (1.0 - 1e-12))
        return self.max_dist * np.arctanh(d / self.max_dist) / self.drift_vel

    def __repr__(self) -> str:
        return f"TanhTTDConv(drift_vel={self.drift_vel:g}, max_dist={self.max_dist:g})"


class TableTTDConv:
    r"""
    Piecewise-linear drift relation from measured knots.

    Parameters
    ----------
    times : sequence of float
        Strictly increasing knot times (s). The first knot should be ``0``.
    dists : sequence of float
        Non-decreasing distances (m) at the knots.

    Notes
    -----
    Times beyond the last knot return the last distance. :meth:`inverse` is
    only single-valued where the distances are strictly increasing.
    """

    __slots__ = ("times", "dists")
    n_params = None

    def __init__(self, times: Sequence[float], dists: Sequence[float]) -> None:
        t = np.asarray(times, dtype=np.float64)
        d = np.asarray(dists, dtype=np.float64)
        if t.ndim != 1 or t.shape != d.shape or t.size < 2:
            raise ValueError("table converter needs at least two (time, dist) knots of equal length")
        if np.any(np.diff(t) <= 0.0):
            raise ValueError("table converter times must be strictly increasing")
        if np.any(np.diff(d) < 0.0):
            raise ValueError("table converter distances must be non-decreasing")
        self.times = t
        self.dists = d

    def convert(self, time):
        out = np.interp(np.maximum(time, 0.0), self.times, self.dists)
        return float(out) if np.ndim(out) == 0 else out

    def inverse(self, distance):
        out = np.interp(np.maximum(distance, 0.0), self.dists, self.times)
        return float(out) if np.ndim(out) == 0 else out

    @classmethod
    def from_params(cls, params: Sequence[float]) -> "TableTTDConv":
        # params alternate t0, d0, t1, d1, ...
        if len(params) % 2:
            raise ValueError(f"table converter needs an even number of parameters, got {len(params)}")
        p = np.asarray(params, dtype=np.float64)
        return cls(p[0::2], p[1::2])

    def __repr__(self) -> str:
        return f"TableTTDConv(n_knots={self.times.size})"


TTD_CONVERTERS: Dict[str, Type] = {
    "linear": LinearTTDConv,
    "tanh": TanhTTDConv,
    "table": TableTTDConv,
}


def make_converter(name: str, params: Sequence[float]) -> TimeToDistConv:
    r"""
    Instantiate a registered time-to-distance converter by name.

    Parameters
    ----------
    name : str
        Key in :data:`TTD_CONVERTERS` (case-insensitive).
    params : sequence of float
        Converter parameters, in the order of the converter's constructor.
        For ``"table"``, alternating knot time and distance.

    Returns
    -------
    TimeToDistConv

    Raises
    ------
    KeyError
        Unknown converter name.
    ValueError
        Wrong number of parameters or invalid values.
    """
    key = str(name).lower()
    try:
        cls = TTD_CONVERTERS[key]
    except KeyError:
        raise KeyError(
            f"Drift time-to-distance converter '{name}' not available. "
            f"Choose one of: {', '.join(sorted(TTD_CONVERTERS))}"
        ) from None
    params = [float(p) for p in params]
    if cls is TableTTDConv:
        return TableTTDConv.from_params(params)
    if len(params) != cls.n_params:
        raise ValueError(
            f"Converter '{key}' expects {cls.n_params} parameter(s), got {len(params)}"
        )
    return cls(*params)
