from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Mapping, Optional, Protocol, Sequence, Tuple, runtime_checkable

import numpy as np

from mwdc_reco.geometry import Projection, WirePlane
from mwdc_reco.hits import Hit

logger = logging.getLogger(__name__)

__all__ = ["Node", "PatternSource", "BinnedPatternSource"]


@dataclass(frozen=True, eq=False)
class Node:
    r"""
    One pattern proposed by a pattern source.

    A node is a trapezoid in the (z, x) plane of a projection: the
    coordinate range ``start = (lo, hi)`` at ``z_lo`` and ``end = (lo, hi)``
    at ``z_hi``, together with the hits that fall inside it. Nodes compare
    by identity; two sources may propose geometrically equal nodes.

    Attributes
    ----------
    z_lo, z_hi : float
    start, end : tuple of float
        ``(lo, hi)`` coordinate ranges at ``z_lo`` and ``z_hi``.
    hits : frozenset of Hit
    """
    z_lo: float
    z_hi: float
    start: Tuple[float, float]
    end: Tuple[float, float]
    hits: FrozenSet[Hit] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        if self.start[0] > self.start[1] or self.end[0] > self.end[1]:
            raise ValueError(f"Node ranges must satisfy lo <= hi, got {self.start}, {self.end}")

    def range_at(self, z: float) -> Tuple[float, float]:
        """Coordinate range at ``z`` by linear interpolation between the two ends."""
        dz = self.z_hi - self.z_lo
        if dz == 0.0:
            return self.start
        t = (z - self.z_lo) / dz
        return (
            self.start[0] + t * (self.end[0] - self.start[0]),
            self.start[1] + t * (self.end[1] - self.start[1]),
        )

    @property
    def planes(self) -> FrozenSet[WirePlane]:
        return frozenset(h.plane for h in self.hits)

    @property
    def n_planes(self) -> int:
        return len(self.planes)

    def sort_key(self) -> Tuple[float, float, float, float]:
        return (self.start[0], self.end[0], self.start[1], self.end[1])

    def __repr__(self) -> str:
        return (
            f"Node(start=({self.start[0]:.4f}, {self.start[1]:.4f}), "
            f"end=({self.end[0]:.4f}, {self.end[1]:.4f}), nhits={len(self.hits)})"
        )


@runtime_checkable
class PatternSource(Protocol):
    """Anything that proposes nodes for one projection and event."""

    def nodes(self, projection: Projection, hits_by_plane: Mapping[str, Sequence[Hit]]) -> List[Node]: ...


class BinnedPatternSource:
    r"""
    Brute-force pattern source on a fixed grid.

    The first and last plane of the projection are divided into ``n_bins``
    equal bins over ``[x_min, x_max]``. Every pair of a start bin :math:`i`
    and end bin :math:`j` with :math:`|j - i| \le` ``max_bin_slope`` spans a
    trapezoid. A hit is attached to the trapezoid when its ambiguity interval
    :math:`[x_L, x_R]` overlaps the trapezoid's range at the hit's plane.
    Trapezoids with hits in fewer than ``min_planes`` planes are dropped.

    Parameters
    ----------
    n_bins : int
    max_bin_slope : int
    min_planes : int
    x_min, x_max : float, optional
        Coordinate window. Defaults to the span of all wires of the
        projection, widened by half a wire spacing.
    """

    def __init__(
        self,
        n_bins: int = 64,
        max_bin_slope: int = 2,
        min_planes: int = 3,
        x_min: Optional[float] = None,
        x_max: Optional[float] = None,
    ) -> None:
        if n_bins < 1:
            raise ValueError(f"n_bins must be >= 1, got {n_bins}")
        if max_bin_slope < 0:
            raise ValueError(f"max_bin_slope must be >= 0, got {max_bin_slope}")
        if x_min is not None and x_max is not None and not x_max > x_min:
            raise ValueError(f"x_max must exceed x_min, got [{x_min}, {x_max}]")
        self.n_bins = int(n_bins)
        self.max_bin_slope = int(max_bin_slope)
        self.min_planes = int(min_planes)
        self.x_min = x_min
        self.x_max = x_max

    def _window(self, projection: Projection) -> Tuple[float, float]:
        lo = self.x_min
        hi = self.x_max
        if lo is None or hi is None:
            pad = max(abs(p.wire_spacing) for p in projection.planes) / 2.0
            ranges = [p.x_range for p in projection.planes]
            if lo is None:
                lo = min(r[0] for r in ranges) - pad
            if hi is None:
                hi = max(r[1] for r in ranges) + pad
        return float(lo), float(hi)

    def nodes(self, projection: Projection, hits_by_plane: Mapping[str, Sequence[Hit]]) -> List[Node]:
        r"""
        Propose nodes for one projection.

        Parameters
        ----------
        projection : Projection
        hits_by_plane : mapping
            ``plane name -> hits``; planes of other projections are ignored.

        Returns
        -------
        list of Node
            In (start bin, end bin) order.
        """
        x0, x1 = self._window(projection)
        width = (x1 - x0) / self.n_bins
        z_lo, z_hi = projection.z_lo, projection.z_hi
        dz = z_hi - z_lo

        # per plane: hits, interval edges and interpolation weight
        per_plane = []
        for plane in projection.planes:
            hits = list(hits_by_plane.get(plane.name, ()))
            if not hits:
                continue
            left = np.array([h.pos_l for h in hits])
            right = np.array([h.pos_r for h in hits])
            t = 0.0 if dz == 0.0 else (plane.z - z_lo) / dz
            per_plane.append((hits, left, right, t))
        if len(per_plane) < self.min_planes:
            logger.debug("Projection %s: %d plane(s) with hits, no nodes", projection.name, len(per_plane))
            return []

        out: List[Node] = []
        for i in range(self.n_bins):
            s_lo = x0 + i * width
            for j in range(max(0, i - self.max_bin_slope), min(self.n_bins, i + self.max_bin_slope + 1)):
                e_lo = x0 + j * width
                selected: List[Hit] = []
                n_planes = 0
                for hits, left, right, t in per_plane:
                    lo = s_lo + t * (e_lo - s_lo)
                    hi = lo + width
                    mask = (left <= hi) & (right >= lo)
                    if mask.any():
                        n_planes += 1
                        selected.extend(h for h, m in zip(hits, mask) if m)
                if n_planes < self.min_planes:
                    continue
                out.append(Node(
                    z_lo=z_lo,
                    z_hi=z_hi,
                    start=(s_lo, s_lo + width),
                    end=(e_lo, e_lo + width),
                    hits=frozenset(selected),
                ))
        logger.debug("Projection %s: %d node(s) from %d bins", projection.name, len(out), self.n_bins)
        return out
