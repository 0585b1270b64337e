from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from itertools import islice, product
from typing import Any, Iterable, List, NamedTuple, Optional, Set, Tuple

import numpy as np
from scipy import stats

from mwdc_reco.fit_kernels import fit_lines, line_errsq
from mwdc_reco.geometry import Projection
from mwdc_reco.hits import Hit
from mwdc_reco.patterns import Node

logger = logging.getLogger(__name__)

__all__ = ["Point", "FitResult", "Corners", "RoadState", "RoadSnapshot", "Road"]

# ranges that merely touch do not overlap
MIN_OVERLAP = 1e-9


class RoadState(Enum):
    """Lifecycle state of a road."""
    EMPTY = "empty"
    BUILDING = "building"
    FINISHED = "finished"
    FITTED = "fitted"
    VOID = "void"
    MERGED = "merged"


@dataclass(frozen=True, slots=True)
class Point:
    """Selected coordinate ``x`` of ``hit`` at ``z``, one side of its left/right ambiguity."""
    x: float
    z: float
    hit: Hit

    def __post_init__(self) -> None:
        if self.hit is None:
            raise ValueError("Point requires a hit")

    @property
    def res(self) -> float:
        return self.hit.resolution


@dataclass(frozen=True, eq=False, slots=True)
class FitResult:
    r"""
    One accepted straight-line fit :math:`x = \text{pos} + \text{slope}\cdot z`.

    Attributes
    ----------
    pos, slope, chi2 : float
    cov : tuple of float
        ``(V11, V12, V22)`` covariance of ``(pos, slope)``.
    dof : int
        Number of points minus two.
    points : tuple of Point
        Exactly the points used, in plane order.
    """
    pos: float
    slope: float
    chi2: float
    cov: Tuple[float, float, float]
    dof: int
    points: Tuple[Point, ...]

    @property
    def prob(self) -> float:
        """Chi-square tail probability; ``1.0`` without degrees of freedom."""
        if self.dof <= 0:
            return 1.0
        return float(stats.chi2.sf(self.chi2, self.dof))

    def __lt__(self, other: "FitResult") -> bool:
        return self.chi2 < other.chi2


class Corners(NamedTuple):
    x_ll: float
    x_lr: float
    z_l: float
    x_ul: float
    x_ur: float
    z_u: float


class RoadSnapshot(NamedTuple):
    """Saved state of a :class:`Road`, see :meth:`Road.snapshot`."""
    env: np.ndarray
    patterns: Tuple[Node, ...]
    hits: frozenset
    points: Tuple[Tuple[Point, ...], ...]
    fits: Tuple[FitResult, ...]
    state: RoadState
    good: bool
    merged_into: Optional["Road"]


class Road:
    r"""
    A region of one projection holding the hits of a track candidate.

    A road is built from pattern nodes (:meth:`add`), closed with
    :meth:`finish`, which selects the hit coordinates inside the road, and
    fit with :meth:`fit`. Roads built independently from adjacent nodes may
    describe the same track; :meth:`include` absorbs such a road.

    Envelope
    --------
    The road is bounded at :math:`z_l = z_\text{first} - \epsilon` and
    :math:`z_u = z_\text{last} + \epsilon` by the coordinate ranges
    :math:`[x_{ll}, x_{lr}]` and :math:`[x_{ul}, x_{ur}]`, the union of the
    ranges of all nodes added. Its left and right edges are the straight
    lines joining the corners; ``corner_x`` holds the corners in the order
    LL, LR, UR, UL, LL.

    Fit
    ---
    Each populated plane contributes exactly one point per hypothesis. The
    hypotheses are fit by weighted least squares with weights
    :math:`1/\sigma^2`; those with :math:`\chi^2/\text{dof}` below
    ``chi2_cut`` (or with :math:`\text{dof}=0`) are kept, sorted by
    :math:`\chi^2`.

    Parameters
    ----------
    projection : Projection
        Planes and :class:`~mwdc_reco.config.RoadConfig` of this road.
    node : Node, optional
        Seed node.

    Attributes
    ----------
    state : RoadState
    good : bool
    pos, slope, chi2 : float
        Copies of the best fit (``nan``/``inf`` before a successful fit).
    cov : tuple of float
    dof : int
    track : object or None
        Back-reference to a 3-D track using this road.
    merged_into : Road or None
        Set when this road was absorbed by another.
    n_truncated : int
        Number of fits that hit ``max_combinations``.
    """

    def __init__(self, projection: Projection, node: Optional[Node] = None) -> None:
        self.projection = projection
        self.config = projection.config
        self.z_l = projection.z_lo - self.config.z_epsilon
        self.z_u = projection.z_hi + self.config.z_epsilon
        self.corner_x = np.full(5, np.nan)
        # lo/hi at z_l, lo/hi at z_u
        self._env = np.full(4, np.nan)
        self._patterns: List[Node] = []
        self._pattern_set: Set[Node] = set()
        self._hits: Set[Hit] = set()
        self._points: List[List[Point]] = [[] for _ in projection.planes]
        self._fits: List[FitResult] = []
        self.state = RoadState.EMPTY
        self.good = True
        self.pos = math.nan
        self.slope = math.nan
        self.chi2 = math.inf
        self.cov: Tuple[float, float, float] = (math.nan, math.nan, math.nan)
        self.dof = 0
        self.track: Any = None
        self.merged_into: Optional[Road] = None
        self.n_truncated = 0
        if node is not None:
            self.add(node)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------
    @property
    def envelope(self) -> Tuple[float, float, float, float]:
        """``(x_ll, x_lr, x_ul, x_ur)`` of the current node union."""
        return tuple(float(v) for v in self._env)

    @property
    def patterns(self) -> Tuple[Node, ...]:
        return tuple(self._patterns)

    @property
    def hits(self) -> frozenset:
        return frozenset(self._hits)

    def _check_mutable(self) -> None:
        if self.state in (RoadState.VOID, RoadState.MERGED):
            raise RuntimeError(f"Cannot modify a {self.state.value} road")

    def is_in_range(self, node: Node) -> bool:
        r"""
        Whether ``node`` overlaps the road at both :math:`z_l` and :math:`z_u`.

        The road bounds are widened by ``envelope_tolerance``. With
        ``max_width`` set, the grown road must also not exceed that width.
        An empty road accepts any node.
        """
        if self.state is RoadState.EMPTY:
            return True
        tol = self.config.envelope_tolerance
        lo_l, hi_l, lo_u, hi_u = self._env
        nl = node.range_at(self.z_l)
        nu = node.range_at(self.z_u)
        if min(nl[1], hi_l + tol) - max(nl[0], lo_l - tol) <= MIN_OVERLAP:
            return False
        if min(nu[1], hi_u + tol) - max(nu[0], lo_u - tol) <= MIN_OVERLAP:
            return False
        return self._within_width(nl[0], nl[1], nu[0], nu[1])

    def _within_width(self, lo_l: float, hi_l: float, lo_u: float, hi_u: float) -> bool:
        """Whether growing the road by these ranges keeps it within ``max_width``."""
        max_width = self.config.max_width
        if max_width is None:
            return True
        env = self._env
        return bool(
            max(env[1], hi_l) - min(env[0], lo_l) <= max_width
            and max(env[3], hi_u) - min(env[2], lo_u) <= max_width
        )

    def _grow(self, lo_l: float, hi_l: float, lo_u: float, hi_u: float) -> None:
        if self.state is RoadState.EMPTY:
            self._env[:] = (lo_l, hi_l, lo_u, hi_u)
            return
        env = self._env
        env[0] = min(env[0], lo_l)
        env[1] = max(env[1], hi_l)
        env[2] = min(env[2], lo_u)
        env[3] = max(env[3], hi_u)

    def _reopen(self) -> None:
        self.state = RoadState.BUILDING
        self.good = True
        self._points = [[] for _ in self.projection.planes]
        self._clear_fit()

    def _clear_fit(self) -> None:
        self._fits = []
        self.pos = math.nan
        self.slope = math.nan
        self.chi2 = math.inf
        self.cov = (math.nan, math.nan, math.nan)
        self.dof = 0

    def add(self, node: Node) -> bool:
        r"""
        Add a pattern node to the road.

        Returns
        -------
        bool
            ``True`` if the node was added or is already part of the road,
            ``False`` if it is out of range (the road is then unchanged).

        Raises
        ------
        RuntimeError
            If the road is void or merged.
        """
        self._check_mutable()
        if node in self._pattern_set:
            return True
        if not self.is_in_range(node):
            return False
        nl = node.range_at(self.z_l)
        nu = node.range_at(self.z_u)
        self._grow(nl[0], nl[1], nu[0], nu[1])
        self._patterns.append(node)
        self._pattern_set.add(node)
        self._hits.update(node.hits)
        self._reopen()
        return True

    def left_edge(self, z: float) -> float:
        lo_l, _, lo_u, _ = self._env
        return float(lo_l + (z - self.z_l) * (lo_u - lo_l) / (self.z_u - self.z_l))

    def right_edge(self, z: float) -> float:
        _, hi_l, _, hi_u = self._env
        return float(hi_l + (z - self.z_l) * (hi_u - hi_l) / (self.z_u - self.z_l))

    def centre(self, z: float) -> float:
        return 0.5 * (self.left_edge(z) + self.right_edge(z))

    def collect_coordinates(self) -> int:
        r"""
        Fill the per-plane point lists from the road's hits.

        Each hit contributes :math:`x_L` and :math:`x_R` (only :math:`x_w`
        for zero drift distance) where they lie between the road edges at
        the hit's z. Lists are sorted by x.

        Returns
        -------
        int
            Number of planes with at least one point.
        """
        points: List[List[Point]] = [[] for _ in self.projection.planes]
        for hit in sorted(self._hits, key=lambda h: (h.z, h.pos, h.time, h.index)):
            try:
                idx = self.projection.plane_index(hit.plane)
            except KeyError:
                logger.warning("Road %s: hit on plane %s outside projection ignored", self.projection.name, hit.plane.name)
                continue
            z = hit.z
            left = self.left_edge(z)
            right = self.right_edge(z)
            coords = (hit.pos,) if hit.drift_dist == 0.0 else (hit.pos_l, hit.pos_r)
            for x in coords:
                if left <= x <= right:
                    points[idx].append(Point(float(x), z, hit))
        for plist in points:
            plist.sort(key=lambda p: p.x)
        self._points = points
        return sum(1 for plist in points if plist)

    def finish(self) -> bool:
        r"""
        Close construction: set the corners and collect the hit coordinates.

        Returns
        -------
        bool
            ``False`` if the road is (or becomes) void because fewer than
            ``min_planes`` planes have points.
        """
        if self.state is RoadState.MERGED:
            raise RuntimeError("Cannot finish a merged road")
        if self.state is RoadState.VOID:
            return False
        if self.state is RoadState.EMPTY:
            self.void()
            return False
        lo_l, hi_l, lo_u, hi_u = self._env
        self.corner_x[:] = (lo_l, hi_l, hi_u, lo_u, lo_l)
        self._clear_fit()
        n_planes = self.collect_coordinates()
        if n_planes < self.config.min_planes:
            logger.debug("Road %r: only %d plane(s) with points, voided", self, n_planes)
            self.void()
            return False
        self.state = RoadState.FINISHED
        return True

    # ------------------------------------------------------------------
    # Fitting
    # ------------------------------------------------------------------
    def _candidates(self) -> List[List[Point]]:
        out = []
        for plist in self._points:
            if not plist:
                continue
            c = self.centre(plist[0].z)
            out.append(sorted(plist, key=lambda p: (abs(p.x - c), p.x)))
        return out

    def fit(self) -> bool:
        r"""
        Fit all point combinations and keep the acceptable ones.

        Candidates of each plane are ordered by distance from the road's
        centre line; combinations are enumerated with the last plane varying
        fastest, at most ``max_combinations`` of them.

        Returns
        -------
        bool
            ``True`` if at least one hypothesis passed the cut.

        Raises
        ------
        RuntimeError
            If called before :meth:`finish` or on a merged road.
        """
        if self.state in (RoadState.EMPTY, RoadState.BUILDING):
            raise RuntimeError("Road.fit() called before Road.finish()")
        if self.state is RoadState.MERGED:
            raise RuntimeError("Cannot fit a merged road")
        if self.state is RoadState.VOID:
            return False

        cfg = self.config
        cands = self._candidates()
        n = len(cands)
        total = math.prod(len(c) for c in cands)
        combos = list(islice(product(*cands), cfg.max_combinations))
        if total > cfg.max_combinations:
            self.n_truncated += 1
            logger.warning(
                "Road %r: %d fit combinations, only the first %d evaluated",
                self, total, cfg.max_combinations,
            )

        x = np.array([[p.x for p in c] for c in combos], dtype=np.float64)
        z = np.array([[p.z for p in c] for c in combos], dtype=np.float64)
        w = np.array([[1.0 / (p.res * p.res) for p in c] for c in combos], dtype=np.float64)
        pos, slope, chi2, cov, ok = fit_lines(x, z, w)

        dof = n - 2
        if dof > 0:
            accept = ok & (chi2 / dof < cfg.chi2_cut)
        else:
            accept = ok
        fits = [
            FitResult(
                pos=float(pos[i]),
                slope=float(slope[i]),
                chi2=float(chi2[i]),
                cov=(float(cov[i, 0]), float(cov[i, 1]), float(cov[i, 2])),
                dof=dof,
                points=tuple(combos[i]),
            )
            for i in np.flatnonzero(accept)
        ]
        fits.sort(key=lambda f: f.chi2)
        self._fits = fits
        if not fits:
            logger.debug("Road %r: no acceptable fit among %d hypotheses", self, len(combos))
            self.void()
            return False

        self._set_best(fits[0])
        self.good = True
        self.state = RoadState.FITTED
        return True

    def _set_best(self, best: FitResult) -> None:
        self.pos, self.slope, self.chi2 = best.pos, best.slope, best.chi2
        self.cov = best.cov
        self.dof = best.dof

    def get_fit_result(self) -> FitResult:
        if not self._fits:
            raise RuntimeError("Road has no accepted fit")
        return self._fits[0]

    def get_points(self) -> Tuple[Point, ...]:
        return self.get_fit_result().points

    @property
    def fit_results(self) -> Tuple[FitResult, ...]:
        return tuple(self._fits)

    @property
    def n_fits(self) -> int:
        return len(self._fits)

    @property
    def points(self) -> List[Tuple[Point, ...]]:
        """Candidate points per plane of the projection (z order)."""
        return [tuple(plist) for plist in self._points]

    def get_pos(self, z: Optional[float] = None) -> float:
        """Best-fit position at ``z`` (the intercept at ``z = 0`` when ``z`` is None)."""
        self._require_fit()
        if z is None:
            return self.pos
        return self.pos + self.slope * z

    def get_pos_errsq(self, z: float) -> float:
        r"""
        Variance of the best-fit position at ``z``,
        :math:`V_{11} + 2 V_{12} z + V_{22} z^2`.

        Raises
        ------
        RuntimeError
            If the road is not fitted.
        """
        self._require_fit()
        return float(line_errsq(self.cov, z))

    @property
    def corners(self) -> Corners:
        cx = self.corner_x
        return Corners(
            x_ll=float(cx[0]), x_lr=float(cx[1]), z_l=self.z_l,
            x_ul=float(cx[3]), x_ur=float(cx[2]), z_u=self.z_u,
        )

    # ------------------------------------------------------------------
    # Merging
    # ------------------------------------------------------------------
    def _require_fit(self) -> None:
        if self.state is not RoadState.FITTED:
            raise RuntimeError(f"Road is {self.state.value}, not fitted")

    def separation(self, other: "Road", z: float) -> Tuple[float, float]:
        r"""
        Difference of the best-fit positions at ``z`` and its uncertainty.

        Returns
        -------
        dx : float
            :math:`x_\text{self}(z) - x_\text{other}(z)`.
        sigma : float
            :math:`\sqrt{\sigma^2_\text{self}(z) + \sigma^2_\text{other}(z)}`.
        """
        self._require_fit()
        other._require_fit()
        dx = self.get_pos(z) - other.get_pos(z)
        errsq = max(self.get_pos_errsq(z), 0.0) + max(other.get_pos_errsq(z), 0.0)
        return dx, math.sqrt(errsq)

    def overlap_fraction(self, other: "Road") -> float:
        """Envelope overlap over the narrower width, averaged over both z edges."""
        fracs = []
        for i in (0, 2):
            lo_a, hi_a = self._env[i], self._env[i + 1]
            lo_b, hi_b = other._env[i], other._env[i + 1]
            ov = min(hi_a, hi_b) - max(lo_a, lo_b)
            narrower = min(hi_a - lo_a, hi_b - lo_b)
            if narrower > 0.0:
                fracs.append(min(max(ov / narrower, 0.0), 1.0))
            else:
                fracs.append(1.0 if ov >= 0.0 else 0.0)
        return float(sum(fracs) / len(fracs))

    def _contains(self, other: "Road") -> bool:
        tol = self.config.envelope_tolerance
        a = self._env
        b = other._env
        return bool(
            b[0] >= a[0] - tol and b[1] <= a[1] + tol
            and b[2] >= a[2] - tol and b[3] <= a[3] + tol
        )

    def _fits_agree(self, other: "Road") -> bool:
        if not (self.state is RoadState.FITTED and other.state is RoadState.FITTED):
            return False
        if not (self.good and other.good):
            return False
        cfg = self.config
        z_mid = 0.5 * (self.z_l + self.z_u)
        dx, sigma = self.separation(other, z_mid)
        limit = max(cfg.merge_position_tolerance, cfg.merge_nsigma * sigma)
        return abs(dx) <= limit and self.overlap_fraction(other) >= cfg.merge_min_overlap

    def include(self, other: "Road") -> bool:
        r"""
        Absorb ``other`` if it describes the same track.

        ``other`` is absorbed when its envelope lies inside this road's
        (widened by ``envelope_tolerance``) at both z edges, or when both
        roads are fitted, their lines agree at the z midpoint within
        :math:`\max(\text{tol}, n_\sigma\sqrt{\sigma_a^2+\sigma_b^2})` and
        their envelopes overlap by at least ``merge_min_overlap``. With
        ``max_width`` set, the envelope union must not exceed it.

        On success this road takes all of ``other``'s nodes and hits and must
        be finished and fit again; ``other`` becomes ``MERGED``. Take a
        :meth:`snapshot` of both roads first to be able to undo the merge.

        Returns
        -------
        bool

        Raises
        ------
        RuntimeError
            If this road is void or merged.
        ValueError
            If the roads belong to different projections.
        """
        self._check_mutable()
        if other is self:
            return False
        if other.projection is not self.projection:
            raise ValueError("Cannot include a road from another projection")
        if other.state in (RoadState.EMPTY, RoadState.VOID, RoadState.MERGED):
            return False
        if self.state is RoadState.EMPTY:
            return False
        b = other._env
        if not self._within_width(b[0], b[1], b[2], b[3]):
            return False
        if not (self._contains(other) or self._fits_agree(other)):
            return False

        self._grow(b[0], b[1], b[2], b[3])
        for node in other._patterns:
            if node not in self._pattern_set:
                self._patterns.append(node)
                self._pattern_set.add(node)
        self._hits.update(other._hits)
        self._reopen()

        other.good = False
        other.state = RoadState.MERGED
        other.merged_into = self
        logger.debug("Road %r absorbed %r", self, other)
        return True

    def snapshot(self) -> RoadSnapshot:
        """Capture envelope, content, fits and state for :meth:`restore`."""
        return RoadSnapshot(
            env=self._env.copy(),
            patterns=tuple(self._patterns),
            hits=frozenset(self._hits),
            points=tuple(tuple(plist) for plist in self._points),
            fits=tuple(self._fits),
            state=self.state,
            good=self.good,
            merged_into=self.merged_into,
        )

    def restore(self, snap: RoadSnapshot) -> None:
        """Return to a :meth:`snapshot`, e.g. to undo an :meth:`include` whose re-fit failed."""
        self._env[:] = snap.env
        self._patterns = list(snap.patterns)
        self._pattern_set = set(snap.patterns)
        self._hits = set(snap.hits)
        self._points = [list(plist) for plist in snap.points]
        self._clear_fit()
        self._fits = list(snap.fits)
        if self._fits:
            self._set_best(self._fits[0])
        self.state = snap.state
        self.good = snap.good
        self.merged_into = snap.merged_into

    def intersect(self, other: "Road", z: float) -> np.ndarray:
        r"""
        Transverse point where the best-fit lines of two projections meet at ``z``.

        Road :math:`k` measures :math:`u_k = x\cos\theta_k + y\sin\theta_k`,
        with :math:`\theta_k` its projection angle; solving both for
        :math:`(x, y)` gives the intersection.

        Raises
        ------
        ValueError
            If the projection axes are parallel.
        """
        self._require_fit()
        other._require_fit()
        a = self.projection.angle
        b = other.projection.angle
        det = math.sin(b - a)
        if abs(det) < 1e-12:
            raise ValueError(
                f"Projections {self.projection.name} and {other.projection.name} have parallel axes"
            )
        ua = self.get_pos(z)
        ub = other.get_pos(z)
        x = (ua * math.sin(b) - ub * math.sin(a)) / det
        y = (ub * math.cos(a) - ua * math.cos(b)) / det
        return np.array([x, y])

    # ------------------------------------------------------------------
    # Predicates
    # ------------------------------------------------------------------
    def is_good(self) -> bool:
        return self.good

    def is_void(self) -> bool:
        return not self.good

    def void(self) -> None:
        self.good = False
        if self.state is not RoadState.MERGED:
            self.state = RoadState.VOID

    def compare(self, other: "Road") -> int:
        """-1, 0 or 1 as this road's best chi2 is below, equal to or above ``other``'s."""
        if self.chi2 < other.chi2:
            return -1
        if self.chi2 > other.chi2:
            return 1
        return 0

    def __lt__(self, other: "Road") -> bool:
        return self.compare(other) < 0

    def check_match(self, hits: Iterable[Hit]) -> bool:
        """Whether the shared hits make up at least ``match_fraction`` of the smaller set."""
        other = hits if isinstance(hits, (set, frozenset)) else set(hits)
        smaller = min(len(self._hits), len(other))
        if smaller == 0:
            return False
        return len(self._hits & other) / smaller >= self.config.match_fraction

    def set_track(self, track: Any) -> None:
        self.track = track

    def __repr__(self) -> str:
        lo_l, hi_l, lo_u, hi_u = self._env
        s = (
            f"Road({self.projection.name}, {self.state.value}, "
            f"l=[{lo_l:.4f},{hi_l:.4f}] u=[{lo_u:.4f},{hi_u:.4f}], "
            f"nhits={len(self._hits)}"
        )
        if self.state is RoadState.FITTED:
            s += f", pos={self.pos:.5f} slope={self.slope:.5f} chi2={self.chi2:.3g} dof={self.dof}"
        return s + ")"
