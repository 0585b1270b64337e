from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Iterator, List

if TYPE_CHECKING:  # pragma: no cover
    from mwdc_reco.geometry import WirePlane

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False, slots=True)
class Hit:
    r"""
    One decoded wire hit.

    Hits are created by the plane decoder from the per-event
    :class:`HitArena` and are immutable afterwards. Equality and hashing are
    by **identity**, so sets of hits never double-count one hit even when
    several patterns reference it, and two distinct hits with equal values
    stay distinct.

    A drift chamber hit does not say on which side of the wire the track
    passed. The two candidate coordinates are

    .. math::

        x_L = x_w - d, \qquad x_R = x_w + d,

    with wire position :math:`x_w` and drift distance :math:`d`.

    Attributes
    ----------
    wire : int
        Wire index within the plane.
    pos : float
        Wire position along the measured coordinate (meters).
    raw_tdc : int
        Raw TDC channel value.
    time : float
        Drift time (seconds).
    drift_dist : float
        Drift distance (meters) from the plane's time-to-distance converter.
    resolution : float
        Position resolution :math:`\sigma` (meters).
    plane : WirePlane
        Owning plane (non-owning back-reference).
    event : int
        Event number of the arena that allocated the hit.
    index : int
        Index within the arena.
    multi : bool
        The wire has more than one hit in this event.
    cluster : bool
        An adjacent wire also has a hit.
    tdiff : float
        Time difference to the previous hit on the same wire (seconds).
    """
    wire: int
    pos: float
    raw_tdc: int
    time: float
    drift_dist: float
    resolution: float
    plane: "WirePlane"
    event: int = -1
    index: int = -1
    multi: bool = False
    cluster: bool = False
    tdiff: float = 0.0

    @property
    def pos_l(self) -> float:
        return self.pos - self.drift_dist

    @property
    def pos_r(self) -> float:
        return self.pos + self.drift_dist

    @property
    def z(self) -> float:
        return self.plane.z

    def sort_key(self):
        # wire position, then time
        return (self.pos, self.time)

    def __repr__(self) -> str:
        return (
            f"Hit(plane={self.plane.name!r}, wire={self.wire}, pos={self.pos:.5f}, "
            f"dist={self.drift_dist:.5f}, event={self.event})"
        )


@dataclass(frozen=True, eq=False, slots=True)
class MCHit(Hit):
    """Hit from simulated data carrying the true track position at the plane."""
    mc_pos: float = float("nan")


class HitArena:
    r"""
    Per-event hit storage.

    All hits of one event are allocated here and released together by
    :meth:`begin_event`; nothing is freed individually. Points and fit
    results elsewhere keep plain references to hits, which are only valid
    while :meth:`is_current` holds for them.

    Attributes
    ----------
    event : int
        Sequence number of the current event (``-1`` before the first one).
    """

    __slots__ = ("event", "_hits")

    def __init__(self) -> None:
        self.event: int = -1
        self._hits: List[Hit] = []

    def begin_event(self, event_no: int) -> None:
        """Bulk-reset the arena and stamp new hits with ``event_no``."""
        if self._hits:
            logger.debug("Arena: releasing %d hits of event %d", len(self._hits), self.event)
        self._hits = []
        self.event = int(event_no)

    def allocate(self, *, mc: bool = False, **fields) -> Hit:
        r"""
        Create a hit owned by the current event.

        Parameters
        ----------
        mc : bool, optional
            Create an :class:`MCHit` instead of a :class:`Hit`.
        **fields
            Keyword arguments forwarded to the hit constructor (everything
            except ``event`` and ``index``, which the arena sets).

        Returns
        -------
        Hit
        """
        cls = MCHit if mc else Hit
        hit = cls(event=self.event, index=len(self._hits), **fields)
        self._hits.append(hit)
        return hit

    def is_current(self, hit: Hit) -> bool:
        return hit.event == self.event and 0 <= hit.index < len(self._hits) and self._hits[hit.index] is hit

    @property
    def hits(self) -> List[Hit]:
        return list(self._hits)

    def by_plane(self) -> Dict[str, List[Hit]]:
        """Group the current hits by plane name (allocation order within a plane)."""
        out: Dict[str, List[Hit]] = {}
        for h in self._hits:
            out.setdefault(h.plane.name, []).append(h)
        return out

    def __len__(self) -> int:
        return len(self._hits)

    def __iter__(self) -> Iterator[Hit]:
        return iter(self._hits)
