from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import networkx as nx
import numpy as np

from mwdc_reco.config import RoadConfig
from mwdc_reco.ttd import TimeToDistConv, make_converter

logger = logging.getLogger(__name__)

# Configuration gives TDC offsets, resolutions and time cuts in ns
TDC_SCALE = 1e-9


class PlaneType(Enum):
    """Measured coordinate of a wire plane."""
    X = "x"
    Y = "y"
    U = "u"
    V = "v"

    @classmethod
    def from_name(cls, name: str) -> "PlaneType":
        r"""
        Plane type from an explicit type string or the first letter of a plane name.

        Raises
        ------
        ValueError
            If the letter is not one of ``x, y, u, v``.
        """
        key = str(name)[:1].lower()
        for t in cls:
            if t.value == key:
                return t
        raise ValueError(
            f"Unsupported plane type '{name}'. Must be one of {', '.join(t.value for t in cls)}"
        )


@dataclass(eq=False)
class DetectorGeometry:
    """Geometry shared by all planes of one chamber (name and origin in meters)."""
    name: str = "mwdc"
    origin: np.ndarray = field(default_factory=lambda: np.zeros(3, dtype=np.float64))

    def __post_init__(self) -> None:
        self.origin = np.asarray(self.origin, dtype=np.float64).reshape(3)


@dataclass(eq=False)
class WirePlane:
    r"""
    One drift chamber wire plane.

    The plane keeps a reference to the chamber's :class:`DetectorGeometry`,
    passed at construction, and its absolute position is

    .. math:: z = z_\text{origin} + z_\text{local}.

    Wire :math:`i` sits at :math:`x_i = x_0 + i\,\Delta`, with ``wire_start``
    :math:`x_0` and ``wire_spacing`` :math:`\Delta`.

    Attributes
    ----------
    name : str
    plane_type : PlaneType
    z_local : float
        Position along the beam relative to the chamber origin (m).
    wire_start, wire_spacing : float
        Wire position parameters (m).
    n_wires : int
    resolution : float
        Drift distance resolution :math:`\sigma` (m).
    ttd : TimeToDistConv
        Drift time to distance converter.
    tdc_offsets : ndarray, shape (n_wires,)
        Per-wire TDC offsets (s).
    tdc_resolution : float
        TDC resolution (s per channel).
    min_time, max_time : float
        Accepted drift time window (s), applied when the time cut is on.
    geometry : DetectorGeometry
    """
    name: str
    plane_type: PlaneType
    z_local: float
    wire_start: float
    wire_spacing: float
    n_wires: int
    resolution: float
    ttd: TimeToDistConv
    tdc_offsets: np.ndarray
    tdc_resolution: float
    geometry: DetectorGeometry
    min_time: float = -math.inf
    max_time: float = math.inf

    def __post_init__(self) -> None:
        if self.n_wires <= 0:
            raise ValueError(f"Plane {self.name}: invalid number of wires: {self.n_wires}")
        if self.wire_spacing == 0.0:
            raise ValueError(f"Plane {self.name}: wire spacing must be non-zero")
        if not self.resolution > 0.0:
            raise ValueError(f"Plane {self.name}: resolution must be positive")
        self.tdc_offsets = np.asarray(self.tdc_offsets, dtype=np.float64)
        if self.tdc_offsets.shape != (self.n_wires,):
            raise ValueError(
                f"Plane {self.name}: number of TDC offset values ({self.tdc_offsets.size}) "
                f"disagrees with number of wires ({self.n_wires})"
            )

    @property
    def z(self) -> float:
        return float(self.geometry.origin[2] + self.z_local)

    def wire_pos(self, wire):
        """Position of wire index ``wire`` (scalar or array)."""
        return self.wire_start + np.asarray(wire) * self.wire_spacing

    @property
    def x_range(self) -> tuple[float, float]:
        ends = (self.wire_start, self.wire_start + (self.n_wires - 1) * self.wire_spacing)
        return min(ends), max(ends)

    def __lt__(self, other: "WirePlane") -> bool:
        return self.z < other.z

    def __repr__(self) -> str:
        return (
            f"WirePlane({self.name!r}, type={self.plane_type.value}, z={self.z:.4f}, "
            f"nwires={self.n_wires})"
        )

    @classmethod
    def from_mapping(cls, block: Mapping[str, Any], geometry: DetectorGeometry) -> "WirePlane":
        r"""
        Build a plane from its configuration block.

        Required keys: ``name``, ``z``, ``wire_start``, ``wire_spacing``,
        ``n_wires``, ``resolution``, ``ttd`` (``{"converter": str, "params": [...]}``).
        Optional: ``type`` (defaults to the first letter of ``name``),
        ``tdc_offsets`` (list, ns) or ``tdc_offset`` (scalar, ns),
        ``tdc_resolution`` (ns/channel, default 0.5), ``drift_min``/``drift_max`` (ns).

        Raises
        ------
        KeyError
            Missing required key or unknown converter.
        ValueError
            Inconsistent values.
        """
        try:
            name = str(block["name"])
            n_wires = int(block["n_wires"])
            ttd_block = block["ttd"]
            ttd = make_converter(ttd_block["converter"], ttd_block.get("params", ()))
            z_local = float(block["z"])
            wire_start = float(block["wire_start"])
            wire_spacing = float(block["wire_spacing"])
            resolution = float(block["resolution"])
        except KeyError as e:
            raise KeyError(f"Plane config {block.get('name', '?')!r}: missing or bad key {e.args[0]!r}") from e

        if "tdc_offsets" in block:
            offsets = np.asarray(block["tdc_offsets"], dtype=np.float64) * TDC_SCALE
        else:
            offsets = np.full(n_wires, float(block.get("tdc_offset", 0.0)) * TDC_SCALE)

        min_time = block.get("drift_min")
        max_time = block.get("drift_max")
        return cls(
            name=name,
            plane_type=PlaneType.from_name(block.get("type", name)),
            z_local=z_local,
            wire_start=wire_start,
            wire_spacing=wire_spacing,
            n_wires=n_wires,
            resolution=resolution,
            ttd=ttd,
            tdc_offsets=offsets,
            tdc_resolution=float(block.get("tdc_resolution", 0.5)) * TDC_SCALE,
            geometry=geometry,
            min_time=-math.inf if min_time is None else float(min_time) * TDC_SCALE,
            max_time=math.inf if max_time is None else float(max_time) * TDC_SCALE,
        )


class Projection:
    r"""
    All planes measuring one coordinate, plus the road configuration.

    Roads live in a projection: their z extent spans the first to the last
    plane and their point lists are indexed by :meth:`plane_index`.

    Parameters
    ----------
    plane_type : PlaneType
    planes : sequence of WirePlane
        Planes of this type; stored sorted by z.
    config : RoadConfig, optional
    angle : float, optional
        Angle (radians) of the measured coordinate axis with respect to the
        chamber x axis. Needed to intersect roads from different projections.
    """

    __slots__ = ("plane_type", "planes", "config", "angle", "_index")

    def __init__(
        self,
        plane_type: PlaneType,
        planes: Sequence[WirePlane],
        config: Optional[RoadConfig] = None,
        angle: float = 0.0,
    ) -> None:
        if not planes:
            raise ValueError(f"Projection {plane_type.value}: no planes")
        self.plane_type = plane_type
        self.planes: List[WirePlane] = sorted(planes, key=lambda p: p.z)
        self.config = config if config is not None else RoadConfig()
        self.angle = float(angle)
        self._index: Dict[str, int] = {p.name: i for i, p in enumerate(self.planes)}

    @property
    def name(self) -> str:
        return self.plane_type.value

    @property
    def n_planes(self) -> int:
        return len(self.planes)

    @property
    def z_lo(self) -> float:
        return self.planes[0].z

    @property
    def z_hi(self) -> float:
        return self.planes[-1].z

    @property
    def axis(self) -> np.ndarray:
        """Unit vector of the measured coordinate in the chamber x-y plane."""
        return np.array([math.cos(self.angle), math.sin(self.angle)])

    def plane_index(self, plane: WirePlane) -> int:
        """Index of ``plane`` in z order; ``KeyError`` if not in this projection."""
        return self._index[plane.name]

    def plane_z(self) -> np.ndarray:
        return np.array([p.z for p in self.planes], dtype=np.float64)

    def __repr__(self) -> str:
        return f"Projection({self.name!r}, nplanes={self.n_planes}, angle={math.degrees(self.angle):.1f}deg)"


class PlaneRegistry:
    r"""
    Owner of all wire planes of a chamber and of their partner relation.

    Partner planes sit close together with staggered wires. The relation is
    kept as an undirected :class:`networkx.Graph` whose nodes are plane
    names, so it is symmetric by construction: partnering ``a`` with ``b``
    also partners ``b`` with ``a``. A plane has at most one partner;
    re-partnering drops earlier edges of both planes.

    Parameters
    ----------
    geometry : DetectorGeometry
    planes : iterable of WirePlane
    road_config : RoadConfig, optional
        Shared by all projections created by :meth:`projections`.
    angles : mapping of str to float, optional
        Projection axis angles (radians) keyed by plane type letter.
    """

    def __init__(
        self,
        geometry: DetectorGeometry,
        planes: Iterable[WirePlane] = (),
        road_config: Optional[RoadConfig] = None,
        angles: Optional[Mapping[str, float]] = None,
    ) -> None:
        self.geometry = geometry
        self.road_config = road_config if road_config is not None else RoadConfig()
        self.angles: Dict[str, float] = dict(angles or {})
        self._planes: Dict[str, WirePlane] = {}
        self._partners = nx.Graph()
        for p in planes:
            self.add_plane(p)

    def add_plane(self, plane: WirePlane) -> None:
        if plane.name in self._planes:
            raise ValueError(f"Duplicate plane name: {plane.name}")
        if plane.geometry is not self.geometry:
            raise ValueError(f"Plane {plane.name} belongs to a different detector geometry")
        self._planes[plane.name] = plane
        self._partners.add_node(plane.name)

    @property
    def planes(self) -> List[WirePlane]:
        """All planes sorted by z (stable for equal z)."""
        return sorted(self._planes.values(), key=lambda p: p.z)

    def __getitem__(self, name: str) -> WirePlane:
        return self._planes[name]

    def __contains__(self, name: object) -> bool:
        return name in self._planes

    def __len__(self) -> int:
        return len(self._planes)

    def set_partner(self, a: WirePlane | str, b: Optional[WirePlane | str]) -> None:
        """Partner ``a`` with ``b``; ``b=None`` removes ``a``'s partner."""
        na = a if isinstance(a, str) else a.name
        if na not in self._planes:
            raise KeyError(f"Unknown plane: {na}")
        self._partners.remove_edges_from(list(self._partners.edges(na)))
        if b is None:
            return
        nb = b if isinstance(b, str) else b.name
        if nb not in self._planes:
            raise KeyError(f"Unknown plane: {nb}")
        if nb == na:
            raise ValueError(f"Plane {na} cannot be its own partner")
        self._partners.remove_edges_from(list(self._partners.edges(nb)))
        self._partners.add_edge(na, nb)

    def partner(self, plane: WirePlane | str) -> Optional[WirePlane]:
        name = plane if isinstance(plane, str) else plane.name
        nbrs = list(self._partners.neighbors(name))
        return self._planes[nbrs[0]] if nbrs else None

    def partner_pairs(self) -> List[tuple[str, str]]:
        return sorted(tuple(sorted(e)) for e in self._partners.edges())

    def projections(self) -> Dict[str, Projection]:
        r"""
        Group planes by type into :class:`Projection` objects.

        Returns
        -------
        dict
            ``type letter -> Projection``, in the order x, y, u, v, for the
            types that have planes.
        """
        out: Dict[str, Projection] = {}
        for t in PlaneType:
            members = [p for p in self._planes.values() if p.plane_type is t]
            if not members:
                continue
            if len(members) < self.road_config.min_planes:
                logger.warning(
                    "Projection %s has %d plane(s), fewer than min_planes=%d; it cannot produce roads",
                    t.value, len(members), self.road_config.min_planes,
                )
            out[t.value] = Projection(t, members, self.road_config, self.angles.get(t.value, 0.0))
        return out

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> "PlaneRegistry":
        r"""
        Build geometry, planes, partners and road settings from a run configuration.

        Parameters
        ----------
        cfg : mapping
            Parsed JSON (see :func:`mwdc_reco.config.load_config`). Uses the
            sections ``detector`` (``name``, ``origin``), ``planes`` (list of
            plane blocks, each optionally naming a ``partner``), ``projections``
            (``{type: {"angle_deg": float}}``) and ``road``.

        Raises
        ------
        KeyError
            If ``planes`` is missing or a partner names an unknown plane.
        ValueError
            On invalid plane or road settings.
        """
        det = cfg.get("detector", {})
        geometry = DetectorGeometry(
            name=str(det.get("name", "mwdc")),
            origin=np.asarray(det.get("origin", (0.0, 0.0, 0.0)), dtype=np.float64),
        )
        if "planes" not in cfg:
            raise KeyError("Config has no 'planes' section")
        angles = {
            str(k).lower(): math.radians(float(v.get("angle_deg", 0.0)))
            for k, v in cfg.get("projections", {}).items()
        }
        reg = cls(geometry, road_config=RoadConfig.from_mapping(cfg.get("road")), angles=angles)
        blocks = list(cfg["planes"])
        for block in blocks:
            reg.add_plane(WirePlane.from_mapping(block, geometry))
        for block in blocks:
            partner = block.get("partner")
            if partner:
                reg.set_partner(str(block["name"]), str(partner))
        logger.info(
            "Geometry %s: %d planes, %d partner pair(s)",
            geometry.name, len(reg), len(reg.partner_pairs()),
        )
        return reg
