from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Mapping, Optional

import numpy as np
import pandas as pd

from mwdc_reco.config import DecoderConfig
from mwdc_reco.geometry import PlaneRegistry, WirePlane
from mwdc_reco.hits import Hit, HitArena

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("plane", "wire", "tdc")


@dataclass(slots=True)
class PlaneStats:
    r"""
    Per-event decoding diagnostics of one plane.

    Attributes
    ----------
    plane : str
    nhits : int
        Accepted hits.
    nmiss : int
        Records with a wire index outside the plane.
    nrej : int
        Records failing the drift time cut.
    was_sorted : bool
        Accepted hits arrived already ordered by (position, time).
    nhitwires : int
        Wires with at least one record.
    nmultihit : int
        Wires with more than one record.
    maxmul : int
        Largest number of records on one wire.
    ncl : int
        Clusters of hits on adjacent wires.
    ndbl : int
        Hits that belong to a cluster.
    clsiz : int
        Largest cluster size (in wires).
    """
    plane: str
    nhits: int = 0
    nmiss: int = 0
    nrej: int = 0
    was_sorted: bool = True
    nhitwires: int = 0
    nmultihit: int = 0
    maxmul: int = 0
    ncl: int = 0
    ndbl: int = 0
    clsiz: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _crosstalk(wires: np.ndarray, times: np.ndarray, stats: PlaneStats):
    """Flag multi-hits and adjacent-wire clusters on hits sorted by position."""
    n = wires.size
    multi = np.zeros(n, dtype=bool)
    cluster = np.zeros(n, dtype=bool)
    tdiff = np.zeros(n, dtype=np.float64)
    stats.clsiz = 1 if n else 0
    cursiz = 1
    for i in range(1, n):
        dw = abs(int(wires[i]) - int(wires[i - 1]))
        if dw == 0:
            multi[i] = multi[i - 1] = True
            tdiff[i] = times[i] - times[i - 1]
        elif dw == 1:
            if cursiz == 1:
                stats.ncl += 1
                stats.ndbl += 1
                cluster[i - 1] = True
            cursiz += 1
            stats.ndbl += 1
            cluster[i] = True
            stats.clsiz = max(stats.clsiz, cursiz)
        else:
            cursiz = 1
    return multi, cluster, tdiff


class PlaneDecoder:
    r"""
    Turn one plane's raw ``(wire, tdc)`` records into ordered hits.

    The TDCs run in common-stop mode, so the drift time of a record is

    .. math::

        t = t_\text{off}[w] + t_\text{ref} - r_\text{TDC}\,(\text{tdc} + 0.5).

    Parameters
    ----------
    plane : WirePlane
    arena : HitArena
        Shared per-event hit storage.
    config : DecoderConfig, optional
    """

    def __init__(self, plane: WirePlane, arena: HitArena, config: Optional[DecoderConfig] = None) -> None:
        self.plane = plane
        self.arena = arena
        self.config = config if config is not None else DecoderConfig()
        self.stats = PlaneStats(plane.name)
        self.hits: List[Hit] = []

    def decode(self, records, ref_time=0.0) -> List[Hit]:
        r"""
        Decode one event's records for this plane.

        Parameters
        ----------
        records : pandas.DataFrame or mapping of array_like
            Columns ``wire`` and ``tdc``; in MC mode optionally ``mc_pos``.
        ref_time : float or array_like, optional
            Reference time (s), scalar or one value per record.

        Returns
        -------
        list of Hit
            Accepted hits sorted by (position, time). Also kept in
            :attr:`hits`; diagnostics go to :attr:`stats`.
        """
        plane = self.plane
        stats = PlaneStats(plane.name)
        wire = np.asarray(records["wire"], dtype=np.int64)
        tdc = np.asarray(records["tdc"], dtype=np.int64)
        ref = np.broadcast_to(np.asarray(ref_time, dtype=np.float64), wire.shape)
        mc = self.config.mc_data
        if mc and "mc_pos" in records:
            mc_pos = np.asarray(records["mc_pos"], dtype=np.float64)
        else:
            mc_pos = np.full(wire.shape, np.nan)

        inside = (wire >= 0) & (wire < plane.n_wires)
        stats.nmiss = int(np.count_nonzero(~inside))
        wire, tdc, ref, mc_pos = wire[inside], tdc[inside], ref[inside], mc_pos[inside]
        if wire.size:
            counts = np.bincount(wire, minlength=plane.n_wires)
            stats.nhitwires = int(np.count_nonzero(counts))
            stats.nmultihit = int(np.count_nonzero(counts > 1))
            stats.maxmul = int(counts.max())

        time = plane.tdc_offsets[wire] + ref - plane.tdc_resolution * (tdc + 0.5)
        if self.config.do_time_cut:
            keep = (plane.min_time < time) & (time < plane.max_time)
            stats.nrej = int(np.count_nonzero(~keep))
            wire, tdc, time, mc_pos = wire[keep], tdc[keep], time[keep], mc_pos[keep]

        pos = plane.wire_pos(wire).astype(np.float64)
        if pos.size > 1:
            dpos = np.diff(pos)
            in_order = (dpos > 0.0) | ((dpos == 0.0) & (np.diff(time) >= 0.0))
            stats.was_sorted = bool(in_order.all())
        if not stats.was_sorted:
            order = np.lexsort((time, pos))
            wire, tdc, time, mc_pos, pos = wire[order], tdc[order], time[order], mc_pos[order], pos[order]

        multi, cluster, tdiff = _crosstalk(wire, time, stats)
        dist = np.asarray(plane.ttd.convert(time), dtype=np.float64)

        hits: List[Hit] = []
        for i in range(wire.size):
            extra = {"mc_pos": float(mc_pos[i])} if mc else {}
            hits.append(self.arena.allocate(
                mc=mc,
                wire=int(wire[i]),
                pos=float(pos[i]),
                raw_tdc=int(tdc[i]),
                time=float(time[i]),
                drift_dist=float(dist[i]),
                resolution=plane.resolution,
                plane=plane,
                multi=bool(multi[i]),
                cluster=bool(cluster[i]),
                tdiff=float(tdiff[i]),
                **extra,
            ))
        stats.nhits = len(hits)
        self.stats = stats
        self.hits = hits
        logger.debug(
            "Plane %s: %d hits (miss=%d, rej=%d, sorted=%s)",
            plane.name, stats.nhits, stats.nmiss, stats.nrej, stats.was_sorted,
        )
        return hits

    def clear(self) -> None:
        self.stats = PlaneStats(self.plane.name)
        self.hits = []


class EventDecoder:
    r"""
    Decode all planes of one event into a shared :class:`HitArena`.

    Parameters
    ----------
    registry : PlaneRegistry
    arena : HitArena, optional
        Created if not given.
    config : DecoderConfig, optional
    """

    def __init__(
        self,
        registry: PlaneRegistry,
        arena: Optional[HitArena] = None,
        config: Optional[DecoderConfig] = None,
    ) -> None:
        self.registry = registry
        self.arena = arena if arena is not None else HitArena()
        self.config = config if config is not None else DecoderConfig()
        self.decoders: Dict[str, PlaneDecoder] = {
            p.name: PlaneDecoder(p, self.arena, self.config) for p in registry.planes
        }

    def decode(self, event_no: int, frame: pd.DataFrame) -> Dict[str, List[Hit]]:
        r"""
        Reset the arena for ``event_no`` and decode every plane.

        Parameters
        ----------
        event_no : int
        frame : pandas.DataFrame
            Raw records with columns ``plane``, ``wire``, ``tdc`` and
            optionally ``ref_time`` (s) and ``mc_pos`` (m).

        Returns
        -------
        dict
            ``plane name -> list of Hit`` for every plane of the registry
            (empty lists for planes without records).

        Raises
        ------
        KeyError
            If a required column is missing.
        """
        missing = [c for c in REQUIRED_COLUMNS if c not in frame.columns]
        if missing:
            raise KeyError(f"Raw event frame is missing column(s): {', '.join(missing)}")
        self.arena.begin_event(event_no)
        for dec in self.decoders.values():
            dec.clear()

        unknown = sorted(set(frame["plane"].astype(str)) - set(self.decoders))
        if unknown:
            logger.warning("Event %d: records for unknown plane(s) %s ignored", event_no, ", ".join(unknown))

        for name, group in frame.groupby(frame["plane"].astype(str), sort=False):
            dec = self.decoders.get(name)
            if dec is None:
                continue
            ref = group["ref_time"].to_numpy(dtype=np.float64) if "ref_time" in group.columns else 0.0
            dec.decode(group, ref)

        out = {name: dec.hits for name, dec in self.decoders.items()}
        logger.debug("Event %d: decoded %d hits in %d planes", event_no, len(self.arena), len(out))
        return out

    @property
    def stats(self) -> Dict[str, PlaneStats]:
        return {name: dec.stats for name, dec in self.decoders.items()}
