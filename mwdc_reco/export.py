from __future__ import annotations

import logging
import math
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

import orjson
import pandas as pd

from mwdc_reco.decoder import PlaneStats
from mwdc_reco.hits import Hit
from mwdc_reco.road import Road

logger = logging.getLogger(__name__)

Getter = Callable[[Any], Any]

ROAD_FIELDS: Dict[str, Getter] = {
    "projection": lambda r: r.projection.name,
    "pos": lambda r: r.pos,
    "slope": lambda r: r.slope,
    "chi2": lambda r: r.chi2,
    "dof": lambda r: r.dof,
    "prob": lambda r: r.get_fit_result().prob if r.n_fits else math.nan,
    "cov.v11": lambda r: r.cov[0],
    "cov.v12": lambda r: r.cov[1],
    "cov.v22": lambda r: r.cov[2],
    "good": lambda r: r.is_good(),
    "nhits": lambda r: len(r.hits),
    "nfits": lambda r: r.n_fits,
    "npoints": lambda r: len(r.get_points()) if r.n_fits else 0,
    "ntrunc": lambda r: r.n_truncated,
    "corner.xll": lambda r: r.corners.x_ll,
    "corner.xlr": lambda r: r.corners.x_lr,
    "corner.zl": lambda r: r.corners.z_l,
    "corner.xul": lambda r: r.corners.x_ul,
    "corner.xur": lambda r: r.corners.x_ur,
    "corner.zu": lambda r: r.corners.z_u,
}

HIT_FIELDS: Dict[str, Getter] = {
    "plane": lambda h: h.plane.name,
    "event": lambda h: h.event,
    "hit.wire": lambda h: h.wire,
    "hit.pos": lambda h: h.pos,
    "hit.tdc": lambda h: h.raw_tdc,
    "hit.time": lambda h: h.time,
    "hit.dist": lambda h: h.drift_dist,
    "hit.res": lambda h: h.resolution,
    "hit.iscl": lambda h: h.cluster,
    "hit.ismulti": lambda h: h.multi,
    "hit.tdiff": lambda h: h.tdiff,
    "hit.mcpos": lambda h: getattr(h, "mc_pos", math.nan),
}

PLANE_STATS_FIELDS: Dict[str, Getter] = {
    "plane": lambda s: s.plane,
    "nhits": lambda s: s.nhits,
    "nmiss": lambda s: s.nmiss,
    "nrej": lambda s: s.nrej,
    "sorted": lambda s: s.was_sorted,
    "nwhit": lambda s: s.nhitwires,
    "nmulti": lambda s: s.nmultihit,
    "maxmul": lambda s: s.maxmul,
    "ncl": lambda s: s.ncl,
    "ndbl": lambda s: s.ndbl,
    "maxclsiz": lambda s: s.clsiz,
}


def _select(table: Mapping[str, Getter], fields: Optional[Sequence[str]], kind: str) -> Dict[str, Getter]:
    if fields is None:
        return dict(table)
    unknown = [f for f in fields if f not in table]
    if unknown:
        raise KeyError(
            f"Unknown {kind} field(s): {', '.join(unknown)}. Known: {', '.join(table)}"
        )
    return {f: table[f] for f in fields}


def _rows(items: Iterable[Any], getters: Mapping[str, Getter], event: Optional[int]) -> List[Dict[str, Any]]:
    rows = []
    for item in items:
        row: Dict[str, Any] = {} if event is None else {"event": event}
        row.update((name, get(item)) for name, get in getters.items())
        rows.append(row)
    return rows


def roads_to_frame(
    roads: Iterable[Road], fields: Optional[Sequence[str]] = None, event: Optional[int] = None
) -> pd.DataFrame:
    r"""
    Tabulate roads, one row per road.

    Parameters
    ----------
    roads : iterable of Road
    fields : sequence of str, optional
        Keys of :data:`ROAD_FIELDS`; all of them by default.
    event : int, optional
        If given, prepended as an ``event`` column.

    Returns
    -------
    pandas.DataFrame

    Raises
    ------
    KeyError
        For unknown field names.
    """
    getters = _select(ROAD_FIELDS, fields, "road")
    columns = ([] if event is None else ["event"]) + list(getters)
    return pd.DataFrame(_rows(roads, getters, event), columns=columns)


def hits_to_frame(hits: Iterable[Hit], fields: Optional[Sequence[str]] = None) -> pd.DataFrame:
    """Tabulate hits with the :data:`HIT_FIELDS` mapping."""
    getters = _select(HIT_FIELDS, fields, "hit")
    return pd.DataFrame(_rows(hits, getters, None), columns=list(getters))


def plane_stats_to_frame(
    stats: Mapping[str, PlaneStats] | Iterable[PlaneStats],
    fields: Optional[Sequence[str]] = None,
    event: Optional[int] = None,
) -> pd.DataFrame:
    """Tabulate decoder diagnostics with the :data:`PLANE_STATS_FIELDS` mapping."""
    if isinstance(stats, Mapping):
        stats = stats.values()
    getters = _select(PLANE_STATS_FIELDS, fields, "plane stats")
    columns = ([] if event is None else ["event"]) + list(getters)
    return pd.DataFrame(_rows(stats, getters, event), columns=columns)


def points_to_frame(roads: Iterable[Road]) -> pd.DataFrame:
    """Points of each road's best fit with their residuals, one row per point."""
    rows = []
    for i, road in enumerate(roads):
        if not road.n_fits:
            continue
        best = road.get_fit_result()
        for p in best.points:
            rows.append({
                "road": i,
                "plane": p.hit.plane.name,
                "wire": p.hit.wire,
                "x": p.x,
                "z": p.z,
                "resid": p.x - (best.pos + best.slope * p.z),
            })
    return pd.DataFrame(rows, columns=["road", "plane", "wire", "x", "z", "resid"])


def road_records(
    roads: Iterable[Road],
    fields: Optional[Sequence[str]] = None,
    event: Optional[int] = None,
    with_points: bool = False,
) -> List[Dict[str, Any]]:
    r"""
    Roads as a list of plain dicts, ready for JSON.

    Parameters
    ----------
    roads : iterable of Road
    fields : sequence of str, optional
        Keys of :data:`ROAD_FIELDS`.
    event : int, optional
    with_points : bool, optional
        Add the best-fit points (``plane``, ``wire``, ``x``, ``z``) of each road.

    Returns
    -------
    list of dict
    """
    getters = _select(ROAD_FIELDS, fields, "road")
    roads = list(roads)
    rows = _rows(roads, getters, event)
    if with_points:
        for row, road in zip(rows, roads):
            row["points"] = [
                {"plane": p.hit.plane.name, "wire": p.hit.wire, "x": p.x, "z": p.z}
                for p in (road.get_points() if road.n_fits else ())
            ]
    return rows


def roads_to_json(
    roads: Iterable[Road],
    fields: Optional[Sequence[str]] = None,
    event: Optional[int] = None,
    with_points: bool = False,
) -> bytes:
    """Serialize :func:`road_records` with :mod:`orjson`; non-finite floats become ``null``."""
    return records_to_json(road_records(roads, fields, event, with_points))


def records_to_json(records: Sequence[Mapping[str, Any]]) -> bytes:
    return orjson.dumps(list(records), option=orjson.OPT_SERIALIZE_NUMPY | orjson.OPT_INDENT_2)
