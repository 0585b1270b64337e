from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

import numpy as np
import pandas as pd

from mwdc_reco.geometry import PlaneRegistry, WirePlane

logger = logging.getLogger(__name__)

RAW_COLUMNS = ("event", "plane", "wire", "tdc")


def load_raw_events(path: Path | str) -> Iterator[Tuple[int, pd.DataFrame]]:
    r"""
    Read raw wire records from a CSV file, one event at a time.

    Parameters
    ----------
    path : pathlib.Path or str
        CSV with columns ``event, plane, wire, tdc`` and optionally
        ``ref_time`` (s) and ``mc_pos`` (m).

    Yields
    ------
    event : int
    frame : pandas.DataFrame
        The event's records in file order.

    Raises
    ------
    FileNotFoundError
        If ``path`` does not exist.
    KeyError
        If a required column is missing.
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Raw event file not found: {path}")
    df = pd.read_csv(path, dtype={"plane": str})
    missing = [c for c in RAW_COLUMNS if c not in df.columns]
    if missing:
        raise KeyError(f"{path}: missing column(s) {', '.join(missing)}")
    logger.info("Loaded %d raw records of %d event(s) from %s", len(df), df["event"].nunique(), path)
    for event, frame in df.groupby("event", sort=True):
        yield int(event), frame.reset_index(drop=True)


def _tdc_for_time(plane: WirePlane, wire: np.ndarray, time: np.ndarray, ref_time: float) -> np.ndarray:
    # inverse of t = off[w] + ref - res * (tdc + 0.5), rounded to a channel
    return np.rint((plane.tdc_offsets[wire] + ref_time - time) / plane.tdc_resolution - 0.5).astype(np.int64)


def generate_events(
    registry: PlaneRegistry,
    n_events: int,
    n_tracks: int = 1,
    noise_hits: int = 0,
    rng: Optional[np.random.Generator] = None,
    ref_time: float = 0.0,
    max_slope: float = 0.1,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    r"""
    Simulate raw records of straight tracks crossing every projection.

    For each event and projection, ``n_tracks`` lines are drawn with a
    uniform slope in ``[-max_slope, max_slope]`` and a uniform position on
    the first plane, chosen so that the line stays inside the wire span of
    every plane. At each plane the nearest wire is hit with drift distance
    :math:`d = |x - x_w|`, converted back to a TDC value through the plane's
    converter (:meth:`inverse`) and TDC calibration. ``noise_hits`` random
    records per plane are added with drift times up to half a cell.

    Parameters
    ----------
    registry : PlaneRegistry
    n_events : int
    n_tracks : int, optional
    noise_hits : int, optional
    rng : numpy.random.Generator, optional
        Defaults to ``np.random.default_rng()``.
    ref_time : float, optional
        Reference time (s) used when computing TDC values.
    max_slope : float, optional
        Largest absolute slope dx/dz of generated lines.

    Returns
    -------
    raw : pandas.DataFrame
        Columns ``event, plane, wire, tdc, mc_pos`` (``mc_pos`` is NaN for noise).
    truth : pandas.DataFrame
        Columns ``event, projection, track, pos, slope`` (``pos`` at ``z = 0``).
    """
    rng = rng if rng is not None else np.random.default_rng()
    projections = registry.projections()
    raw: List[pd.DataFrame] = []
    truth_rows = []
    for ev in range(int(n_events)):
        for proj in projections.values():
            z_lo, z_hi = proj.z_lo, proj.z_hi
            lo = max(p.x_range[0] for p in proj.planes)
            hi = min(p.x_range[1] for p in proj.planes)
            for itrk in range(int(n_tracks)):
                margin = max_slope * (z_hi - z_lo)
                if hi - lo <= 2.0 * margin:
                    raise ValueError(
                        f"Projection {proj.name}: wire span too small for max_slope={max_slope}"
                    )
                slope = rng.uniform(-max_slope, max_slope)
                x_lo = rng.uniform(lo + margin, hi - margin)
                pos = x_lo - slope * z_lo
                truth_rows.append({
                    "event": ev, "projection": proj.name, "track": itrk,
                    "pos": pos, "slope": slope,
                })
                for plane in proj.planes:
                    x = pos + slope * plane.z
                    wire = int(np.rint((x - plane.wire_start) / plane.wire_spacing))
                    if not 0 <= wire < plane.n_wires:
                        continue
                    dist = abs(x - float(plane.wire_pos(wire)))
                    time = np.asarray(plane.ttd.inverse(dist), dtype=np.float64)
                    w = np.array([wire])
                    raw.append(pd.DataFrame({
                        "event": ev, "plane": plane.name, "wire": w,
                        "tdc": _tdc_for_time(plane, w, np.atleast_1d(time), ref_time),
                        "mc_pos": x,
                    }))
        if noise_hits:
            for plane in registry.planes:
                wires = rng.integers(0, plane.n_wires, size=int(noise_hits))
                t_max = float(plane.ttd.inverse(abs(plane.wire_spacing) / 2.0))
                times = rng.uniform(0.0, t_max, size=wires.size)
                raw.append(pd.DataFrame({
                    "event": ev, "plane": plane.name, "wire": wires,
                    "tdc": _tdc_for_time(plane, wires, times, ref_time),
                    "mc_pos": np.nan,
                }))

    columns = ["event", "plane", "wire", "tdc", "mc_pos"]
    raw_df = pd.concat(raw, ignore_index=True) if raw else pd.DataFrame(columns=columns)
    negative = raw_df["tdc"] < 0 if len(raw_df) else np.zeros(0, dtype=bool)
    if np.any(negative):
        logger.warning("Dropping %d simulated record(s) with negative TDC; raise tdc_offset", int(np.sum(negative)))
        raw_df = raw_df.loc[~negative].reset_index(drop=True)
    truth = pd.DataFrame(truth_rows, columns=["event", "projection", "track", "pos", "slope"])
    logger.info(
        "Simulated %d event(s): %d track line(s), %d raw record(s)",
        n_events, len(truth), len(raw_df),
    )
    return raw_df[columns], truth
