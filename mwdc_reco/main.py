#!/usr/bin/env python3
r"""
Drift chamber road finding runner (headless-safe).

Reads a JSON detector/run configuration, decodes raw wire records event by
event (from a CSV file or from the built-in straight-track simulator),
proposes pattern nodes per projection, builds, fits and merges roads, and
writes the good roads as CSV or JSON. With simulated input the roads are
compared against the generated lines.

Each good road is a straight line

.. math:: x(z) = \text{pos} + \text{slope}\,z

in the coordinate measured by its projection, fit by weighted least squares
to one left/right-resolved hit per plane.

CLI overview
------------
See :func:`build_parser`. Typical usage:

.. code-block:: bash

   mwdc-reco --config config.json --simulate 100 --out roads.csv
   mwdc-reco --config config.json --input raw.csv --out roads.json --plot
"""

from __future__ import annotations

import argparse
import logging
import os
import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

import mwdc_reco.data as mw_data
import mwdc_reco.export as mw_export
import mwdc_reco.metrics as mw_metrics
from mwdc_reco.config import DecoderConfig, load_config
from mwdc_reco.decoder import EventDecoder
from mwdc_reco.geometry import PlaneRegistry
from mwdc_reco.hits import Hit, HitArena
from mwdc_reco.patterns import BinnedPatternSource
from mwdc_reco.profiling import prof
from mwdc_reco.road import Road
from mwdc_reco.road_builder import RoadBuilder

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    r"""
    Construct the command-line interface.

    Returns
    -------
    argparse.ArgumentParser
        Exactly one of ``--input`` (CSV raw records) or ``--simulate N``
        (generated events) is required.
    """
    p = argparse.ArgumentParser(description="Find and fit straight-line roads in drift chamber events.")
    p.add_argument("--config", type=str, default="config.json",
                   help="JSON detector and run configuration")
    src = p.add_mutually_exclusive_group(required=True)
    src.add_argument("-i", "--input", type=str, default=None,
                     help="CSV of raw records: event, plane, wire, tdc[, ref_time, mc_pos]")
    src.add_argument("--simulate", type=int, default=None, metavar="N",
                     help="Generate N events of straight tracks instead of reading input")
    p.add_argument("--tracks", type=int, default=1, help="Tracks per projection in simulated events")
    p.add_argument("--noise", type=int, default=0, help="Noise records per plane in simulated events")
    p.add_argument("--seed", type=int, default=None, help="Random seed for the simulator")
    p.add_argument("-o", "--out", type=str, default=None,
                   help="Write good roads here (.csv or .json)")
    p.add_argument("--stats-out", type=str, default=None,
                   help="Write per-plane decoder statistics here (.csv)")
    p.add_argument("--plot", action="store_true", default=False,
                   help="Show the event display of the first event")
    p.add_argument("--profile", action="store_true", default=False,
                   help="Profile road building with cProfile")
    p.add_argument("--profile-out", type=str, default=None,
                   help="Write the profile report to this file")
    p.add_argument("-v", "--verbose", action="store_true",
                   help="Debug logging")
    return p


def setup_logging(verbose: bool = False) -> None:
    r"""
    Configure process-wide logging.

    ``DEBUG`` if ``verbose`` else ``INFO``; format
    ``'%(asctime)s | %(levelname)-8s | %(message)s'`` with ``%H:%M:%S`` timestamps.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(message)s",
        datefmt="%H:%M:%S",
    )


def apply_plotting_guard(enable_plots: bool) -> None:
    """Force the non-interactive Agg backend when plots are off."""
    if enable_plots:
        return
    os.environ.setdefault("MPLBACKEND", "Agg")
    import matplotlib
    matplotlib.use("Agg", force=True)


def make_builders(registry: PlaneRegistry, cfg: dict) -> Dict[str, RoadBuilder]:
    r"""
    One :class:`RoadBuilder` per projection, sharing a pattern source built
    from the optional ``patterns`` config section.

    Raises
    ------
    ValueError
        On unknown keys in ``patterns``.
    """
    block = dict(cfg.get("patterns", {}))
    block.setdefault("min_planes", registry.road_config.min_planes)
    try:
        source = BinnedPatternSource(**block)
    except TypeError as e:
        raise ValueError(f"Bad 'patterns' config: {e}") from e
    return {name: RoadBuilder(proj, source) for name, proj in registry.projections().items()}


def process_event(
    event_no: int,
    frame: pd.DataFrame,
    decoder: EventDecoder,
    builders: Dict[str, RoadBuilder],
) -> Tuple[Dict[str, List[Road]], Dict[str, List[Hit]]]:
    r"""
    Decode one event and build roads in every projection.

    Returns
    -------
    roads : dict
        ``projection name -> good roads`` (ascending chi2).
    hits_by_plane : dict
        Decoded hits; valid until the next event is decoded.
    """
    hits_by_plane = decoder.decode(event_no, frame)
    roads = {name: b.build_event(hits_by_plane) for name, b in builders.items()}
    logger.info(
        "Event %d: %d hits -> %s",
        event_no, sum(len(v) for v in hits_by_plane.values()),
        ", ".join(f"{name}: {len(r)} road(s)" for name, r in roads.items()),
    )
    return roads, hits_by_plane


def _write_roads(path: Path, frames: List[pd.DataFrame], records: List[dict]) -> None:
    if path.suffix.lower() == ".json":
        path.write_bytes(mw_export.records_to_json(records))
    else:
        out = pd.concat(frames, ignore_index=True) if frames else mw_export.roads_to_frame([], event=0)
        out.to_csv(path, index=False)
    logger.info("Wrote roads to %s", path)


def main(argv: Optional[Sequence[str]] = None) -> None:
    r"""
    End-to-end pipeline: **config -> events -> decode -> roads -> output**.

    Pipeline
    --------
    1. Parse CLI (:func:`build_parser`) and set up logging (:func:`setup_logging`).
    2. Load the configuration, geometry and decoder settings.
    3. Read raw events from ``--input`` or simulate ``--simulate`` events.
    4. For each event, decode and build roads per projection (:func:`process_event`),
       optionally under the profiler.
    5. Write roads (``--out``) and decoder statistics (``--stats-out``); with
       simulated data, log efficiency and residuals against the generated lines.

    Raises
    ------
    FileNotFoundError
        If the config or input file does not exist.
    """
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    apply_plotting_guard(args.plot)

    cfg_path = Path(args.config)
    logger.info("Reading config from %s", cfg_path)
    cfg = load_config(cfg_path)
    registry = PlaneRegistry.from_config(cfg)
    decoder = EventDecoder(registry, HitArena(), DecoderConfig.from_mapping(cfg.get("decoder")))
    builders = make_builders(registry, cfg)

    truth: Optional[pd.DataFrame] = None
    events: Iterable[Tuple[int, pd.DataFrame]]
    if args.simulate is not None:
        rng = np.random.default_rng(args.seed)
        raw, truth = mw_data.generate_events(
            registry, args.simulate, n_tracks=args.tracks, noise_hits=args.noise, rng=rng,
        )
        events = ((int(ev), frame.reset_index(drop=True)) for ev, frame in raw.groupby("event", sort=True))
    else:
        events = mw_data.load_raw_events(args.input)

    road_frames: List[pd.DataFrame] = []
    road_records: List[dict] = []
    stats_frames: List[pd.DataFrame] = []
    stats_totals: Dict[str, int] = {}
    n_events = 0
    t0 = time.perf_counter()
    with prof(args.profile, out_path=args.profile_out, logger=logger):
        for event_no, frame in events:
            roads, hits_by_plane = process_event(event_no, frame, decoder, builders)
            all_roads = [r for name in roads for r in roads[name]]
            road_frames.append(mw_export.roads_to_frame(all_roads, event=event_no))
            if args.out and Path(args.out).suffix.lower() == ".json":
                road_records.extend(mw_export.road_records(all_roads, event=event_no, with_points=True))
            if args.stats_out:
                stats_frames.append(mw_export.plane_stats_to_frame(decoder.stats, event=event_no))
            for b in builders.values():
                for k, v in b.get_statistics().items():
                    stats_totals[k] = stats_totals.get(k, 0) + v

            if args.plot and n_events == 0:
                import mwdc_reco.plotting as mw_plot  # noqa: WPS433
                for name, proj in registry.projections().items():
                    mw_plot.plot_roads(proj, hits_by_plane, roads[name], title=f"Event {event_no}, {name}")
            n_events += 1
    elapsed = time.perf_counter() - t0

    if n_events == 0:
        logger.warning("No events processed.")
    logger.info("Processed %d event(s) in %.3f s", n_events, elapsed)
    logger.info("Road building statistics:")
    for k, v in stats_totals.items():
        logger.info("  %s: %s", k, v)

    if args.out:
        _write_roads(Path(args.out), road_frames, road_records)
    if args.stats_out and stats_frames:
        pd.concat(stats_frames, ignore_index=True).to_csv(args.stats_out, index=False)
        logger.info("Wrote decoder statistics to %s", args.stats_out)

    if truth is not None and road_frames:
        summary, matched = mw_metrics.match_roads_to_truth(pd.concat(road_frames, ignore_index=True), truth)
        logger.info(
            "Efficiency %.1f%% (%d/%d), fakes %d, pos resid rms %.2e m, slope resid rms %.2e",
            100.0 * summary["efficiency"], summary["n_matched"], summary["n_true"],
            summary["n_fake"], summary["pos_resid_rms"], summary["slope_resid_rms"],
        )
        if args.plot and len(matched):
            import mwdc_reco.plotting as mw_plot  # noqa: WPS433
            mw_plot.plot_residuals(matched)


if __name__ == "__main__":
    main()
