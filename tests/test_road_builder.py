import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from mwdc_reco.config import load_config
from mwdc_reco.data import generate_events
from mwdc_reco.decoder import EventDecoder
from mwdc_reco.export import roads_to_frame
from mwdc_reco.geometry import PlaneRegistry
from mwdc_reco.metrics import match_roads_to_truth
from mwdc_reco.patterns import BinnedPatternSource, Node
from mwdc_reco.road import Road, RoadState
from mwdc_reco.road_builder import RoadBuilder

ROOT = Path(__file__).resolve().parents[1]


def _node(hits, start, end):
    return Node(z_lo=0.0, z_hi=3.0, start=start, end=end, hits=frozenset(hits))


def _split_track(proj, make_hit):
    """One straight track seen by two nodes that only overlap at the upper z edge."""
    hits = [make_hit(p, 0.10 + 0.02 * p.z) for p in proj.planes]
    n1 = _node(hits, (0.05, 0.105), (0.10, 0.30))
    n2 = _node(hits, (0.11, 0.20), (0.09, 0.31))
    return hits, [n2, n1]


def test_duplicate_roads_are_removed(make_projection, make_hit):
    proj = make_projection([0.0, 1.0, 2.0, 3.0])
    hits, nodes = _split_track(proj, make_hit)
    builder = RoadBuilder(proj)
    roads = builder.build(nodes)

    stats = builder.get_statistics()
    assert stats["nodes"] == 2
    assert stats["roads_built"] == 2
    assert stats["merge_pairs"] == 0
    assert stats["merged"] == 0
    assert stats["duplicates"] == 1
    assert stats["good"] == 1
    assert len(roads) == 1
    assert roads[0].hits == frozenset(hits)
    assert roads[0].slope == pytest.approx(0.02)


def test_consistent_roads_are_merged(make_projection, make_hit):
    proj = make_projection([0.0, 1.0, 2.0, 3.0], merge_search_radius=0.2)
    hits, nodes = _split_track(proj, make_hit)
    builder = RoadBuilder(proj)
    roads = builder.build(nodes)

    stats = builder.get_statistics()
    assert stats["merge_pairs"] == 1
    assert stats["merged"] == 1
    assert stats["merge_undone"] == 0
    assert stats["duplicates"] == 0
    assert len(roads) == 1
    road = roads[0]
    assert road.state is RoadState.FITTED
    assert len(road.patterns) == 2
    assert len(road.get_points()) == 4
    assert road.pos == pytest.approx(0.10)


def test_merge_pair_cap(make_projection, make_hit, caplog):
    proj = make_projection([0.0, 1.0, 2.0, 3.0], merge_search_radius=0.2, max_merge_pairs=0)
    _, nodes = _split_track(proj, make_hit)
    builder = RoadBuilder(proj)
    roads = builder.build(nodes)
    stats = builder.get_statistics()
    assert stats["merge_pairs_truncated"] == 1
    assert stats["merged"] == 0
    assert stats["duplicates"] == 1
    assert len(roads) == 1
    assert "merge candidate pairs" in caplog.text


def test_void_roads_are_counted(make_projection, make_hit):
    proj = make_projection([0.0, 1.0, 2.0, 3.0])
    two_planes = [make_hit(p, 0.5) for p in proj.planes[:2]]
    kinked = [make_hit(p, x) for p, x in zip(proj.planes, (0.8, 0.9, 0.8, 0.9))]
    builder = RoadBuilder(proj)
    roads = builder.build([
        _node(two_planes, (0.45, 0.55), (0.45, 0.55)),
        _node(kinked, (0.75, 0.95), (0.75, 0.95)),
    ])
    stats = builder.get_statistics()
    assert roads == []
    assert stats["roads_built"] == 2
    assert stats["void_build"] == 1
    assert stats["void_fit"] == 1
    assert stats["good"] == 0


def test_build_is_deterministic_and_resets(make_projection, make_hit):
    proj = make_projection([0.0, 1.0, 2.0, 3.0], chi2_cut=1e3)
    rng = np.random.default_rng(5)
    nodes = []
    for x0 in (-0.5, 0.0, 0.4):
        hits = [make_hit(p, x0 + 0.01 * p.z, float(d)) for p, d in zip(proj.planes, rng.uniform(0, 4e-3, 4))]
        nodes.append(_node(hits, (x0 - 0.02, x0 + 0.02), (x0 + 0.01, x0 + 0.05)))

    builder = RoadBuilder(proj)
    first = [(r.pos, r.slope, r.chi2) for r in builder.build(nodes)]
    stats = builder.get_statistics()
    second = [(r.pos, r.slope, r.chi2) for r in builder.build(list(reversed(nodes)))]
    assert first == second
    assert builder.get_statistics() == stats
    assert len(first) == 3
    assert [c for _, _, c in first] == sorted(c for _, _, c in first)

    builder.reset()
    assert builder.roads == []
    assert all(v == 0 for v in builder.get_statistics().values())


def test_simulated_events_are_reconstructed():
    cfg = load_config(ROOT / "config.json")
    registry = PlaneRegistry.from_config(cfg)
    raw, truth = generate_events(registry, 5, n_tracks=1, rng=np.random.default_rng(3))
    decoder = EventDecoder(registry)
    source = BinnedPatternSource(**cfg["patterns"], min_planes=registry.road_config.min_planes)
    builders = {name: RoadBuilder(proj, source) for name, proj in registry.projections().items()}

    frames = []
    for ev, frame in raw.groupby("event", sort=True):
        hits = decoder.decode(int(ev), frame)
        assert sum(len(h) for h in hits.values()) == 8
        for builder in builders.values():
            roads = builder.build_event(hits)
            assert roads
            assert all(r.is_good() for r in roads)
            frames.append(roads_to_frame(roads, event=int(ev)))

    summary, matched = match_roads_to_truth(pd.concat(frames, ignore_index=True), truth)
    assert summary["n_true"] == 10
    assert summary["efficiency"] >= 0.9
    assert summary["pos_resid_rms"] < 1e-3
    assert matched["dslope"].abs().max() < 5e-3


def test_failed_merge_keeps_the_track(make_projection, make_hit):
    # the merged envelope picks up a noise hit on the last plane and no longer fits
    proj = make_projection([0.0, 1.0, 2.0, 3.0], merge_search_radius=0.2)
    track = [make_hit(p, 0.10 + 0.02 * p.z) for p in proj.planes[:3]]
    noise = make_hit(proj.planes[3], 0.25)
    a = Road(proj, _node(track + [noise], (0.05, 0.15), (0.10, 0.20)))
    b = Road(proj, _node(track, (0.08, 0.18), (0.12, 0.30)))
    for road in (a, b):
        assert road.finish() and road.fit()
        assert len(road.get_points()) == 3

    builder = RoadBuilder(proj)
    roads = builder.merge_roads([a, b])

    stats = builder.get_statistics()
    assert stats["merge_pairs"] == 1
    assert stats["merged"] == 0
    assert stats["merge_undone"] == 1
    assert stats["duplicates"] == 1
    assert len(roads) == 1
    best = roads[0]
    assert best.state is RoadState.FITTED
    assert best.pos == pytest.approx(0.10)
    assert best.slope == pytest.approx(0.02)
    assert noise not in {p.hit for p in best.get_points()}
    assert a.merged_into is None and b.merged_into is None
    assert {a.state, b.state} == {RoadState.FITTED, RoadState.VOID}
