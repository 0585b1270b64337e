import logging
import math

import numpy as np
import pandas as pd
import pytest

from mwdc_reco.config import DecoderConfig
from mwdc_reco.decoder import EventDecoder, PlaneDecoder
from mwdc_reco.geometry import DetectorGeometry, PlaneRegistry, PlaneType, WirePlane
from mwdc_reco.hits import HitArena, MCHit
from mwdc_reco.ttd import LinearTTDConv


def _plane(geometry, name="x1", z=0.0):
    return WirePlane(
        name=name,
        plane_type=PlaneType.from_name(name),
        z_local=z,
        wire_start=0.0,
        wire_spacing=0.01,
        n_wires=10,
        resolution=2e-4,
        ttd=LinearTTDConv(5e4),
        tdc_offsets=np.full(10, 100e-9),
        tdc_resolution=0.5e-9,
        geometry=geometry,
        min_time=0.0,
        max_time=80e-9,
    )


# wire 12 is outside the plane, tdc 10 gives 94.75 ns > drift window
RECORDS = {
    "wire": [5, 3, 12, 5, 6, 7],
    "tdc": [100, 120, 50, 110, 130, 10],
}


def _ns(tdc):
    return (100.0 - 0.5 * (tdc + 0.5)) * 1e-9


def test_plane_decoder_time_formula_and_cuts():
    geom = DetectorGeometry()
    arena = HitArena()
    arena.begin_event(7)
    dec = PlaneDecoder(_plane(geom), arena)
    hits = dec.decode(RECORDS)

    st = dec.stats
    assert st.nmiss == 1
    assert st.nrej == 1
    assert st.nhits == 4
    assert st.nhitwires == 4
    assert st.nmultihit == 1
    assert st.maxmul == 2
    assert not st.was_sorted

    assert [h.wire for h in hits] == [3, 5, 5, 6]
    assert [h.raw_tdc for h in hits] == [120, 110, 100, 130]
    assert [h.time for h in hits] == pytest.approx([_ns(120), _ns(110), _ns(100), _ns(130)])
    assert hits[0].time == pytest.approx(39.75e-9)
    assert hits[0].pos == pytest.approx(0.03)
    assert hits[0].drift_dist == pytest.approx(5e4 * 39.75e-9)
    assert hits[0].pos_l == pytest.approx(0.03 - 5e4 * 39.75e-9)
    assert all(h.event == 7 and arena.is_current(h) for h in hits)
    assert all(h.resolution == 2e-4 for h in hits)
    assert dec.hits == hits


def test_plane_decoder_crosstalk_flags():
    dec = PlaneDecoder(_plane(DetectorGeometry()), HitArena())
    hits = dec.decode(RECORDS)
    st = dec.stats

    assert [h.multi for h in hits] == [False, True, True, False]
    assert [h.cluster for h in hits] == [False, False, True, True]
    assert hits[2].tdiff == pytest.approx(5e-9)
    assert hits[0].tdiff == 0.0
    assert st.ncl == 1
    assert st.ndbl == 2
    assert st.clsiz == 2


def test_plane_decoder_sorted_input_and_no_time_cut():
    dec = PlaneDecoder(_plane(DetectorGeometry()), HitArena(), DecoderConfig(do_time_cut=False))
    hits = dec.decode({"wire": [1, 2, 2, 9], "tdc": [150, 150, 120, 10]})
    assert dec.stats.was_sorted
    assert dec.stats.nrej == 0
    assert [h.wire for h in hits] == [1, 2, 2, 9]
    assert hits[-1].time == pytest.approx(94.75e-9)


def test_plane_decoder_reference_time():
    dec = PlaneDecoder(_plane(DetectorGeometry()), HitArena())
    hits = dec.decode({"wire": [4], "tdc": [100]}, ref_time=-10e-9)
    assert hits[0].time == pytest.approx(39.75e-9)


def test_plane_decoder_mc_hits():
    dec = PlaneDecoder(_plane(DetectorGeometry()), HitArena(), DecoderConfig(mc_data=True))
    hits = dec.decode({"wire": [4, 2], "tdc": [100, 100], "mc_pos": [0.041, 0.022]})
    assert all(isinstance(h, MCHit) for h in hits)
    assert [h.mc_pos for h in hits] == pytest.approx([0.022, 0.041])


def test_plane_decoder_empty():
    dec = PlaneDecoder(_plane(DetectorGeometry()), HitArena())
    assert dec.decode({"wire": [], "tdc": []}) == []
    assert dec.stats.nhits == 0
    assert dec.stats.was_sorted


def _registry():
    geom = DetectorGeometry()
    return PlaneRegistry(geom, [_plane(geom, "x1", 0.0), _plane(geom, "x2", 0.1)])


def test_event_decoder(caplog):
    dec = EventDecoder(_registry())
    frame = pd.DataFrame({
        "plane": ["x1", "x2", "x1", "y9"],
        "wire": [3, 4, 1, 2],
        "tdc": [100, 100, 100, 100],
    })
    with caplog.at_level(logging.WARNING, logger="mwdc_reco.decoder"):
        out = dec.decode(3, frame)
    assert "y9" in caplog.text
    assert set(out) == {"x1", "x2"}
    assert [h.wire for h in out["x1"]] == [1, 3]
    assert [h.wire for h in out["x2"]] == [4]
    assert len(dec.arena) == 3
    assert dec.stats["x1"].nhits == 2

    first = out["x1"][0]
    out2 = dec.decode(4, frame[frame["plane"] == "x2"])
    assert out2["x1"] == []
    assert dec.stats["x1"].nhits == 0
    assert not dec.arena.is_current(first)
    assert all(h.event == 4 for h in dec.arena)


def test_event_decoder_ref_time_column_and_missing_columns():
    dec = EventDecoder(_registry())
    frame = pd.DataFrame({"plane": ["x1"], "wire": [3], "tdc": [100], "ref_time": [-10e-9]})
    out = dec.decode(0, frame)
    assert out["x1"][0].time == pytest.approx(39.75e-9)

    with pytest.raises(KeyError):
        dec.decode(1, pd.DataFrame({"plane": ["x1"], "wire": [3]}))


def test_decoded_hits_build_time_window():
    # drift times outside [min_time, max_time] never reach the hit list
    dec = PlaneDecoder(_plane(DetectorGeometry()), HitArena())
    hits = dec.decode({"wire": [0, 1, 2], "tdc": [200, 10, 100]})
    assert all(0.0 < h.time < 80e-9 for h in hits)
    assert dec.stats.nrej == 2
    assert not any(math.isnan(h.drift_dist) for h in hits)
