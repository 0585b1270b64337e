import sys
from pathlib import Path

import numpy as np
import pytest

# Ensure project root on path when tests are run without installing.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from mwdc_reco.config import RoadConfig
from mwdc_reco.geometry import DetectorGeometry, PlaneType, Projection, WirePlane
from mwdc_reco.hits import HitArena
from mwdc_reco.ttd import LinearTTDConv


@pytest.fixture
def geometry():
    return DetectorGeometry(name="test")


@pytest.fixture
def make_plane(geometry):
    """Factory for planes of 200 wires starting at -1 m, 1 cm apart."""
    def _make(name, z, resolution=1e-3, n_wires=200, wire_start=-1.0, wire_spacing=0.01, **kw):
        return WirePlane(
            name=name,
            plane_type=PlaneType.from_name(name),
            z_local=z,
            wire_start=wire_start,
            wire_spacing=wire_spacing,
            n_wires=n_wires,
            resolution=resolution,
            ttd=LinearTTDConv(5e4),
            tdc_offsets=np.zeros(n_wires),
            tdc_resolution=0.5e-9,
            geometry=geometry,
            **kw,
        )
    return _make


@pytest.fixture
def make_projection(make_plane):
    """Factory for a projection with one plane per z, named ``<kind>1, <kind>2, ...``."""
    def _make(zs, kind="x", resolution=1e-3, angle=0.0, **road_kw):
        planes = [make_plane(f"{kind}{i + 1}", z, resolution=resolution) for i, z in enumerate(zs)]
        return Projection(PlaneType.from_name(kind), planes, RoadConfig(**road_kw), angle)
    return _make


@pytest.fixture
def arena():
    a = HitArena()
    a.begin_event(1)
    return a


@pytest.fixture
def make_hit(arena):
    """Factory for a hit at position ``pos`` of ``plane`` with drift distance ``dist``."""
    def _make(plane, pos, dist=0.0):
        return arena.allocate(
            wire=int(round((pos - plane.wire_start) / plane.wire_spacing)),
            pos=float(pos),
            raw_tdc=0,
            time=dist / 5e4,
            drift_dist=float(dist),
            resolution=plane.resolution,
            plane=plane,
        )
    return _make
