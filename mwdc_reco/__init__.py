__all__ = [
    "RoadConfig", "DecoderConfig", "load_config",
    "Hit", "MCHit", "HitArena",
    "TimeToDistConv", "LinearTTDConv", "TanhTTDConv", "TableTTDConv",
    "TTD_CONVERTERS", "make_converter",
    "DetectorGeometry", "PlaneType", "WirePlane", "PlaneRegistry", "Projection",
    "PlaneStats", "PlaneDecoder", "EventDecoder",
    "Node", "PatternSource", "BinnedPatternSource",
    "fit_lines",
    "Point", "FitResult", "Corners", "RoadState", "Road",
    "RoadBuilder",
    "roads_to_frame", "hits_to_frame", "plane_stats_to_frame", "roads_to_json",
    "load_raw_events", "generate_events",
    "match_roads_to_truth",
]

# Configuration
from .config import RoadConfig, DecoderConfig, load_config

# Hits & geometry
from .hits import Hit, MCHit, HitArena
from .ttd import (
    TimeToDistConv,
    LinearTTDConv,
    TanhTTDConv,
    TableTTDConv,
    TTD_CONVERTERS,
    make_converter,
)
from .geometry import DetectorGeometry, PlaneType, WirePlane, PlaneRegistry, Projection

# Decoding & patterns
from .decoder import PlaneStats, PlaneDecoder, EventDecoder
from .patterns import Node, PatternSource, BinnedPatternSource

# Roads
from .fit_kernels import fit_lines
from .road import Point, FitResult, Corners, RoadState, Road
from .road_builder import RoadBuilder

# Output, data & metrics (plotting imported lazily by the CLI)
from .export import roads_to_frame, hits_to_frame, plane_stats_to_frame, roads_to_json
from .data import load_raw_events, generate_events
from .metrics import match_roads_to_truth
