from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Mapping, MutableMapping, Optional

import orjson

logger = logging.getLogger(__name__)


def _from_mapping(cls, block: Optional[Mapping[str, Any]], section: str):
    r"""
    Build a config dataclass from a mapping, rejecting unknown keys.

    Parameters
    ----------
    cls : type
        Dataclass type to instantiate.
    block : mapping or None
        Values from the JSON section. ``None`` yields the defaults.
    section : str
        Section name, used in error messages.

    Returns
    -------
    instance of ``cls``

    Raises
    ------
    ValueError
        If ``block`` contains keys that are not fields of ``cls``.
    """
    block = dict(block or {})
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(block) - known)
    if unknown:
        raise ValueError(
            f"Unknown key(s) in '{section}' config: {', '.join(unknown)}. "
            f"Known keys: {', '.join(sorted(known))}"
        )
    obj = cls(**block)
    obj.validate()
    return obj


@dataclass(slots=True)
class RoadConfig:
    r"""
    Tunables of road construction, fitting and merging.

    Attributes
    ----------
    chi2_cut : float
        Acceptance cut on :math:`\chi^2/\text{dof}` of a fit hypothesis.
        Fits with :math:`\text{dof}=0` are always accepted.
    envelope_tolerance : float
        Padding (meters) applied to the road bounds in the range and
        containment tests.
    z_epsilon : float
        Padding (meters) of the road's lower/upper z edges around the first
        and last plane.
    min_planes : int
        Minimum number of planes with at least one point for a road to be
        fittable. Must be at least 2.
    max_width : float or None
        If set, a node is rejected when adding it would make the road wider
        than this (meters) at either z edge.
    max_combinations : int
        Hard cap on fit hypotheses evaluated per road.
    max_merge_pairs : int
        Hard cap on candidate road pairs examined per merge pass.
    merge_search_radius : float
        KD-tree radius (meters) on envelope centres used to propose merge pairs.
    merge_position_tolerance : float
        Minimum position tolerance (meters) for two fitted lines to count
        as consistent at the shared z midpoint.
    merge_nsigma : float
        Tolerance in units of the combined position uncertainty.
    merge_min_overlap : float
        Minimum envelope overlap fraction for a fit-consistent merge.
    match_fraction : float
        Shared-hit fraction above which two hit sets are the same candidate.
    """
    chi2_cut: float = 20.0
    envelope_tolerance: float = 0.0
    z_epsilon: float = 1e-3
    min_planes: int = 3
    max_width: Optional[float] = None
    max_combinations: int = 1000
    max_merge_pairs: int = 10000
    merge_search_radius: float = 0.05
    merge_position_tolerance: float = 1e-3
    merge_nsigma: float = 3.0
    merge_min_overlap: float = 0.5
    match_fraction: float = 0.8

    def validate(self) -> None:
        """Raise ``ValueError`` on out-of-range values."""
        if self.chi2_cut <= 0.0:
            raise ValueError(f"chi2_cut must be positive, got {self.chi2_cut}")
        if self.min_planes < 2:
            raise ValueError(f"min_planes must be >= 2 for a line fit, got {self.min_planes}")
        if self.max_combinations < 1:
            raise ValueError(f"max_combinations must be >= 1, got {self.max_combinations}")
        if self.max_merge_pairs < 0:
            raise ValueError(f"max_merge_pairs must be >= 0, got {self.max_merge_pairs}")
        if self.envelope_tolerance < 0.0 or self.z_epsilon < 0.0:
            raise ValueError("envelope_tolerance and z_epsilon must be non-negative")
        if self.max_width is not None and self.max_width <= 0.0:
            raise ValueError(f"max_width must be positive or null, got {self.max_width}")
        if not 0.0 < self.match_fraction <= 1.0:
            raise ValueError(f"match_fraction must be in (0, 1], got {self.match_fraction}")
        if not 0.0 <= self.merge_min_overlap <= 1.0:
            raise ValueError(f"merge_min_overlap must be in [0, 1], got {self.merge_min_overlap}")

    @classmethod
    def from_mapping(cls, block: Optional[Mapping[str, Any]]) -> "RoadConfig":
        return _from_mapping(cls, block, "road")


@dataclass(slots=True)
class DecoderConfig:
    """Per-event decoding switches (time cut, Monte Carlo hits)."""
    do_time_cut: bool = True
    mc_data: bool = False

    def validate(self) -> None:
        """Raise ``ValueError`` on switches that are not booleans (e.g. ``"false"`` from JSON)."""
        for name in ("do_time_cut", "mc_data"):
            value = getattr(self, name)
            if not isinstance(value, bool):
                raise ValueError(f"{name} must be true or false, got {value!r}")

    @classmethod
    def from_mapping(cls, block: Optional[Mapping[str, Any]]) -> "DecoderConfig":
        return _from_mapping(cls, block, "decoder")


def load_config(config_path: Path | str) -> MutableMapping[str, Any]:
    r"""
    Load the JSON run configuration with :mod:`orjson`.

    The file has the sections ``detector``, ``planes``, ``projections``,
    ``road`` and ``decoder``; see ``config.json`` at the repository root.

    Parameters
    ----------
    config_path : pathlib.Path or str
        Path to the JSON file.

    Returns
    -------
    dict
        Parsed configuration.

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    ValueError
        If the file cannot be parsed or is not a JSON object.
    """
    path = Path(config_path)
    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")
    try:
        cfg = orjson.loads(path.read_bytes())
    except orjson.JSONDecodeError as e:
        raise ValueError(f"Failed to parse {path}: {e}") from e
    if not isinstance(cfg, dict):
        raise ValueError(f"{path}: top level must be a JSON object")
    logger.debug("Loaded config %s with sections %s", path, sorted(cfg))
    return cfg
