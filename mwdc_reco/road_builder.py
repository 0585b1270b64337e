from __future__ import annotations

import logging
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np
from scipy.spatial import cKDTree

from mwdc_reco.geometry import Projection
from mwdc_reco.hits import Hit
from mwdc_reco.patterns import BinnedPatternSource, Node, PatternSource
from mwdc_reco.road import Road, RoadState

logger = logging.getLogger(__name__)


class RoadBuilder:
    r"""
    Road construction, fitting and merging for one projection.

    The builder turns the nodes of one event into a ranked list of good
    roads:

    1. :meth:`make_roads` seeds a road from each unused node (in
       deterministic order) and offers it every later unused node;
    2. :meth:`fit_roads` fits them and drops the void ones;
    3. :meth:`merge_roads` absorbs roads describing the same track and
       removes duplicates sharing most of their hits;
    4. the survivors are sorted by best-fit :math:`\chi^2`.

    Merge candidates are pairs of roads whose envelope centres
    :math:`c = (\bar x_l, \bar x_u)` lie within ``merge_search_radius``,
    found with a :class:`scipy.spatial.cKDTree` rather than by testing all
    :math:`O(n^2)` pairs.

    Parameters
    ----------
    projection : Projection
    pattern_source : PatternSource, optional
        Used by :meth:`build_event`. Defaults to a
        :class:`~mwdc_reco.patterns.BinnedPatternSource` with the
        projection's ``min_planes``.

    See Also
    --------
    mwdc_reco.road.Road
    """

    def __init__(self, projection: Projection, pattern_source: Optional[PatternSource] = None) -> None:
        self.projection = projection
        self.config = projection.config
        if pattern_source is None:
            pattern_source = BinnedPatternSource(min_planes=self.config.min_planes)
        self.pattern_source = pattern_source
        self.roads: List[Road] = []
        self._stats: Dict[str, int] = {}
        self.reset()

    def _count(self, key: str, n: int = 1) -> None:
        self._stats[key] = self._stats.get(key, 0) + n

    def make_roads(self, nodes: Sequence[Node]) -> List[Road]:
        r"""
        Build and finish roads from nodes.

        Nodes are ordered by their start range, then end range. Each node not
        yet used seeds a road; all later unused nodes are offered to it with
        :meth:`Road.add` and marked used when accepted.

        Returns
        -------
        list of Road
            Finished roads; roads void at construction are dropped.
        """
        ordered = sorted(nodes, key=lambda nd: nd.sort_key())
        used = [False] * len(ordered)
        roads: List[Road] = []
        self._count("nodes", len(ordered))
        for i, node in enumerate(ordered):
            if used[i]:
                continue
            used[i] = True
            road = Road(self.projection, node)
            for j in range(i + 1, len(ordered)):
                if not used[j] and road.add(ordered[j]):
                    used[j] = True
            self._count("roads_built")
            if road.finish():
                roads.append(road)
            else:
                self._count("void_build")
        logger.debug(
            "Projection %s: %d node(s) -> %d finished road(s)",
            self.projection.name, len(ordered), len(roads),
        )
        return roads

    def fit_roads(self, roads: Sequence[Road]) -> List[Road]:
        """Fit each road; return the good ones."""
        good: List[Road] = []
        for road in roads:
            truncated = road.n_truncated
            if road.fit():
                good.append(road)
            else:
                self._count("void_fit")
            self._count("truncated_fits", road.n_truncated - truncated)
        return good

    def _refit(self, road: Road) -> bool:
        truncated = road.n_truncated
        ok = road.finish() and road.fit()
        self._count("truncated_fits", road.n_truncated - truncated)
        return ok

    def merge_roads(self, roads: Sequence[Road]) -> List[Road]:
        r"""
        Merge roads that describe the same track and drop duplicates.

        Candidate pairs ``(i, j)`` come from
        :meth:`scipy.spatial.cKDTree.query_pairs` on the envelope centres,
        sorted, and capped at ``max_merge_pairs``. For each pair the road
        with lower :math:`\chi^2` first tries to absorb the other, then the
        reverse. A road that absorbed another is finished and fit again at
        once; if that fit fails the merge is undone with
        :meth:`Road.restore` and both roads keep their previous fits.

        Finally, walking the survivors by ascending :math:`\chi^2`, a road
        whose hits :meth:`Road.check_match` an already accepted road is
        voided.

        Returns
        -------
        list of Road
            Surviving good roads, ascending :math:`\chi^2`.
        """
        cfg = self.config
        roads = [r for r in roads if r.state is RoadState.FITTED]
        if len(roads) > 1:
            centres = np.array(
                [[0.5 * (e[0] + e[1]), 0.5 * (e[2] + e[3])] for e in (r.envelope for r in roads)],
                dtype=np.float64,
            )
            tree = cKDTree(centres)
            pairs = sorted(tree.query_pairs(r=cfg.merge_search_radius))
            self._count("merge_pairs", len(pairs))
            if len(pairs) > cfg.max_merge_pairs:
                logger.warning(
                    "Projection %s: %d merge candidate pairs, only the first %d examined",
                    self.projection.name, len(pairs), cfg.max_merge_pairs,
                )
                self._count("merge_pairs_truncated", len(pairs) - cfg.max_merge_pairs)
                pairs = pairs[: cfg.max_merge_pairs]

            for i, j in pairs:
                a, b = roads[i], roads[j]
                if a.state is not RoadState.FITTED or b.state is not RoadState.FITTED:
                    continue
                if b < a:
                    a, b = b, a
                saved_a, saved_b = a.snapshot(), b.snapshot()
                if a.include(b):
                    survivor, absorbed = a, b
                elif b.include(a):
                    survivor, absorbed = b, a
                else:
                    continue
                if self._refit(survivor):
                    self._count("merged")
                    continue
                # both roads return to their pre-merge fits
                a.restore(saved_a)
                b.restore(saved_b)
                self._count("merge_undone")
                logger.debug("Merge of %r into %r undone, merged road has no acceptable fit", absorbed, survivor)

        survivors = sorted((r for r in roads if r.state is RoadState.FITTED), key=lambda r: r.chi2)
        accepted: List[Road] = []
        for road in survivors:
            if any(a.check_match(road.hits) for a in accepted):
                road.void()
                self._count("duplicates")
                continue
            accepted.append(road)
        return accepted

    def build(self, nodes: Sequence[Node]) -> List[Road]:
        r"""
        Run construction, fitting and merging on one event's nodes.

        Counters restart with every call; see :meth:`get_statistics`.

        Returns
        -------
        list of Road
            Good roads sorted by ascending best-fit :math:`\chi^2`.
        """
        self.reset()
        roads = self.make_roads(nodes)
        roads = self.fit_roads(roads)
        roads = self.merge_roads(roads)
        self.roads = sorted(roads)
        self._count("good", len(self.roads))
        logger.debug(
            "Projection %s: %d good road(s) from %d node(s)",
            self.projection.name, len(self.roads), len(nodes),
        )
        return list(self.roads)

    def build_event(self, hits_by_plane: Mapping[str, Sequence[Hit]]) -> List[Road]:
        """Ask the pattern source for nodes and :meth:`build` roads from them."""
        return self.build(self.pattern_source.nodes(self.projection, hits_by_plane))

    def get_statistics(self) -> Dict[str, int]:
        r"""
        Counters of the last :meth:`build`.

        Returns
        -------
        dict
            ``nodes``, ``roads_built``, ``void_build``, ``void_fit``,
            ``merged``, ``merge_undone``, ``duplicates``, ``truncated_fits``,
            ``merge_pairs``, ``merge_pairs_truncated``, ``good``.
        """
        return dict(self._stats)

    def reset(self) -> None:
        """Forget the roads and counters of the last build."""
        self.roads = []
        self._stats = {
            key: 0
            for key in (
                "nodes", "roads_built", "void_build", "void_fit", "merged", "merge_undone",
                "duplicates", "truncated_fits", "merge_pairs", "merge_pairs_truncated", "good",
            )
        }
