import pytest

from mwdc_reco.patterns import BinnedPatternSource, Node, PatternSource


def test_node_interpolation_and_validation():
    nd = Node(z_lo=0.0, z_hi=2.0, start=(0.0, 0.1), end=(0.2, 0.4))
    assert nd.range_at(1.0) == pytest.approx((0.1, 0.25))
    assert nd.range_at(-1.0) == pytest.approx((-0.1, -0.05))
    assert nd.sort_key() == (0.0, 0.2, 0.1, 0.4)
    assert nd.n_planes == 0
    flat = Node(z_lo=1.0, z_hi=1.0, start=(0.0, 0.1), end=(0.0, 0.1))
    assert flat.range_at(5.0) == (0.0, 0.1)
    with pytest.raises(ValueError):
        Node(z_lo=0.0, z_hi=1.0, start=(0.2, 0.1), end=(0.0, 0.1))
    # identity semantics
    assert Node(0.0, 1.0, (0.0, 0.1), (0.0, 0.1)) != Node(0.0, 1.0, (0.0, 0.1), (0.0, 0.1))


def test_binned_source_finds_track(make_projection, make_hit):
    proj = make_projection([0.0, 0.1, 0.2, 0.3])
    hits = {p.name: [make_hit(p, 0.10 + 0.1 * p.z, 0.002)] for p in proj.planes}
    source = BinnedPatternSource(n_bins=40, max_bin_slope=2, min_planes=3, x_min=-1.0, x_max=1.0)
    assert isinstance(source, PatternSource)
    nodes = source.nodes(proj, hits)
    assert nodes
    all_hits = {h for hs in hits.values() for h in hs}
    assert any(nd.hits == all_hits for nd in nodes)
    for nd in nodes:
        assert nd.n_planes >= 3
        assert nd.z_lo == 0.0 and nd.z_hi == pytest.approx(0.3)
        assert nd.start[1] - nd.start[0] == pytest.approx(0.05)


def test_binned_source_needs_min_planes(make_projection, make_hit):
    proj = make_projection([0.0, 0.1, 0.2, 0.3])
    hits = {proj.planes[0].name: [make_hit(proj.planes[0], 0.1)], proj.planes[1].name: [make_hit(proj.planes[1], 0.1)]}
    assert BinnedPatternSource(min_planes=3).nodes(proj, hits) == []
    # planes of other projections are ignored
    assert BinnedPatternSource(min_planes=3).nodes(proj, {"u1": hits["x1"] * 3}) == []


def test_binned_source_default_window(make_projection, make_hit):
    proj = make_projection([0.0, 0.1, 0.2])
    source = BinnedPatternSource(n_bins=10, max_bin_slope=0, min_planes=3)
    hits = {p.name: [make_hit(p, 0.5)] for p in proj.planes}
    nodes = source.nodes(proj, hits)
    # wires span [-1, 0.99], padded by half a spacing
    assert len(nodes) == 1
    assert nodes[0].start == pytest.approx((0.395, 0.595))
    assert nodes[0].end == nodes[0].start


def test_binned_source_validation():
    with pytest.raises(ValueError):
        BinnedPatternSource(n_bins=0)
    with pytest.raises(ValueError):
        BinnedPatternSource(max_bin_slope=-1)
    with pytest.raises(ValueError):
        BinnedPatternSource(x_min=1.0, x_max=0.0)
