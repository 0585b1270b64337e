import pstats
import sys
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import numpy as np
import orjson
import pandas as pd
import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from mwdc_reco.config import load_config
from mwdc_reco.data import generate_events
from mwdc_reco.decoder import EventDecoder
from mwdc_reco.geometry import PlaneRegistry
from mwdc_reco.main import build_parser, main, make_builders, process_event
from mwdc_reco.profiling import _resolve_sort_key, prof

ROOT = Path(__file__).resolve().parents[1]
CONFIG = str(ROOT / "config.json")


def test_parser_requires_one_source():
    p = build_parser()
    with pytest.raises(SystemExit):
        p.parse_args(["--config", CONFIG])
    with pytest.raises(SystemExit):
        p.parse_args(["--input", "raw.csv", "--simulate", "3"])
    args = p.parse_args(["--simulate", "3", "--tracks", "2"])
    assert args.simulate == 3 and args.tracks == 2 and args.input is None


def test_main_simulated_csv(tmp_path):
    out = tmp_path / "roads.csv"
    stats = tmp_path / "stats.csv"
    main(["--config", CONFIG, "--simulate", "3", "--seed", "7", "--out", str(out), "--stats-out", str(stats)])

    roads = pd.read_csv(out)
    assert {"event", "projection", "pos", "slope", "chi2", "good"} <= set(roads.columns)
    assert set(roads["event"]) == {0, 1, 2}
    assert set(roads["projection"]) == {"x", "u"}
    assert roads["good"].all()

    st = pd.read_csv(stats)
    assert len(st) == 3 * 8
    assert (st["nhits"] == 1).all()


def test_main_input_json_and_profile(tmp_path):
    registry = PlaneRegistry.from_config(load_config(CONFIG))
    raw, _ = generate_events(registry, 2, noise_hits=1, rng=np.random.default_rng(1))
    raw_path = tmp_path / "raw.csv"
    raw.to_csv(raw_path, index=False)
    out = tmp_path / "roads.json"
    report = tmp_path / "prof.txt"

    main(["--config", CONFIG, "--input", str(raw_path), "--out", str(out),
          "--profile", "--profile-out", str(report)])

    records = orjson.loads(out.read_bytes())
    assert records
    assert {r["event"] for r in records} <= {0, 1}
    assert all(len(r["points"]) >= 3 for r in records)
    assert report.read_text(encoding="utf-8").startswith("[prof]")


def test_main_missing_config(tmp_path):
    with pytest.raises(FileNotFoundError):
        main(["--config", str(tmp_path / "none.json"), "--simulate", "1"])


def test_make_builders_rejects_bad_pattern_keys():
    cfg = load_config(CONFIG)
    registry = PlaneRegistry.from_config(cfg)
    cfg["patterns"] = {"bins": 3}
    with pytest.raises(ValueError):
        make_builders(registry, cfg)


def test_event_display(tmp_path):
    import mwdc_reco.plotting as mw_plot

    cfg = load_config(CONFIG)
    registry = PlaneRegistry.from_config(cfg)
    raw, _ = generate_events(registry, 1, rng=np.random.default_rng(2))
    decoder = EventDecoder(registry)
    roads, hits = process_event(0, raw, decoder, make_builders(registry, cfg))

    out = tmp_path / "event.png"
    proj = registry.projections()["x"]
    fig = mw_plot.plot_roads(proj, hits, roads["x"], show=False, out_path=out)
    assert out.is_file()
    assert fig.axes[0].get_xlabel() == "x (m)"

    matched = pd.DataFrame({"dpos": [1e-5, -2e-5], "dslope": [1e-4, 0.0]})
    res = tmp_path / "resid.png"
    mw_plot.plot_residuals(matched, show=False, out_path=res)
    assert res.is_file()


def test_prof_context(tmp_path):
    with prof(False) as pr:
        assert pr is None
    dump = tmp_path / "run.pstats"
    report = tmp_path / "report.txt"
    with prof(True, sort="cumtime", out_path=report, dump_path=dump) as pr:
        sum(range(1000))
    assert pr is not None
    assert dump.is_file()
    assert "sort=cumulative" in report.read_text(encoding="utf-8")
    with pytest.raises(ValueError):
        with prof(True, sort="fastest"):
            pass


@pytest.mark.parametrize(
    "alias, key",
    [("file", pstats.SortKey.FILENAME), ("TOTTIME", pstats.SortKey.TIME), ("nfl", pstats.SortKey.NFL)],
)
def test_sort_key_aliases(alias, key):
    assert _resolve_sort_key(alias) is key
    assert _resolve_sort_key(key) is key
