import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from mwdc_reco.config import DecoderConfig, RoadConfig, load_config

ROOT = Path(__file__).resolve().parents[1]


def test_road_config_defaults_and_overrides():
    cfg = RoadConfig.from_mapping(None)
    assert cfg.chi2_cut == 20.0
    assert cfg.min_planes == 3
    assert cfg.max_width is None

    cfg = RoadConfig.from_mapping({"chi2_cut": 5.0, "max_width": 0.1})
    assert cfg.chi2_cut == 5.0
    assert cfg.max_width == 0.1


@pytest.mark.parametrize("block", [
    {"chi2cut": 1.0},
    {"min_planes": 1},
    {"chi2_cut": 0.0},
    {"max_combinations": 0},
    {"match_fraction": 1.5},
    {"merge_min_overlap": -0.1},
    {"max_width": 0.0},
    {"z_epsilon": -1e-3},
])
def test_road_config_rejects_bad_values(block):
    with pytest.raises(ValueError):
        RoadConfig.from_mapping(block)


def test_decoder_config():
    cfg = DecoderConfig.from_mapping({"mc_data": True})
    assert cfg.mc_data and cfg.do_time_cut
    with pytest.raises(ValueError):
        DecoderConfig.from_mapping({"time_cut": False})
    with pytest.raises(ValueError, match="mc_data"):
        DecoderConfig.from_mapping({"mc_data": "false"})
    with pytest.raises(ValueError, match="do_time_cut"):
        DecoderConfig.from_mapping({"do_time_cut": 0})


def test_load_config(tmp_path):
    cfg = load_config(ROOT / "config.json")
    assert {"detector", "planes", "projections", "road", "decoder"} <= set(cfg)

    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.json")

    bad = tmp_path / "bad.json"
    bad.write_text("{planes: [", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(bad)

    arr = tmp_path / "list.json"
    arr.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(arr)
