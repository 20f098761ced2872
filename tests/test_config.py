import json
from pathlib import Path
import pytest
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from volfusion import FusionData
from volfusion.config import default_config, load_config, save_config, validate_config


def test_default_config_has_required_keys():
    cfg = default_config()
    for k in ["grid_size", "bins", "on_device", "volume", "threshold", "tau", "lambda"]:
        assert k in cfg, f"missing key: {k}"


def test_default_config_is_valid():
    assert validate_config(default_config()) == []


def test_save_and_load_roundtrip(tmp_path):
    cfg = default_config()
    cfg["bins"] = 7
    p = tmp_path / "fusion_config.json"
    save_config(cfg, str(p))
    loaded = load_config(str(p))
    assert loaded["bins"] == 7


def test_load_missing_file_returns_default(tmp_path):
    cfg = load_config(str(tmp_path / "nonexistent.json"))
    assert cfg["bins"] == 5


def test_load_corrupt_file_returns_default(tmp_path):
    p = tmp_path / "bad.json"
    p.write_text("{not json")
    assert load_config(str(p)) == default_config()


def test_partial_file_is_merged_with_defaults(tmp_path):
    p = tmp_path / "partial.json"
    p.write_text(json.dumps({"tau": 0.5}))
    cfg = load_config(str(p))
    assert cfg["tau"] == 0.5
    assert cfg["bins"] == 5


class TestValidateConfig:
    def test_missing_required_key(self):
        cfg = {k: v for k, v in default_config().items() if k != "tau"}
        errors = validate_config(cfg)
        assert any("tau" in e for e in errors)

    @pytest.mark.parametrize("bins", [0, 1, 256, 4.5])
    def test_bad_bins(self, bins):
        errors = validate_config({**default_config(), "bins": bins})
        assert any("bins" in e for e in errors)

    def test_bad_grid_size(self):
        errors = validate_config({**default_config(), "grid_size": [4, 0, 4]})
        assert any("grid_size" in e for e in errors)

    def test_non_positive_threshold(self):
        errors = validate_config({**default_config(), "threshold": 0.0})
        assert any("threshold" in e for e in errors)

    @pytest.mark.parametrize("key", ["threshold", "tau", "lambda"])
    def test_non_numeric_value_is_reported(self, key):
        errors = validate_config({**default_config(), key: "0.1"})
        assert any(key in e and "number" in e for e in errors)

    def test_non_numeric_value_from_file(self, tmp_path):
        p = tmp_path / "typo.json"
        p.write_text(json.dumps({"tau": "fast"}))
        errors = validate_config(load_config(str(p)))
        assert errors == ["tau must be a number, got 'fast'"]

    def test_bad_alignment(self):
        errors = validate_config({**default_config(), "host_pitch_alignment": 6})
        assert any("host_pitch_alignment" in e for e in errors)

    def test_multiple_errors_reported(self):
        errors = validate_config({**default_config(), "tau": 0.0, "lambda": -1.0})
        assert len(errors) >= 2


class TestFromConfig:
    def test_builds_host_grid(self):
        cfg = {**default_config(), "grid_size": [3, 2, 1], "bins": 4,
               "host_pitch_alignment": 64,
               "volume": {"a": [0, 0, 0], "b": [2, 2, 2]}}
        g = FusionData.from_config(cfg)
        assert (g.width, g.height, g.depth) == (3, 2, 1)
        assert g.bins == 4
        assert g.pitch == 128       # 3 * 36 bytes -> 64-byte rows
        assert list(g.volume.b) == [2, 2, 2]

    def test_invalid_config_raises(self):
        with pytest.raises(ValueError, match="bins"):
            FusionData.from_config({**default_config(), "bins": 1})
