"""config.py — load/save fusion_config.json with defaults and validation."""
from __future__ import annotations
import json
import logging
from pathlib import Path

from .memory import DEVICE_PITCH_ALIGNMENT, HOST_PITCH_ALIGNMENT

logger = logging.getLogger(__name__)

CONFIG_PATH = Path(__file__).parent / "fusion_config.json"

_REQUIRED = ("grid_size", "bins", "on_device", "threshold", "tau", "lambda")


def default_config() -> dict:
    return {
        "grid_size":        [64, 64, 64],
        "bins":             5,
        "on_device":        False,
        "volume":           {"a": [0.0, 0.0, 0.0], "b": [1.0, 1.0, 1.0]},
        "threshold":        0.1,     # truncation band of the signed distance
        "tau":              0.1,     # primal step size
        "lambda":           1.0,     # data term weight
        "with_bin_centers": False,
        "host_pitch_alignment":   HOST_PITCH_ALIGNMENT,
        "device_pitch_alignment": DEVICE_PITCH_ALIGNMENT,
    }


def load_config(path: str | None = None) -> dict:
    p = Path(path) if path else CONFIG_PATH
    if not p.exists():
        return default_config()
    try:
        cfg = default_config()
        cfg.update(json.loads(p.read_text()))
        return cfg
    except Exception as e:
        logger.warning(f"[Config] Could not read {p}: {e}; using defaults")
        return default_config()


def save_config(cfg: dict, path: str | None = None) -> None:
    p = Path(path) if path else CONFIG_PATH
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(cfg, indent=2))


def validate_config(cfg: dict) -> list[str]:
    """Return a list of human-readable problems; empty when *cfg* is usable."""
    errors = []
    for key in _REQUIRED:
        if key not in cfg:
            errors.append(f"missing required key: {key}")
    if errors:
        return errors

    size = cfg["grid_size"]
    if not (isinstance(size, (list, tuple)) and len(size) == 3
            and all(isinstance(n, int) and n > 0 for n in size)):
        errors.append(f"grid_size must be three positive integers, got {size!r}")
    if not isinstance(cfg["bins"], int) or not 2 <= cfg["bins"] <= 255:
        errors.append(f"bins must be an integer in [2, 255], got {cfg['bins']!r}")
    for key in ("threshold", "tau", "lambda"):
        val = cfg[key]
        if not isinstance(val, (int, float)) or isinstance(val, bool):
            errors.append(f"{key} must be a number, got {val!r}")
        elif key == "lambda" and val < 0:
            errors.append(f"lambda must be >= 0, got {val}")
        elif key != "lambda" and val <= 0:
            errors.append(f"{key} must be > 0, got {val}")
    vol = cfg.get("volume")
    if vol is not None and not (isinstance(vol, dict) and "a" in vol and "b" in vol):
        errors.append("volume must be a mapping with corners 'a' and 'b'")
    for key in ("host_pitch_alignment", "device_pitch_alignment"):
        if key in cfg and (not isinstance(cfg[key], int) or cfg[key] <= 0 or cfg[key] % 4):
            errors.append(f"{key} must be a positive multiple of 4, got {cfg[key]!r}")
    return errors
