import os
import tomllib
from pathlib import Path

from chainload.errors import ConfigError

pkg_root = Path(__file__).parent
config_file = Path(os.getenv("CHAINLOAD_CONFIG", pkg_root / "config.toml"))

FAMILIES = {"evm", "xrpl"}


def load_config(path: str | Path = config_file) -> dict:
    try:
        cfg = tomllib.loads(Path(path).read_text())
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"Cannot read configuration {path}: {e}") from e
    cfg.setdefault("defaults", {})
    cfg.setdefault("timeout", {})
    cfg.setdefault("networks", {})
    for name, table in cfg["networks"].items():
        validate_network(name, table)
    return cfg


def validate_network(name: str, table: dict) -> None:
    family = table.get("family")
    if family not in FAMILIES:
        raise ConfigError(f"Network {name}: family must be one of {sorted(FAMILIES)}, got {family!r}")
    urls = table.get("urls")
    if not urls or not all(isinstance(u, str) for u in urls):
        raise ConfigError(f"Network {name}: 'urls' must be a non-empty list of strings")
    if family == "evm" and not table.get("accounts"):
        raise ConfigError(f"Network {name}: evm networks need 'accounts'")
    if family == "xrpl" and not table.get("seeds"):
        raise ConfigError(f"Network {name}: xrpl networks need 'seeds'")


def run_params(cfg: dict, overrides: dict | None = None) -> dict:
    """Merge request overrides on top of [defaults]."""
    params = dict(cfg.get("defaults", {}))
    params.update({k: v for k, v in (overrides or {}).items() if v is not None})
    return params
