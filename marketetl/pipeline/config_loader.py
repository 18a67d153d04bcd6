"""Configuration loader for pipeline asset descriptors.

Loads asset definitions from YAML and registers them, so additional archive
families reuse the same retrieval/ingest/load/transform code.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

import yaml

from marketetl.pipeline.assets import AssetDescriptor, enabled_assets, register_asset

logger = logging.getLogger(__name__)


def load_asset_config(config_path: Path, register: bool = True) -> List[AssetDescriptor]:
    """Load asset descriptors from a YAML file.

    Expected layout::

        assets:
          - name: stock
            tag: SEP
            raw_table: raw_stock_data
            transformed_table: transformed_stock_data
            enabled: true

    Args:
        config_path: Path to YAML configuration file
        register: Also add each enabled descriptor to the registry

    Returns:
        List of enabled descriptors

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config is invalid
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Asset config not found: {config_path}")

    with open(config_path) as f:
        config = yaml.safe_load(f)

    if not config or "assets" not in config:
        raise ValueError("Invalid asset config: missing 'assets' section")

    assets = []

    for entry in config["assets"]:
        if not entry.get("enabled", True):
            logger.info(f"Skipping disabled asset: {entry.get('name')}")
            continue

        try:
            asset = _create_asset(entry)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Failed to load asset {entry.get('name')}: {e}")
            continue

        assets.append(asset)
        if register:
            register_asset(asset)
        logger.info(f"Loaded asset: {asset.name} (tag={asset.tag})")

    logger.info(f"Loaded {len(assets)} assets from config")

    return assets


def load_configured_assets(config_path: Optional[Path]) -> List[AssetDescriptor]:
    """Enabled assets from config_path if it exists, else the built-in registry."""
    if config_path is not None and config_path.exists():
        return load_asset_config(config_path)
    logger.info("No asset config found, using built-in assets")
    return enabled_assets()


def _create_asset(entry: dict) -> AssetDescriptor:
    """Create a descriptor from one YAML entry.

    Raises:
        KeyError: If a required field is missing
        ValueError: If a field is invalid
    """
    name = entry["name"]
    return AssetDescriptor(
        name=str(name),
        tag=str(entry["tag"]),
        raw_table=str(entry.get("raw_table", f"raw_{name}_data")),
        transformed_table=str(entry.get("transformed_table", f"transformed_{name}_data")),
        enabled=True,
    )
