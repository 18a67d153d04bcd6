"""Asset descriptors: one parameterized pipeline per archive family.

Each descriptor names the archive tag to look for in the shared folder and
the raw/transformed tables its rows flow through. The pipeline code is the
same for every asset; only the descriptor changes.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


@dataclass(frozen=True)
class AssetDescriptor:
    """Tagged configuration for one archive family (e.g. SEP equities)."""

    name: str
    tag: str
    raw_table: str
    transformed_table: str
    enabled: bool = True

    def __post_init__(self):
        if not self.tag.strip():
            raise ValueError(f"Asset {self.name!r} has an empty archive tag")
        for table in (self.raw_table, self.transformed_table):
            if not _IDENTIFIER.match(table):
                raise ValueError(f"Asset {self.name!r}: invalid table name {table!r}")

    def matches(self, file_name: str) -> bool:
        """Case-insensitive substring match of the tag against a file name."""
        return self.tag.lower() in file_name.lower()


STOCK_SEP = AssetDescriptor(
    name="stock",
    tag="SEP",
    raw_table="raw_stock_data",
    transformed_table="transformed_stock_data",
)

# Asset registry (maps name to descriptor)
ASSET_REGISTRY: dict[str, AssetDescriptor] = {STOCK_SEP.name: STOCK_SEP}


def register_asset(asset: AssetDescriptor) -> AssetDescriptor:
    """Add or replace a descriptor in the registry."""
    ASSET_REGISTRY[asset.name] = asset
    return asset


def get_asset(name: str) -> AssetDescriptor:
    """Look up a registered descriptor by name.

    Raises:
        KeyError: If no descriptor with that name is registered
    """
    try:
        return ASSET_REGISTRY[name]
    except KeyError:
        known = ", ".join(sorted(ASSET_REGISTRY)) or "none"
        raise KeyError(f"Unknown asset '{name}' (registered: {known})") from None


def enabled_assets() -> list[AssetDescriptor]:
    return [a for a in ASSET_REGISTRY.values() if a.enabled]
