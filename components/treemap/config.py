"""
Configuration management for the tree map finder.

One parameterized configuration replaces the per-variant copies of the
front-end: service URL, field-name mapping, layers, result columns and the
enabled feature set all live here, with named variants for the known setups.
"""

import copy
import json
import os
from typing import Dict, Any, Optional, List
from pathlib import Path
import logging

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "TREEMAP_CONFIG"
DEFAULT_CONFIG_PATH = "treemap_config.json"


class TreeMapConfig:
    """Manages tree map configuration settings."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or os.environ.get(CONFIG_ENV_VAR, DEFAULT_CONFIG_PATH)
        self.default_config = self._get_default_config()
        self.config = self._load_config()

    def _get_default_config(self) -> Dict[str, Any]:
        """Get default tree map configuration."""
        return {
            "service": {
                "url": "https://gishue.hue.gov.vn/server/rest/services/BanDoDuLich_HueCIT/CayXanh_CQ_DuLich/FeatureServer",
                "local_path": None,
                "timeout_s": 30
            },
            "fields": {
                "name": "TenCay",
                "category": "LoaiCay",
                "road": "TenTuyenDu",
                "area": "DiaChi"
            },
            "layers": {
                "trees": {
                    "layer_id": 0,
                    "title": "Cây xanh",
                    "title_field": "TenCay",
                    "popup_fields": {
                        "tencay": "Tên cây",
                        "tentuyendu": "Tuyến đường",
                        "diachi": "Khu vực"
                    },
                    "visible": True
                },
                "heritage": {
                    "layer_id": 1,
                    "title": "Di tích",
                    "title_field": "TenDiTich",
                    "popup_fields": {
                        "tenditich": "Tên di tích",
                        "dientich": "Diện tích"
                    },
                    "visible": True
                }
            },
            "result_columns": [
                {"label": "Tên Cây", "key": "tencay"},
                {"label": "Loại Cây", "key": "loaicay"},
                {"label": "Tuyến Đường", "key": "tentuyendu"},
                {"label": "Khu vực", "key": "diachi"}
            ],
            "map_settings": {
                "basemap": "CartoDB Positron",
                "default_center": [16.4637, 107.5909],
                "default_scale": 72000,
                "focus_scale": 2000,
                "extent_padding": 1.2,
                "hit_tolerance_px": 10,
                "height": 650
            },
            "cluster": {
                "radius_px": 80,
                "shape": "donut",
                "colormap": "tab10",
                "popup_title": "{cluster_count} trees",
                "caption": "Tree type distribution",
                "enabled_by_default": False
            },
            "buffer": {
                "default_distance_m": 50,
                "unit": "meters"
            },
            "query": {
                "max_workers": 4,
                "wait_timeout_s": 30
            },
            "features": {
                "search": True,
                "clustering": True,
                "buffer": True,
                "heritage_layer": True,
                "category_filter": True
            }
        }

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file or use defaults."""
        if os.path.exists(self.config_path):
            try:
                with open(self.config_path, 'r', encoding='utf-8') as f:
                    config = json.load(f)
                logger.info(f"Loaded tree map configuration from {self.config_path}")

                # Merge with defaults to ensure all keys exist
                return self._merge_configs(self.default_config, config)
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"Failed to load config from {self.config_path}: {e}")
                logger.info("Using default configuration")
                return copy.deepcopy(self.default_config)
        else:
            logger.info(f"Config file {self.config_path} not found, using defaults")
            return copy.deepcopy(self.default_config)

    def _merge_configs(self, default: Dict, user: Dict) -> Dict:
        """Recursively merge user config with defaults."""
        merged = copy.deepcopy(default)

        for key, value in user.items():
            if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
                merged[key] = self._merge_configs(merged[key], value)
            else:
                merged[key] = value

        return merged

    def save_config(self) -> None:
        """Save current configuration to file."""
        try:
            config_dir = Path(self.config_path).parent
            config_dir.mkdir(parents=True, exist_ok=True)

            with open(self.config_path, 'w', encoding='utf-8') as f:
                json.dump(self.config, f, indent=2, ensure_ascii=False)
            logger.info(f"Saved tree map configuration to {self.config_path}")
        except OSError as e:
            logger.error(f"Failed to save config to {self.config_path}: {e}")

    def get_service_settings(self) -> Dict[str, Any]:
        return self.config["service"]

    def get_field_mapping(self) -> Dict[str, str]:
        """Logical field -> service field name (original casing, used in queries)."""
        return self.config["fields"]

    def get_layer_settings(self, layer_key: str) -> Dict[str, Any]:
        return self.config["layers"][layer_key]

    def get_layer_url(self, layer_key: str) -> str:
        base = self.config["service"]["url"].rstrip("/")
        return f"{base}/{self.config['layers'][layer_key]['layer_id']}"

    def get_result_columns(self) -> List[Dict[str, str]]:
        return self.config["result_columns"]

    def get_map_settings(self) -> Dict[str, Any]:
        return self.config["map_settings"]

    def get_cluster_settings(self) -> Dict[str, Any]:
        return self.config["cluster"]

    def get_buffer_settings(self) -> Dict[str, Any]:
        return self.config["buffer"]

    def get_query_settings(self) -> Dict[str, Any]:
        return self.config["query"]

    def get_enabled_features(self) -> Dict[str, bool]:
        return self.config["features"]

    def is_enabled(self, feature: str) -> bool:
        return bool(self.config["features"].get(feature, False))

    def update(self, updates: Dict[str, Any]) -> None:
        """Merge a partial configuration into the current one."""
        self.config = self._merge_configs(self.config, updates)
        logger.info(f"Updated configuration sections: {sorted(updates.keys())}")

    def reset_to_defaults(self) -> None:
        """Reset configuration to defaults."""
        self.config = copy.deepcopy(self.default_config)
        logger.info("Reset configuration to defaults")


class AppVariantManager:
    """Named presets for the different front-end variants."""

    def __init__(self, config: TreeMapConfig):
        self.config = config
        self.variants = self._get_default_variants()

    def _get_default_variants(self) -> Dict[str, Dict[str, Any]]:
        return {
            "full": {
                "name": "Full map",
                "description": "Trees and heritage sites with search, clustering and buffer tool",
                "overrides": {"features": {"search": True, "clustering": True, "buffer": True,
                                           "heritage_layer": True, "category_filter": True}}
            },
            "trees_only": {
                "name": "Trees only",
                "description": "Tree layer with search and category filter",
                "overrides": {"features": {"heritage_layer": False, "clustering": False, "buffer": False}}
            },
            "search_only": {
                "name": "Search",
                "description": "Search and result table without map tools",
                "overrides": {"features": {"clustering": False, "buffer": False, "category_filter": False}}
            },
            "heritage_focus": {
                "name": "Heritage sites",
                "description": "Heritage sites with tree search and buffer tool",
                "overrides": {"features": {"clustering": False},
                              "map_settings": {"basemap": "OpenStreetMap"}}
            },
            "local_demo": {
                "name": "Local demo",
                "description": "Reads trees from a local GeoJSON file instead of the service",
                "overrides": {"service": {"local_path": "data/trees.geojson"},
                              "features": {"heritage_layer": False}}
            }
        }

    def list_variants(self) -> List[str]:
        return list(self.variants.keys())

    def get_variant(self, variant_name: str) -> Optional[Dict[str, Any]]:
        return self.variants.get(variant_name)

    def apply_variant(self, variant_name: str) -> bool:
        """Apply variant overrides to the current configuration."""
        variant = self.get_variant(variant_name)
        if variant is None:
            logger.error(f"Variant {variant_name} not found")
            return False

        self.config.update(variant["overrides"])
        logger.info(f"Applied variant {variant_name}")
        return True


# Global configuration instance
_treemap_config = None


def get_treemap_config(config_path: Optional[str] = None) -> TreeMapConfig:
    """Get global tree map configuration instance."""
    global _treemap_config
    if _treemap_config is None:
        _treemap_config = TreeMapConfig(config_path)
    return _treemap_config
