from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from dotenv import load_dotenv
from loguru import logger

from .errors import ConfigurationError

DEFAULT_CONFIG: Dict[str, Dict[str, Any]] = {
    'generation': {
        'max_attempts': 12,
        'wall_clock_budget_seconds': 120,
        'base_delay_seconds': 1.0,
        'reinforce_prompt_on_retry': True,
        'default_size': 'portrait',
        'request_timeout_seconds': 90,
    },
    'validation': {
        'ink_threshold': 128,
        'min_bbox_height_ratio': 0.88,
        'max_bottom_gap_ratio': 0.05,
        'bottom_band_ratio': 0.10,
        'min_bottom_ink_ratio': 0.05,
        'max_gray_ratio': 0.02,
        'max_solid_fill_ratio': 0.01,
        'fill_kernel_size': 9,
        'border_edge_ink_ratio': 0.9,
        'use_vision': True,
        'fail_on_vision_error': False,
    },
    'reframe': {
        'print_width': 2550,
        'print_height': 3300,
        'margin_percent': 2.0,
        'min_margin_percent': 1.5,
        'band_percent': 8,
        'empty_threshold': 0.92,
        'near_white_level': 250,
        'retry_with_smaller_margin': True,
    },
    'storage': {
        'root_dir': 'outputs/storage',
        'bucket': 'generated',
        'retention_hours': 72,
        'signed_url_ttl_seconds': 300,
        'signed_url_expires_in': 3600,
    },
}


def load_config(config_path: Optional[Union[str, Path]] = None) -> Dict[str, Dict[str, Any]]:
    """Load configuration from a YAML file layered over the defaults.

    Missing sections or keys fall back to DEFAULT_CONFIG. A missing file is
    only an error when a path was given explicitly.
    """
    load_dotenv()

    loaded: Dict[str, Any] = {}
    if config_path is not None:
        path = Path(config_path)
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}")
        with open(path, 'r') as f:
            loaded = yaml.safe_load(f) or {}
        logger.info(f"Loaded configuration from {path}")

    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Config file must contain a mapping, got {type(loaded).__name__}")

    config = {}
    for section, defaults in DEFAULT_CONFIG.items():
        overrides = loaded.get(section) or {}
        if not isinstance(overrides, dict):
            raise ConfigurationError(f"Config section '{section}' must be a mapping")
        config[section] = {**defaults, **overrides}
    return config
