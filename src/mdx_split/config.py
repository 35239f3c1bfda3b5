"""
Settings for the separator: built-in defaults, an optional YAML file and environment overrides.
"""

import copy
import os

import yaml

from .mdx_lib import FFT_SIZE, HOP_LENGTH, SEGMENT_SIZE

MODEL_KEY = "UVR-MDX-NET-Inst_HQ_2"

MODEL_URLS = [
    "https://huggingface.co/Politrees/UVR_resources/resolve/main/models/MDXNet/UVR-MDX-NET-Inst_HQ_2.onnx",
    "https://huggingface.co/seanghay/uvr_models/resolve/main/UVR-MDX-NET-Inst_HQ_2.onnx",
]

CONFIG_ENV_VAR = "MDX_SPLIT_CONFIG"
MODEL_DIR_ENV_VAR = "MDX_SPLIT_MODEL_DIR"

DEFAULT_SETTINGS = {
    "model_file_dir": "uvr_models/",
    "model_key": MODEL_KEY,
    "model_urls": MODEL_URLS,
    "download_timeout": 60,
    "use_directml": False,
    "log_level": "INFO",
    "mdx_params": {
        "chunk_duration": 30,
        "overlap_duration": 2,
        "segment_size": SEGMENT_SIZE,
        "hop_length": HOP_LENGTH,
        "n_fft": FFT_SIZE,
    },
}

# The kernel and the model input contract cannot change
FIXED_MDX_PARAMS = {"segment_size": SEGMENT_SIZE, "hop_length": HOP_LENGTH, "n_fft": FFT_SIZE}


def _merge(base, override, path=""):
    for key, value in override.items():
        if key not in base:
            raise ValueError(f"Unknown setting: {path}{key}")
        if isinstance(base[key], dict):
            if not isinstance(value, dict):
                raise ValueError(f"Setting {path}{key} must be a mapping")
            _merge(base[key], value, f"{path}{key}.")
        else:
            base[key] = value


def validate_settings(settings):
    """Raise ValueError when a setting is out of range."""
    mdx_params = settings["mdx_params"]
    for key, expected in FIXED_MDX_PARAMS.items():
        if mdx_params[key] != expected:
            raise ValueError(f"mdx_params.{key} must be {expected}, got {mdx_params[key]}")

    chunk_duration = mdx_params["chunk_duration"]
    overlap_duration = mdx_params["overlap_duration"]
    if chunk_duration <= 0:
        raise ValueError("The chunk_duration must be greater than 0.")
    if overlap_duration < 0 or overlap_duration >= chunk_duration:
        raise ValueError("The overlap_duration must be non-negative and shorter than chunk_duration.")

    if settings["log_level"] not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        raise ValueError(f"Unknown log_level: {settings['log_level']}")
    if not settings["model_urls"]:
        raise ValueError("At least one model URL is required.")
    if settings["download_timeout"] <= 0:
        raise ValueError("The download_timeout must be greater than 0.")


def load_settings(config_path=None, overrides=None):
    """
    Build the effective settings.

    Args:
        config_path (str): YAML file merged over the defaults. Falls back to $MDX_SPLIT_CONFIG.
        overrides (dict): Values merged last, e.g. from command line flags.

    Returns:
        dict: Validated settings
    """
    settings = copy.deepcopy(DEFAULT_SETTINGS)

    config_path = config_path or os.environ.get(CONFIG_ENV_VAR)
    if config_path:
        with open(config_path, "r", encoding="utf-8") as f:
            file_settings = yaml.safe_load(f) or {}
        if not isinstance(file_settings, dict):
            raise ValueError(f"Config file {config_path} must contain a mapping")
        _merge(settings, file_settings)

    env_model_dir = os.environ.get(MODEL_DIR_ENV_VAR)
    if env_model_dir:
        if not os.path.exists(env_model_dir):
            raise FileNotFoundError(f"The specified model directory does not exist: {env_model_dir}")
        settings["model_file_dir"] = env_model_dir

    if overrides:
        _merge(settings, overrides)

    validate_settings(settings)
    return settings
