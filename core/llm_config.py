import json

from core.paths import CONFIG_DIR, MODELS_DIR

DEFAULT_CONFIG = {
    "models_dir": str(MODELS_DIR),
    "current_model_filename": "",
    "answer_style": "simple",
    "auto_save": False,
    "inference_timeout": 60.0,
    "n_ctx": 2048,
    "n_gpu_layers": -1,
    "max_tokens": 512,
    "temp": 0.7,
    "top_p": 0.9,
    # None = detect from the model filename
    "small_context": None,
}

ANSWER_STYLES = ("simple", "detailed")

CONFIG_PATH = CONFIG_DIR / "llm_config.json"


def load_config(path=None):
    config_path = path or CONFIG_PATH
    config = DEFAULT_CONFIG.copy()
    if config_path.exists():
        try:
            with config_path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
                if isinstance(data, dict):
                    config.update({k: v for k, v in data.items() if k in DEFAULT_CONFIG})
        except (OSError, ValueError):
            pass
    if config.get("answer_style") not in ANSWER_STYLES:
        config["answer_style"] = DEFAULT_CONFIG["answer_style"]
    try:
        config["inference_timeout"] = float(config["inference_timeout"])
    except (TypeError, ValueError):
        config["inference_timeout"] = DEFAULT_CONFIG["inference_timeout"]
    config["auto_save"] = bool(config.get("auto_save"))
    return config


def save_config(config, path=None):
    config_path = path or CONFIG_PATH
    persisted = {k: v for k, v in dict(config).items() if k in DEFAULT_CONFIG}
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        json.dump(persisted, handle, indent=2)
