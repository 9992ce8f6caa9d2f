import logging
import os
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

from iterqa_agent.browser.config import DEFAULT_CONFIG
from iterqa_agent.data import ControllerConfig, RetryPolicy
from iterqa_agent.exceptions import ValidationError


def find_config_file(args_config: Optional[str] = None, search_dirs=None) -> str:
    """Locate the configuration file.

    An explicit path wins; otherwise ``config/config.yaml`` and
    ``config.yaml`` are tried in the working directory and then in each of
    ``search_dirs``.
    """
    if args_config:
        if os.path.isfile(args_config):
            logging.info(f"Using specified config file: {args_config}")
            return args_config
        raise FileNotFoundError(f"Specified config file not found: {args_config}")

    dirs = [os.getcwd()] + list(search_dirs or [])
    default_paths = [os.path.join(d, "config", "config.yaml") for d in dirs]
    default_paths += [os.path.join(d, "config.yaml") for d in dirs]
    for path in default_paths:
        if os.path.isfile(path):
            logging.info(f"Auto-discovered config file: {path}")
            return path

    searched = "\n".join(f"   - {p}" for p in default_paths)
    raise FileNotFoundError(f"Config file does not exist, searched:\n{searched}")


def load_yaml(path: str) -> Dict[str, Any]:
    """Load the YAML config and the ``.env`` file next to the working directory."""
    load_dotenv()
    with open(path, "r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f) or {}
    if not isinstance(cfg, dict):
        raise ValidationError(f"{path}: top level of the config must be a mapping")
    return cfg


def resolve_path(path: Optional[str], base_dir: Optional[str] = None) -> Optional[str]:
    """Resolve a path from the config file against the config file's folder."""
    if not path or os.path.isabs(path) or not base_dir:
        return path
    return os.path.join(base_dir, path)


def validate_and_build_llm_config(cfg: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Build the LLM settings; environment variables take priority over the file.

    Returns None when no API key is configured, which disables the
    AI-backed collaborators.
    """
    llm_cfg_raw = cfg.get("llm_config") or {}
    api_key = os.getenv("OPENAI_API_KEY") or llm_cfg_raw.get("api_key", "")
    base_url = os.getenv("OPENAI_BASE_URL") or llm_cfg_raw.get("base_url", "")
    if not api_key:
        logging.warning("LLM API key not configured (OPENAI_API_KEY or llm_config.api_key); AI features disabled")
        return None

    llm_config = {
        "api": "openai",
        "model": llm_cfg_raw.get("model", "gpt-4o-mini"),
        "api_key": api_key,
        "base_url": base_url or "https://api.openai.com/v1",
        "temperature": llm_cfg_raw.get("temperature", 0.1),
    }
    api_key_masked = f"{api_key[:8]}...{api_key[-4:]}" if len(api_key) > 12 else "***"
    logging.info(
        f"LLM configured: model={llm_config['model']}, base_url={llm_config['base_url']}, key={api_key_masked} "
        f"({'environment' if os.getenv('OPENAI_API_KEY') else 'config file'})"
    )
    return llm_config


def build_backend_config(cfg: Dict[str, Any]) -> Dict[str, Any]:
    backend_raw = cfg.get("backend") or {}
    backend = {**DEFAULT_CONFIG, **{k: v for k, v in backend_raw.items() if k in DEFAULT_CONFIG}}
    if os.getenv("ITERQA_BACKEND_URL"):
        backend["base_url"] = os.getenv("ITERQA_BACKEND_URL")
    backend["timeout"] = float(backend["timeout"])
    return backend


def build_retry_policy(raw: Optional[Dict[str, Any]]) -> RetryPolicy:
    """Retry settings from config. ``retry_delay_ms``/``max_retry_delay_ms`` are accepted in milliseconds."""
    raw = dict(raw or {})
    if "retry_delay_ms" in raw:
        raw["retry_delay"] = raw.pop("retry_delay_ms") / 1000
    if "max_retry_delay_ms" in raw:
        raw["max_retry_delay"] = raw.pop("max_retry_delay_ms") / 1000
    try:
        return RetryPolicy(**raw)
    except ValueError as e:
        raise ValidationError(f"Invalid retry settings: {e}") from e


def build_controller_config(cfg: Dict[str, Any], interactive: Optional[bool] = None) -> ControllerConfig:
    target = cfg.get("target") or {}
    controller_raw = dict(cfg.get("controller") or {})
    if target.get("url"):
        controller_raw["url"] = target["url"]
    if interactive is not None:
        controller_raw["interactive"] = interactive
    controller_raw["execution_retry"] = build_retry_policy(controller_raw.get("execution_retry"))
    try:
        return ControllerConfig(**controller_raw)
    except ValueError as e:
        raise ValidationError(f"Invalid controller settings: {e}") from e
