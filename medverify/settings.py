"""
Configuration utilities for MedVerify.

Loads the verification configuration from YAML, fills gaps from built-in
defaults and applies ``MEDVERIFY_*`` environment overrides.
"""

import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, Tuple

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/medverify.yaml"

# env var -> (config path, type)
ENV_OVERRIDES: Dict[str, Tuple[Tuple[str, ...], Callable]] = {
    "MEDVERIFY_REGISTRY_URL": (("registry", "url"), str),
    "MEDVERIFY_PAGE_LOAD_TIMEOUT": (("timeouts", "page_load"), float),
    "MEDVERIFY_SEARCH_TIMEOUT": (("timeouts", "search"), float),
    "MEDVERIFY_RESULTS_TIMEOUT": (("timeouts", "results"), float),
    "MEDVERIFY_PARSE_TIMEOUT": (("timeouts", "parse"), float),
    "MEDVERIFY_ACQUIRE_TIMEOUT": (("timeouts", "acquire"), float),
    "MEDVERIFY_MAX_POOL_SIZE": (("session_pool", "max_sessions"), int),
    "MEDVERIFY_CACHE_TTL": (("cache", "ttl_seconds"), float),
    "MEDVERIFY_MAX_RETRIES": (("retry", "max_attempts"), int),
    "MEDVERIFY_BROWSER_PATH": (("session_pool", "executable_path"), str),
    "MEDVERIFY_HEADLESS": (("session_pool", "headless"), lambda v: v.lower() in ("1", "true", "yes")),
    "MEDVERIFY_NAME_THRESHOLD": (("matching", "threshold"), float),
    "MEDVERIFY_LOG_LEVEL": (("logging", "level"), str),
}


def get_default_verification_config() -> Dict[str, Any]:
    """
    Get default verification configuration.

    Returns:
        Default configuration dictionary
    """
    return {
        "registry": {
            "name": "sacs",
            "url": "https://sistemas.sacs.gob.ve/consultas/prfsnal_salud",
            "search_functions": {
                "national-id": "xajax_getPrfsnalByCed",
                "professional-id": "xajax_getPrfsnalByMat",
            },
            "user_agent": (
                "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
                "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
            ),
            "challenge_markers": [
                "g-recaptcha",
                "hcaptcha",
                "cf-challenge",
                "challenge-platform",
                "captcha",
                "verifique que no es un robot",
                "access denied",
            ],
        },
        "timeouts": {
            "page_load": 60.0,
            "search_form": 10.0,
            "results": 15.0,
            "specialty": 5.0,
            "search": 90.0,
            "parse": 5.0,
            "acquire": 30.0,
            "launch": 30.0,
        },
        "session_pool": {
            "max_sessions": 2,
            "max_uses_per_session": 50,
            "max_consecutive_failures": 2,
            "headless": True,
            "executable_path": None,
            "browser_args": [
                "--no-sandbox",
                "--disable-setuid-sandbox",
                "--disable-dev-shm-usage",
                "--disable-gpu",
                "--no-first-run",
                "--ignore-certificate-errors",
            ],
        },
        "retry": {
            "max_attempts": 3,
            "base_delay": 1.0,
            "max_delay": 15.0,
            "jitter": True,
        },
        "cache": {
            "ttl_seconds": 3600.0,
            "max_entries": 1000,
        },
        "matching": {
            "threshold": 0.8,
            "min_token_similarity": 0.6,
            "extra_token_penalty": 0.2,
            "ignore_tokens": ["DE", "DEL", "LA", "LAS", "LOS", "Y", "DA", "DI"],
        },
        "classification": {
            "profession_table": None,
        },
        "parser": {
            "max_candidates": 10,
            "document_labels": ["NUMERO DE CEDULA", "CEDULA"],
            "name_labels": ["NOMBRE Y APELLIDO", "NOMBRES Y APELLIDOS", "NOMBRE"],
            "profession_headers": ["PROFESION"],
            "license_headers": ["MATRICULA", "REGISTRO"],
            "date_headers": ["FECHA"],
            "tome_headers": ["TOMO"],
            "folio_headers": ["FOLIO"],
            "status_headers": ["ESTATUS", "ESTADO", "CONDICION"],
            "postgraduate_markers": ["POSTGRADO"],
            "specialty_markers": ["ESPECIALISTA EN"],
            "no_results_markers": [
                "NO SE ENCONTRARON",
                "NO SE ENCONTRO",
                "NO EXISTE",
                "NO SE ENCUENTRA REGISTRAD",
                "NO POSEE REGISTRO",
            ],
        },
        "audit": {
            "enabled": True,
            "db_path": "data/medverify_audit.db",
        },
        "stats": {
            "error_window_seconds": 900,
        },
        "logging": {
            "level": "INFO",
            "file": "logs/medverify.log",
        },
    }


def merge_configs(base_config: Dict[str, Any], override_config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merge two configuration dictionaries.

    Args:
        base_config: Base configuration
        override_config: Override configuration

    Returns:
        Merged configuration
    """
    merged = base_config.copy()

    for key, value in override_config.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = merge_configs(merged[key], value)
        else:
            merged[key] = value

    return merged


def apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Apply ``MEDVERIFY_*`` environment variables on top of a configuration.

    A ``.env`` file in the working directory is honored.

    Args:
        config: Configuration dictionary

    Returns:
        Configuration with environment overrides applied
    """
    load_dotenv()
    result = merge_configs(config, {})

    for env_name, (path, cast) in ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw is None or raw == "":
            continue
        try:
            value = cast(raw)
        except ValueError:
            logger.warning(f"Ignoring {env_name}={raw!r}: not a valid {getattr(cast, '__name__', 'value')}")
            continue

        section = dict(result.get(path[0]) or {})
        section[path[1]] = value
        result[path[0]] = section
        logger.debug(f"Applied environment override {env_name}")

    return result


def load_verification_config(config_path: str = DEFAULT_CONFIG_PATH,
                             use_env: bool = True) -> Dict[str, Any]:
    """
    Load verification configuration from YAML file.

    Args:
        config_path: Path to configuration file
        use_env: Whether to apply environment overrides

    Returns:
        Configuration dictionary
    """
    config = get_default_verification_config()
    config_file = Path(config_path)

    if not config_file.exists():
        logger.warning(f"Configuration file {config_path} not found, using defaults")
    else:
        with open(config_file, "r", encoding="utf-8") as f:
            file_config = yaml.safe_load(f) or {}
        config = merge_configs(config, file_config)
        logger.info(f"Loaded verification configuration from {config_path}")

    if use_env:
        config = apply_env_overrides(config)

    return config


def validate_verification_config(config: Dict[str, Any]) -> bool:
    """
    Validate verification configuration.

    Args:
        config: Configuration dictionary

    Returns:
        True if configuration is valid, False otherwise
    """
    required_sections = ["registry", "timeouts", "session_pool", "retry", "cache", "matching"]

    for section in required_sections:
        if section not in config:
            logger.error(f"Missing required configuration section: {section}")
            return False

    if not config["registry"].get("url"):
        logger.error("registry.url must be set")
        return False

    for name, value in config["timeouts"].items():
        if not isinstance(value, (int, float)) or value <= 0:
            logger.error(f"timeouts.{name} must be a positive number")
            return False

    max_sessions = config["session_pool"].get("max_sessions", 0)
    if not isinstance(max_sessions, int) or max_sessions < 1:
        logger.error("session_pool.max_sessions must be a positive integer")
        return False

    max_attempts = config["retry"].get("max_attempts", 0)
    if not isinstance(max_attempts, int) or max_attempts < 1:
        logger.error("retry.max_attempts must be a positive integer")
        return False

    threshold = config["matching"].get("threshold", 0.8)
    if not isinstance(threshold, (int, float)) or not 0 <= threshold <= 1:
        logger.error("matching.threshold must be a number between 0 and 1")
        return False

    if config["cache"].get("ttl_seconds", 0) <= 0:
        logger.error("cache.ttl_seconds must be positive")
        return False

    logger.info("Configuration validation passed")
    return True
