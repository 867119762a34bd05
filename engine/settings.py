"""Settings resolution: optional YAML file, environment fallbacks, defaults."""
from __future__ import annotations

import logging
import os
from typing import Any

import yaml

from engine.scoring import ScoringPolicy, policy_from_mapping
from schemas.taxonomy import STRICT_PENALTIES, parse_domain, parse_severity

LOGGER = logging.getLogger(__name__)


class SettingsError(Exception):
    """Raised when the settings file or an override is invalid."""


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def load_yaml(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise SettingsError(f"Cannot load settings from {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise SettingsError(f"Settings file {path} must contain a mapping")
    return data


def resolve_settings(path: str | None = None) -> dict[str, Any]:
    settings = load_yaml(path) if path else {}
    settings.setdefault("graph", {})
    settings.setdefault("execution", {})
    settings.setdefault("scoring", {})
    settings.setdefault("paths", {})
    settings.setdefault("logging", {})
    settings["graph"].setdefault("tenant_id", os.getenv("AZURE_TENANT_ID", ""))
    settings["graph"].setdefault("client_id", os.getenv("AZURE_CLIENT_ID", ""))
    settings["graph"].setdefault("client_secret", os.getenv("AZURE_CLIENT_SECRET", ""))
    settings["graph"].setdefault("base_url", os.getenv("GRAPH_BASE_URL", "https://graph.microsoft.com/v1.0/"))
    settings["graph"].setdefault("request_timeout_seconds", float(os.getenv("GRAPH_REQUEST_TIMEOUT_SECONDS", "30")))
    settings["execution"].setdefault("max_parallel_domains", int(os.getenv("ASSESS_MAX_PARALLEL_DOMAINS", "3")))
    settings["execution"].setdefault("max_parallel_queries", int(os.getenv("ASSESS_MAX_PARALLEL_QUERIES", "4")))
    settings["execution"].setdefault("query_timeout_seconds", float(os.getenv("ASSESS_QUERY_TIMEOUT_SECONDS", "60")))
    settings["execution"].setdefault("run_timeout_seconds", float(os.getenv("ASSESS_RUN_TIMEOUT_SECONDS", "1800")))
    settings["execution"].setdefault("max_retries", int(os.getenv("ASSESS_MAX_RETRIES", "3")))
    settings["execution"].setdefault("backoff_seconds", float(os.getenv("ASSESS_BACKOFF_SECONDS", "2.0")))
    settings["execution"].setdefault("store_snapshots", _env_bool("ASSESS_STORE_SNAPSHOTS", "true"))
    settings["scoring"].setdefault("preset", os.getenv("ASSESS_SCORING_PRESET", "default"))
    settings["scoring"].setdefault("severity_penalties", {})
    settings["scoring"].setdefault("domain_weights", {})
    settings["scoring"].setdefault("max_category_deduction", 40.0)
    settings["scoring"].setdefault("max_recommendations", 5)
    settings["paths"].setdefault("out_dir", os.getenv("ASSESS_OUT_DIR", "out"))
    settings["logging"].setdefault("level", os.getenv("ASSESS_LOG_LEVEL", "INFO"))
    return settings


def build_scoring_policy(settings: dict[str, Any]) -> ScoringPolicy:
    """Translate the ``scoring`` section into a validated ScoringPolicy."""
    scoring = settings.get("scoring", {}) or {}
    preset = str(scoring.get("preset", "default")).lower()
    if preset not in {"default", "strict"}:
        raise SettingsError(f"Unknown scoring preset: {preset!r}")

    try:
        penalties = dict(STRICT_PENALTIES) if preset == "strict" else {}
        for name, value in (scoring.get("severity_penalties") or {}).items():
            penalties[parse_severity(str(name))] = float(value)
        weights = {
            parse_domain(str(name)): float(value)
            for name, value in (scoring.get("domain_weights") or {}).items()
        }
        policy = policy_from_mapping(
            penalties,
            weights,
            max_category_deduction=float(scoring.get("max_category_deduction", 40.0)),
            max_recommendations=int(scoring.get("max_recommendations", 5)),
        )
    except (TypeError, ValueError) as exc:
        raise SettingsError(f"Invalid scoring settings: {exc}") from exc

    LOGGER.debug("Scoring policy: preset=%s penalties=%s", preset, dict(policy.severity_penalties))
    return policy
