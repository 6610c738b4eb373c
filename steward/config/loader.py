"""Read steward.yaml and check its governance sections."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]

_SEED_KEYS = frozenset({"id", "action", "threshold", "condition"})


class ConfigLoadError(ValueError):
    """Raised when steward.yaml cannot be parsed or a governance section is malformed."""


def _check_rule_seeds(seeds: Any, source: Path) -> None:
    """Every ``rules:`` entry must parse the way ``add_rule`` would parse it."""
    # Imported here: the rule module pulls in the ledger and database layers.
    from steward.governance.errors import InvalidRequest
    from steward.governance.ledger import to_amount
    from steward.governance.rules import parse_action, parse_condition

    if seeds is None:
        return
    if not isinstance(seeds, list):
        raise ConfigLoadError(f"{source}: 'rules' must be a list of rule seeds")
    seen: set[str] = set()
    for index, seed in enumerate(seeds):
        where = f"{source}: rules[{index}]"
        if not isinstance(seed, dict):
            raise ConfigLoadError(f"{where} must be a mapping of id, action, threshold and condition")
        unknown = sorted(str(key) for key in set(seed) - _SEED_KEYS)
        if unknown:
            raise ConfigLoadError(f"{where} has unknown keys: {', '.join(unknown)}")
        try:
            parse_action(seed.get("action", "require_approval"))
            parse_condition(seed.get("condition"))
            if seed.get("threshold") is not None:
                to_amount(seed["threshold"], "threshold")
        except InvalidRequest as exc:
            raise ConfigLoadError(f"{where}: {exc.message}") from exc
        rule_id = seed.get("id")
        if rule_id is None:
            continue
        if not isinstance(rule_id, str) or not rule_id.strip():
            raise ConfigLoadError(f"{where}: rule id must be a non-empty string")
        if rule_id in seen:
            raise ConfigLoadError(f"{where} repeats rule id {rule_id!r}")
        seen.add(rule_id)


def _check_api_tokens(api: Any, source: Path) -> None:
    """``api.tokens`` maps bearer tokens to owner identities; tokens never appear in messages."""
    if api is None:
        return
    if not isinstance(api, dict):
        raise ConfigLoadError(f"{source}: 'api' must be a mapping")
    tokens = api.get("tokens")
    if tokens is None:
        return
    if not isinstance(tokens, dict):
        raise ConfigLoadError(f"{source}: api.tokens must map bearer tokens to owner identities")
    for position, (token, identity) in enumerate(tokens.items(), start=1):
        if not isinstance(token, str) or not token.strip():
            raise ConfigLoadError(f"{source}: api.tokens entry {position} has an empty or non-string token")
        if not isinstance(identity, str) or not identity.strip():
            raise ConfigLoadError(f"{source}: api.tokens entry {position} has no owner identity")


class YAMLConfigLoader:
    """Load steward.yaml with deterministic path resolution."""

    DEFAULT_FILENAME = "steward.yaml"
    ENV_VAR = "STEWARD_CONFIG"

    @classmethod
    def resolve_path(cls, cli_path: str | None = None) -> Path:
        """Resolve config path by priority: env -> cli -> cwd default."""
        env_path = os.environ.get(cls.ENV_VAR, "").strip()
        if env_path:
            return Path(env_path)
        if cli_path and cli_path.strip():
            return Path(cli_path.strip())
        return Path.cwd() / cls.DEFAULT_FILENAME

    @classmethod
    def load_dict(cls, path: str | Path | None = None) -> dict[str, Any]:
        """Load steward.yaml into a dict. Missing or empty file yields empty dict.

        Rule seeds and API tokens are checked here so a bad file names the
        offending entry instead of surfacing as a model validation error.
        """
        target = Path(path) if path is not None else cls.resolve_path()
        if not target.exists():
            return {}
        text = target.read_text(encoding="utf-8")
        if not text.strip():
            return {}
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            mark = getattr(exc, "problem_mark", None)
            if mark is not None:
                raise ConfigLoadError(
                    f"Invalid YAML at {target}:{mark.line + 1}:{mark.column + 1}"
                ) from exc
            raise ConfigLoadError(f"Invalid YAML at {target}") from exc
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigLoadError(f"{target}: steward config must be a mapping of sections")
        _check_rule_seeds(data.get("rules"), target)
        _check_api_tokens(data.get("api"), target)
        return data
