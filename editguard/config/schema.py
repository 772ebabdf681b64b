from __future__ import annotations

from copy import deepcopy
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

UnknownChangeStrategy = Literal["strict", "warn", "auto-integrate", "ignore"]

STRATEGY_ALIASES: dict[str, str] = {
    "reject": "strict",
    "integrate": "auto-integrate",
    "auto_integrate": "auto-integrate",
}


def normalize_strategy(value: Any) -> Any:
    """Map strategy aliases onto their canonical names."""
    if isinstance(value, str):
        lowered = value.strip().lower()
        return STRATEGY_ALIASES.get(lowered, lowered)
    return value


def deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    """Deep-merge updates into base without mutating inputs.

    - Keys present in updates with non-None values are merged/overwritten
    - Keys present in updates with None values are skipped (preserve base value)
    - Keys not present in updates are preserved from base
    """
    result = deepcopy(base)
    for key, value in updates.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        elif key in result and value is None:
            # Treat None as "not provided" so lower layers keep their values
            continue
        else:
            result[key] = value
    return result


def normalize_config(config: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of config with legacy spellings rewritten.

    Raises:
        ValueError: If the top-level value is not a mapping.
    """
    if not isinstance(config, dict):
        raise ValueError("Configuration root must be a JSON object")
    normalized = deepcopy(config)
    if "unknown_change_strategy" in normalized:
        normalized["unknown_change_strategy"] = normalize_strategy(
            normalized["unknown_change_strategy"]
        )
    # Older files spelled the retention flag in camelCase
    if "keepAllCheckpoints" in normalized:
        normalized.setdefault(
            "keep_all_checkpoints", normalized.pop("keepAllCheckpoints")
        )
    return normalized


class SnapshotConfig(BaseModel):
    enable_unknown_change_detection: bool = True
    unknown_change_strategy: UnknownChangeStrategy = "warn"
    scan_workspace_on_detect: bool = True
    keep_all_checkpoints: bool = False
    max_checkpoint_age_days: float = Field(default=7, ge=0)
    snapshot_retention_days: float = Field(default=30, ge=0)
    exclude_from_checking: list[str] = Field(default_factory=list)
    ignore_json_files: bool = True
    save_diff_files: bool = True
    diff_file_format: Literal["md", "diff", "txt"] = "md"
    history_default_limit: int = Field(default=50, ge=1)

    model_config = ConfigDict(extra="ignore")

    @field_validator("unknown_change_strategy", mode="before")
    @classmethod
    def _canonical_strategy(cls, value: Any) -> Any:
        return normalize_strategy(value)

    @property
    def detection_enabled(self) -> bool:
        return (
            self.enable_unknown_change_detection
            and self.unknown_change_strategy != "ignore"
        )


class ConfigValidationError(Exception):
    """Structured configuration validation error."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


def validate_config(config: dict[str, Any]) -> SnapshotConfig:
    """Validate configuration using the pydantic schema.

    Raises:
        ConfigValidationError: With structured list of human-readable error messages.
    """
    try:
        return SnapshotConfig.model_validate(normalize_config(config))
    except ValidationError as e:
        raise ConfigValidationError(_extract_validation_errors(e)) from e
    except ValueError as e:
        raise ConfigValidationError([str(e)]) from e


def _extract_validation_errors(exc: ValidationError) -> list[str]:
    """Convert Pydantic ValidationError to list of human-readable messages."""
    errors = []
    for err in exc.errors():
        loc = ".".join(str(x) for x in err["loc"]) if err["loc"] else "config"
        msg = err["msg"]

        if msg.startswith("Value error, "):
            msg = msg[len("Value error, ") :]

        if err["type"] == "literal_error" and loc == "unknown_change_strategy":
            errors.append(
                f"Unknown strategy at '{loc}'. "
                "Allowed: strict, warn, auto-integrate, ignore"
            )
        elif err["type"] == "missing":
            errors.append(f"Missing required field: {loc}")
        elif err["type"] in ("string_type", "list_type"):
            errors.append(f"Expected {err['type'].split('_')[0]} at '{loc}'")
        elif err["type"] in ("int_type", "int_parsing"):
            errors.append(f"Expected integer at '{loc}'")
        elif err["type"] in ("bool_type", "bool_parsing"):
            errors.append(f"Expected boolean at '{loc}'")
        else:
            errors.append(f"{loc}: {msg}")

    return errors if errors else ["Invalid configuration"]
