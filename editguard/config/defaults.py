"""Default configuration values for editguard."""

from typing import Any


def get_default_config() -> dict[str, Any]:
    """Return the default configuration dictionary."""
    return {
        # Unknown-change handling
        "enable_unknown_change_detection": True,
        # strict | warn | auto-integrate | ignore (aliases: reject, integrate)
        "unknown_change_strategy": "warn",
        "scan_workspace_on_detect": True,
        # Checkpoint retention
        "keep_all_checkpoints": False,
        "max_checkpoint_age_days": 7,
        # Snapshot retention used by cleanup() without an explicit cutoff
        "snapshot_retention_days": 30,
        # Extra ignore patterns layered on top of the built-in defaults
        "exclude_from_checking": [
            "*.log",
            "*.tmp",
            "*_generated.*",
            "node_modules/",
        ],
        # Script-generated data is usually JSON; hand-edited manifests such as
        # package.json are hidden too while this stays on.
        "ignore_json_files": True,
        # Human-readable diff files written next to snapshot records
        "save_diff_files": True,
        "diff_file_format": "md",
        "history_default_limit": 50,
    }
