"""Hard-coded constants not meant to be user-configurable."""

STATE_DIR_NAME = ".editguard"
IGNORE_FILE_NAME = ".snapshotignore"
CONFIG_FILE_NAME = "config.json"

SNAPSHOTS_DIR_NAME = "snapshots"
MILESTONES_DIR_NAME = "milestones"
CHECKPOINTS_DIR_NAME = "checkpoints"
INDEX_FILE_NAME = "index.json"
CHECKPOINT_METADATA_FILE_NAME = "checkpoint-metadata.json"
LATEST_CHECKPOINT_DIR_NAME = "latest"
DIFFS_DIR_NAME = "diffs"

INTEGRATION_TOOL_NAME = "UnknownChangeIntegration"
REVERSE_TOOL_NAME = "ReverseOp"

# Length of the truncated sha1 used as content token
HASH_LENGTH = 13
ID_LENGTH = 16
