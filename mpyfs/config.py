"""
Configuration for mpyfs.

Device settings (the selected serial port) live in a small JSON file next to
this module, project layout settings in ``mpyfs.json`` at the project root.
"""
from pathlib import Path
import json
import logging

logger = logging.getLogger(__name__)

CONFIG_FILE = Path(__file__).parent / ".mpyfs_config.json"
PROJECT_CONFIG_NAME = "mpyfs.json"

# Constants for file modes (from stat module)
S_IFDIR = 0x4000  # Directory
S_IFREG = 0x8000  # Regular file

# Timeout classes, in seconds
MP_TIMEOUT_SHORT = 10     # Interactive commands: probe, reset, touch, mkdir, rename
MP_TIMEOUT_LONG = 100     # Bulk commands: full listing, delete batches, checksums
MP_TIMEOUT_CP_FILE = 120  # Copying a single file in either direction

FS_OPERATION_DELAY = 0.0  # Delay in seconds after each mutating command; slow boards like 0.3

DEFAULT_IGNORED_PATTERNS = (
    "*.pyc",
    "*.pyo",
    "__pycache__",
    "*~",
    "*.swp",
    ".DS_Store",
    "Thumbs.db",
)

# IDE and VCS metadata folders that are never uploaded
METADATA_DIRS = (".idea", ".vscode", ".git")


def load_config(config_file=CONFIG_FILE):
    config_file = Path(config_file)
    if config_file.exists():
        try:
            return json.loads(config_file.read_text())
        except json.JSONDecodeError:
            logger.warning("Config file %s is corrupted. Using defaults.", config_file)
    return {}


def save_config(cfg, config_file=CONFIG_FILE):
    config_file = Path(config_file)
    try:
        config_file.write_text(json.dumps(cfg, indent=2))
    except OSError as e:
        logger.error("Error saving config file %s: %s", config_file, e)
        return False
    return True


def load_project_config(project_root):
    """Read ``mpyfs.json`` from *project_root*, or an empty dict if absent."""
    return load_config(Path(project_root) / PROJECT_CONFIG_NAME)
