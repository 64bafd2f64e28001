from pathlib import Path

# Paths relative to the toolchat package directory
TOOLCHAT_DIR = Path(__file__).resolve().parent

# One level up from toolchat (repo root)
REPO_ROOT = TOOLCHAT_DIR.parent
CONFIG_DIR = REPO_ROOT / "config"

MCP_CONFIG_PATH = CONFIG_DIR / "mcp.yaml"
AI_CONFIG_PATH = CONFIG_DIR / "ai.yaml"

COMPOUND_SEPARATOR = "."

DEFAULT_HANDSHAKE_TIMEOUT = 10.0
DEFAULT_CONNECT_TIMEOUT = 30.0
PROCESS_STOP_TIMEOUT = 5.0

MAX_TOKENS_PER_REQUEST = 4096
MAX_TOOL_ROUNDS = 10
