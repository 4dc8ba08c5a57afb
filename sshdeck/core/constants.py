"""
Project constants definitions
"""

APP_NAME = "sshdeck"

# ============================================================
# Files under the application directory
# ============================================================

VAULT_FILE_NAME = "vault.bin"
LOG_FILE_NAME = "sshdeck.log"
CONFIG_FILE_NAME = "config.toml"
VAULT_FILE_MODE = 0o600

# ============================================================
# Vault format
# ============================================================

VAULT_MAGIC = b"SSHDECK\x00"
VAULT_FORMAT_VERSION = 1
VAULT_SALT_SIZE = 16
VAULT_NONCE_SIZE = 12  # 96-bit AES-GCM nonce
VAULT_KEY_SIZE = 32  # AES-256
KDF_SCRYPT = 1

# scrypt work factor: n = 2 ** log2_n
DEFAULT_KDF_LOG2_N = 15
DEFAULT_KDF_R = 8
DEFAULT_KDF_P = 1
MIN_KDF_LOG2_N = 10
MAX_KDF_LOG2_N = 22
MAX_KDF_R = 32
MAX_KDF_P = 16
MAX_KDF_MEMORY = 1 << 30  # 128 * r * n bytes

# ============================================================
# Connection defaults
# ============================================================

DEFAULT_SSH_PORT = 22
DEFAULT_SSH_TIMEOUT = 10
DEFAULT_TERM_TYPE = "xterm-256color"
DEFAULT_TERM_COLS = 80
DEFAULT_TERM_ROWS = 24
HISTORY_MAX_ENTRIES = 50

# ============================================================
# Terminal pump
# ============================================================

TERMINAL_READ_SIZE = 4096
TERMINAL_POLL_INTERVAL = 0.2  # seconds
THREAD_JOIN_TIMEOUT = 2.0

# ============================================================
# Transfers
# ============================================================

DEFAULT_CHUNK_SIZE = 32 * 1024
DEFAULT_PROGRESS_INTERVAL = 0.1  # seconds between coalesced progress events
DEFAULT_DIR_MODE = 0o755

# ============================================================
# Logging
# ============================================================

LOG_RETENTION_DAYS = 7
LOG_MAX_ENTRIES = 10_000
DEFAULT_IDLE_TIMEOUT = 15 * 60  # seconds, 0 disables
