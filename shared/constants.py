"""
Shared constants used across the platform.
"""

# Size units
KIB = 1024
MIB = 1024 * KIB
GIB = 1024 * MIB

# Quota
DEFAULT_QUOTA_BYTES = 1 * GIB

# Upload settings
# The bucket policy and the upload surface share this ceiling.
MAX_UPLOAD_BYTES = 50 * MIB
DEFAULT_PARALLEL_UPLOADS = 4
MAX_PARALLEL_UPLOADS = 8
UPLOAD_CHUNK_SIZE = 1 * MIB
MAX_NAME_LENGTH = 255

ALLOWED_MIME_TYPES = [
    "audio/mpeg", "audio/wav", "audio/x-wav", "audio/ogg", "audio/flac",
    "audio/x-flac", "audio/aac", "audio/mp4", "audio/x-m4a",
    "image/jpeg", "image/png", "image/gif", "image/webp",
    "application/pdf",
    "video/mp4", "video/quicktime", "video/x-msvideo",
]

ALLOWED_EXTENSIONS = [
    ".mp3", ".wav", ".ogg", ".flac", ".aac", ".m4a",
    ".jpg", ".jpeg", ".png", ".gif", ".webp",
    ".pdf",
    ".mp4", ".mov", ".avi",
]

# Extensions the platform guesses differently than the stdlib does
EXTRA_MIME_TYPES = {
    ".flac": "audio/flac",
    ".m4a": "audio/mp4",
    ".aac": "audio/aac",
    ".ogg": "audio/ogg",
    ".webp": "image/webp",
}

# Signed URLs
DEFAULT_SIGNED_URL_TTL = 3600  # seconds
MAX_SIGNED_URL_TTL = 7 * 24 * 3600  # SigV4 presign ceiling

# Duration recovery
DURATION_PROBE_TIMEOUT = 10  # seconds
DURATION_PROBE_WORKERS = 2
UNKNOWN_DURATION = None

# Listening presence
HEARTBEAT_INTERVAL_SEC = 30
PRESENCE_TTL_SEC = 90

# Storage layout
DEFAULT_BUCKET = "project_files"

# S3 Provider endpoints
CLOUDFLARE_R2_ENDPOINT_TEMPLATE = "https://{account_id}.r2.cloudflarestorage.com"
BACKBLAZE_B2_ENDPOINT_TEMPLATE = "https://s3.{region}.backblazeb2.com"
AWS_S3_ENDPOINT_TEMPLATE = "https://s3.{region}.amazonaws.com"

# Configuration paths
DEFAULT_CONFIG_DIR = "~/.config/stemvault"
DEFAULT_DATA_DIR = "~/.local/share/stemvault"
DEFAULT_DB_FILENAME = "library.db"
CONFIG_FILENAME = "config.json"
ENV_PREFIX = "STEMVAULT_"

# Network Settings
DEFAULT_NETWORK_TIMEOUT = 30  # seconds
DEFAULT_DOWNLOAD_CHUNK_SIZE = 8192  # bytes
