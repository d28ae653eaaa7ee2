from os import path
from threading import Lock

APP_NAME = "peerdrop"
USERNAME = ""

DEFAULT_CONFIG_FILE_NAME = "default_config.ini"
LOG_CONFIG_NAME = "log_config.json"

FORMAT = "utf-8"

RELAY_BIND_IP = "0.0.0.0"
RELAY_IP = "localhost"
PORT_RELAY = 8080
# answer the sender with ERROR when a critical envelope has no recipient
NOTIFY_UNKNOWN_RECIPIENT = True

PATH_CURRENT = "."
PATH_LOG = "./logs"
PATH_CONFIG = "./configs"
PATH_CONFIG_FILE = path.join(PATH_CONFIG, DEFAULT_CONFIG_FILE_NAME)
PATH_LOG_CONFIG = path.join(PATH_CONFIG, LOG_CONFIG_NAME)
PATH_DOWNLOAD = path.join(path.expanduser("~"), "Downloads", APP_NAME)

FILE_ERROR_EXT = ".pd-unconfirmeddownload"

debug = False

LOCK_PRINT = Lock()

RECONNECT_INTERVAL = 3.0
RECONNECT_BACKOFF_FACTOR = 1.0
RECONNECT_MAX_INTERVAL = 30.0
RECONNECT_FAILURE_THRESHOLD = 5
PING_INTERVAL = 30.0
REGISTER_TIMEOUT = 6

CHUNK_SIZE_DIRECT = 16 * 1024  # 16 KB
CHUNK_SIZE_RELAYED = 256 * 1024  # 256 KB
HIGH_WATERMARK = 1024 * 1024  # 1 MB
LOW_WATERMARK = 64 * 1024  # 64 KB
MAX_FILE_SIZE = 500 * 1024 * 1024  # 500 MB
DEFAULT_TRANSFER_TIMEOUT = 10
NEGOTIATION_TIMEOUT = 15
MAX_EARLY_CANDIDATES = 32
BACKPRESSURE_TIMEOUT = 60
MAX_PENDING_NOTIFICATIONS = 50
MAX_ENVELOPE_SIZE = 4 * 1024 * 1024  # 4 MB

STUN_SERVERS = (
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
)
DATA_CHANNEL_LABEL = "peerdrop"

VERSIONS = {
    "GLOBAL": 1.0,
    "WIRE": 1.0,
    "FO": 1.0,
}
