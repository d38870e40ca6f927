"""Project-wide constants (chunk sizes, timeouts, ledger paths)."""

DEFAULT_CHUNK_SIZE_BYTES: int = 1024 * 1024  # 1 MiB default chunk size
BLOCK_SIZE_LIMIT_BYTES: int = 4 * 1024 * 1024  # upper bound for "auto" chunk size

DEFAULT_CONFIRMATION_TIMEOUT_MS: int = 60_000
DEFAULT_POLL_INTERVAL_MS: int = 1_000
DEFAULT_RUN_TIMEOUT_MS: int = 30 * 60 * 1000
DEFAULT_MAX_RETRIES_PER_CHUNK: int = 3
DEFAULT_GAS_MULTIPLIER: float = 1.5
DEFAULT_READINESS_TIMEOUT_SECONDS: int = 300

LEDGER_HTTP_TIMEOUT_SECONDS: float = 30.0
LEDGER_READ_MAX_RETRIES: int = 5
LEDGER_RETRY_BASE_DELAY_SECONDS: float = 0.5

# Buffered inclusion events kept per endpoint subscription
EVENT_BUFFER_SIZE: int = 4096

CHUNK_MESSAGE_TYPE_URL = "/datachain.datastore.v1.MsgCreateStoredChunk"
MANIFEST_MESSAGE_TYPE_URL = "/metachain.metastore.v1.MsgCreateStoredManifest"

STORED_CHUNK_PATH = "/datachain/datastore/v1/stored_chunk/{key}"
STORED_MANIFEST_PATH = "/metachain/metastore/v1/stored_manifest/{key}"
SIMULATE_PATH = "/cosmos/tx/v1beta1/simulate"
BROADCAST_PATH = "/cosmos/tx/v1beta1/txs"

RPC_STATUS_PATH = "/status"
RPC_UNCONFIRMED_TXS_PATH = "/num_unconfirmed_txs"
RPC_TX_PATH = "/tx"
RPC_WEBSOCKET_PATH = "/websocket"
TX_EVENT_QUERY = "tm.event='Tx'"
