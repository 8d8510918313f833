#!/usr/bin/env python3
from typing import Dict, Tuple, Union

# --- ANSI Color Codes ---
C_GREEN = '\033[92m'
C_RED = '\033[91m'
C_YELLOW = '\033[93m'
C_BLUE = '\033[94m'
C_RESET = '\033[0m'

# --- Aggregator API Configuration ---
AGGREGATOR_API_BASE_URL = 'https://web3.okx.com'
AGGREGATOR_API_PREFIX = '/api/v5/dex/aggregator'
AGGREGATOR_GAS_PRICE_PATH = '/api/v5/dex/pre-transaction/gas-price'
AGGREGATOR_REQUEST_TIMEOUT = 30.0

# Signed header names
HEADER_ACCESS_KEY = 'X-ACCESS-KEY'
HEADER_ACCESS_SIGN = 'X-ACCESS-SIGN'
HEADER_ACCESS_TIMESTAMP = 'X-ACCESS-TIMESTAMP'
HEADER_ACCESS_PASSPHRASE = 'X-ACCESS-PASSPHRASE'
HEADER_ACCESS_PROJECT = 'X-ACCESS-PROJECT'

# --- Environment Variable Names ---
AGGREGATOR_API_KEY_ENV_VAR = 'AGGREGATOR_API_KEY'
AGGREGATOR_SECRET_KEY_ENV_VAR = 'AGGREGATOR_SECRET_KEY'
AGGREGATOR_PASSPHRASE_ENV_VAR = 'AGGREGATOR_PASSPHRASE'
AGGREGATOR_PROJECT_ID_ENV_VAR = 'AGGREGATOR_PROJECT_ID'
AGGREGATOR_BASE_URL_ENV_VAR = 'AGGREGATOR_BASE_URL'
EVM_PRIVATE_KEY_ENV_VAR = 'EVM_PRIVATE_KEY'
EVM_WALLET_ADDRESS_ENV_VAR = 'EVM_WALLET_ADDRESS'
CHAIN_ID_ENV_VAR = 'CHAIN_ID'
RPC_URLS_ENV_VAR = 'RPC_URLS'
TELEGRAM_BOT_TOKEN_ENV_VAR = 'TELEGRAM_BOT_TOKEN'
TELEGRAM_CHAT_ID_ENV_VAR = 'TELEGRAM_CHAT_ID'

# --- Chain Configuration ---
DEFAULT_CHAIN_ID = 56

CHAIN_CONFIG: Dict[int, Dict[str, Union[str, int]]] = {
    1: {
        'name': 'ethereum',
        'nativeSymbol': 'ETH',
    },
    56: {
        'name': 'bsc',
        'nativeSymbol': 'BNB',
        'approveSpender': '0x9b9efa5efa731ea9bbb0369e91fa17abf249cfd4',
    },
    8453: {
        'name': 'base',
        'nativeSymbol': 'ETH',
    },
}

DEFAULT_RPC_NODES: Dict[int, Tuple[Tuple[str, str], ...]] = {
    56: (
        ('48Club RPC', 'https://rpc.48.club/'),
        ('Binance Dataseed', 'https://bsc-dataseed.binance.org/'),
    ),
}

# Aggregators use this address for the chain's native currency.
NATIVE_TOKEN_ADDRESS = '0xeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeee'
MAX_UINT256 = 2 ** 256 - 1

# --- Address Guard ---
ADDRESS_LENGTH = 42
# Anything longer than this was almost certainly coerced from a large integer.
ADDRESS_COERCION_LENGTH = 50

# --- Gas Configuration (wei / units) ---
GAS_PRICE_FALLBACK_MIN = 80_000_000       # 0.08 gwei
GAS_PRICE_FALLBACK_NORMAL = 100_000_000   # 0.10 gwei
GAS_PRICE_FALLBACK_MAX = 150_000_000      # 0.15 gwei

GAS_LIMIT_COMPLEX = 500_000
GAS_LIMIT_CONTRACT_CALL = 250_000
GAS_LIMIT_SIMPLE = 100_000
GAS_LIMIT_COMPLEX_THRESHOLD = 200
GAS_LIMIT_CONTRACT_THRESHOLD = 10

# --- Retry Policy ---
RETRY_DELAY_SCHEDULE: Tuple[float, ...] = (15.0, 25.0)
APPROVAL_MAX_ATTEMPTS = 3
SWAP_MAX_ATTEMPTS = 2
QUOTE_MAX_ATTEMPTS = 3
APPROVAL_SETTLE_DELAY = 2.0

TRANSIENT_NETWORK_KEYWORDS: Tuple[str, ...] = (
    'connection refused',
    'econnrefused',
    'connection reset',
    'cannot connect to host',
    'timeout',
    'timed out',
    'etimedout',
    'network socket disconnected',
    'socket hang up',
    'server disconnected',
    'enotfound',
    'name or service not known',
    'temporary failure in name resolution',
    'nodename nor servname',
    'dns',
    'tls connection',
    'ssl',
    'certificate verify failed',
)

# --- RPC Node Pool ---
RPC_REQUEST_TIMEOUT = 8.0
NODE_UNBAN_BASE_SECONDS = 30.0
NODE_UNBAN_MAX_SECONDS = 600.0
NODE_UNREACHABLE_AFTER_FAILURES = 3

# --- Confirmation Polling ---
CONFIRM_POLL_INTERVAL = 2.0
CONFIRM_MAX_ATTEMPTS = 30

# --- Strategy Lifecycle ---
RECOVERY_STALENESS_SECONDS = 5 * 60
MIN_TICK_WIDTH = 10
MAX_TICK_WIDTH = 5000
MAX_AGGREGATOR_SLIPPAGE_PCT = 1.0
HIGH_LIQUIDITY_SLIPPAGE_PCT = 50.0
TICKS_PER_PERCENT = 100
CHECKPOINT_KEY_PREFIX = 'strategy:'

TICK_SPACING_BY_FEE: Dict[int, int] = {
    100: 1,
    500: 10,
    2500: 50,
    10000: 200,
}
DEFAULT_TICK_SPACING = 10
DEFAULT_FEE_TIER = 100

# --- Storage ---
DEFAULT_DB_PATH = 'data/strategy_checkpoints.db'
DEFAULT_LOG_FILE = 'logs/dex_strategy.log'
