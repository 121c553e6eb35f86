"""
CDP Client — Central Configuration
Ledger endpoints, credentials, timeouts and monitoring settings.

Only main.py reads these values; every component receives them explicitly.
"""
import os
from dotenv import load_dotenv

load_dotenv()

# ── Ledger ───────────────────────────────────────────────────────────
LEDGER_MODE          = os.getenv('LEDGER_MODE', 'paper')   # paper | web3
RPC_URL              = os.getenv('RPC_URL', 'http://127.0.0.1:8545')
PRIVATE_KEY          = os.getenv('PRIVATE_KEY', '')
CONTRACTS_FILE       = os.getenv('CONTRACTS_FILE', '')     # JSON: addresses + ABIs
CONFIRMATION_TIMEOUT = float(os.getenv('CONFIRMATION_TIMEOUT', '120'))  # seconds

# ── Paper Ledger ─────────────────────────────────────────────────────
PAPER_BLOCK_TIME     = float(os.getenv('PAPER_BLOCK_TIME', '0.05'))     # seconds per "block"
PAPER_ETH_BALANCE    = float(os.getenv('PAPER_ETH_BALANCE', '100'))
PAPER_GEM_BALANCE    = float(os.getenv('PAPER_GEM_BALANCE', '1000'))    # per token

# ── Query API ────────────────────────────────────────────────────────
QUERY_API_URL        = os.getenv('QUERY_API_URL', 'https://api.makerdao.com/v1')
QUERY_API_TIMEOUT    = float(os.getenv('QUERY_API_TIMEOUT', '10'))

# ── Transaction Journal ──────────────────────────────────────────────
TX_JOURNAL_PATH      = os.getenv('TX_JOURNAL_PATH', 'data/tx_journal.csv')

# ── System ──────────────────────────────────────────────────────────
LOG_LEVEL            = os.getenv('LOG_LEVEL', 'INFO')
LOG_PATH             = os.getenv('LOG_PATH', 'logs/cdp_client.log')

# ── Telegram ─────────────────────────────────────────────────────────
TELEGRAM_TOKEN       = os.getenv('TELEGRAM_TOKEN', '')
TELEGRAM_CHAT_ID     = os.getenv('TELEGRAM_CHAT_ID', '')
