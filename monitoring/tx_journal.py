import csv
import os
from datetime import datetime

import pandas as pd
from loguru import logger

# ── Configuration ─────────────────────────────────────────────────────
# Relative to where the client runs (usually repo root); main.py overrides it.
TX_JOURNAL_FILE = "data/tx_journal.csv"

JOURNAL_COLUMNS = [
    "tx_hash",           # Primary Key
    "submitted_at",
    "unit",              # tracked workflow label, e.g. "open-lock-draw ETH-A"
    "step",
    "contract",
    "method",
    "ilk",
    # Outcome (filled on settlement)
    "state",
    "block",
    "reason",
    "settled_at",
]


def _ensure_journal_exists(path: str):
    """Create CSV with header if missing."""
    if not os.path.exists(path):
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w", newline="") as f:
            csv.writer(f).writerow(JOURNAL_COLUMNS)


def _append(row: dict, label: str, path: str):
    try:
        _ensure_journal_exists(path)
        with open(path, "a", newline="") as f:
            csv.DictWriter(f, fieldnames=JOURNAL_COLUMNS).writerow(row)
    except OSError as e:
        logger.error(f"[JOURNAL] Failed to log {label}: {e}")


def _row(unit: str, step) -> dict:
    return {
        "tx_hash": step.tx_hash,
        "submitted_at": datetime.now().isoformat(),
        "unit": unit,
        "step": step.index,
        "contract": step.contract,
        "method": step.method,
        "ilk": step.metadata.get("ilk", ""),
        "state": "pending",
        "block": "",
        "reason": "",
        "settled_at": "",
    }


def log_step_submitted(unit: str, step, path: str = None):
    """Append a row for a step that just went pending."""
    _append(_row(unit, step), step.label, path or TX_JOURNAL_FILE)


def log_step_rejected(unit: str, step, path: str = None):
    """
    Append a settled row for a step the ledger refused before broadcast
    (no tx hash, never pending).
    """
    row = _row(unit, step)
    row.update(state=step.state, reason=step.reason, settled_at=row["submitted_at"])
    _append(row, step.label, path or TX_JOURNAL_FILE)


def log_step_settled(step, path: str = None):
    """
    Fill in the outcome of a previously journaled step.
    Uses pandas for the read-modify-write.
    """
    path = path or TX_JOURNAL_FILE
    if not step.tx_hash or not os.path.exists(path):
        return

    try:
        df = pd.read_csv(path, dtype=str, keep_default_na=False)
        mask = df["tx_hash"] == step.tx_hash
        if not mask.any():
            logger.warning(f"[JOURNAL] {step.tx_hash[:10]} not found for update")
            return

        idx = df.index[mask][0]
        df.at[idx, "state"] = step.state
        df.at[idx, "block"] = str(step.block_number or "")
        df.at[idx, "reason"] = step.reason
        df.at[idx, "settled_at"] = datetime.now().isoformat()
        df.to_csv(path, index=False)
    except (OSError, pd.errors.ParserError) as e:
        logger.error(f"[JOURNAL] Failed to update {step.tx_hash[:10]}: {e}")


def journal_listener(unit: str, path: str = None) -> dict:
    """Tracker handlers that journal every step of one unit."""
    def on_error(step, reason):
        if step is None:
            return
        if step.tx_hash:
            log_step_settled(step, path)
        else:
            log_step_rejected(unit, step, path)

    return {
        "pending": lambda step: log_step_submitted(unit, step, path),
        "mined": lambda step: log_step_settled(step, path),
        "error": on_error,
    }


def load_journal(path: str = None) -> pd.DataFrame:
    path = path or TX_JOURNAL_FILE
    if not os.path.exists(path):
        return pd.DataFrame(columns=JOURNAL_COLUMNS)
    return pd.read_csv(path, dtype=str, keep_default_na=False)


def summarize(path: str = None) -> pd.DataFrame:
    """Step counts per contract.method and state."""
    df = load_journal(path)
    if df.empty:
        return pd.DataFrame(columns=["action", "pending", "mined", "error"])
    df["action"] = df["contract"] + "." + df["method"]
    table = (
        df.groupby(["action", "state"]).size()
        .unstack(fill_value=0)
        .reindex(columns=["pending", "mined", "error"], fill_value=0)
        .reset_index()
    )
    table.columns.name = None
    return table
