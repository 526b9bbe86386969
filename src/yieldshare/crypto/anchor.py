"""Chain anchoring of event-log commitments.

The Merkle root of the vault event log is embedded in the data field of
a 0-value self-send transaction on Ethereum. Nothing executes on chain;
the transaction is a timestamped witness that the log had exactly that
content when it was sent. Anyone holding the JSONL log can recompute the
root and compare it with the transaction data.

web3 and eth_account are imported lazily so the accounting layer never
needs them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from yieldshare.crypto.merkle import LogCommitment


logger = logging.getLogger("yieldshare.anchor")

SEPOLIA_CHAIN_ID = 11155111
EXPLORER_TX_URL = "https://sepolia.etherscan.io/tx/"


@dataclass(frozen=True)
class AnchorRecord:
    """A confirmed anchor of one log commitment."""
    root: str
    event_count: int
    tx_hash: str
    block_number: int
    chain_id: int
    timestamp_utc: str
    explorer_url: str


def anchor_commitment(
    commitment: LogCommitment,
    rpc_url: str,
    private_key: str,
    chain_id: int = SEPOLIA_CHAIN_ID,
    gas: int = 30_000,
    gas_price_gwei: str = "2",
    timeout: int = 300,
) -> AnchorRecord:
    """Send the commitment root on chain and wait for one confirmation.

    Raises ValueError for an empty log; there is nothing worth anchoring.
    """
    if commitment.event_count == 0:
        raise ValueError("Refusing to anchor an empty event log")

    from web3 import HTTPProvider, Web3
    from eth_account import Account

    w3 = Web3(HTTPProvider(rpc_url))
    acct = Account.from_key(private_key)

    tx = {
        "to": acct.address,
        "value": 0,
        "gas": gas,
        "gasPrice": w3.to_wei(gas_price_gwei, "gwei"),
        "nonce": w3.eth.get_transaction_count(acct.address),
        "chainId": chain_id,
        "data": bytes.fromhex(commitment.digest_hex),
    }
    signed = acct.sign_transaction(tx)
    tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
    logger.info("Anchor tx %s sent for root %s", tx_hash.hex(), commitment.root)

    receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
    logger.info("Anchor tx %s confirmed in block %d", tx_hash.hex(), receipt.blockNumber)

    return AnchorRecord(
        root=commitment.root,
        event_count=commitment.event_count,
        tx_hash=tx_hash.hex(),
        block_number=receipt.blockNumber,
        chain_id=chain_id,
        timestamp_utc=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        explorer_url=EXPLORER_TX_URL + tx_hash.hex(),
    )
