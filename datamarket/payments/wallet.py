"""Datamarket Wallet - agent key plus USDC transfers for on-chain settlement.

web3 calls are blocking; they run in a worker thread so a paying agent
keeps serving requests while a transfer confirms.

Example:
    wallet = Wallet.from_env("BUYER_PRIVATE_KEY", network="base-sepolia")
    print(wallet.address, await wallet.balance())

    # $8.00
    result = await wallet.transfer(to=seller_address, amount_minor_units=800)
    if not result.success:
        print(result.error)
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import find_dotenv, load_dotenv
from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.exceptions import Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware

from ..errors import ConfigError
from ..log import log
from .config import (
    DEFAULT_NETWORK,
    USDC_ABI,
    NetworkConfig,
    get_network,
    minor_to_usdc_raw,
    usdc_raw_to_dollars,
)


TRANSFER_GAS = 100_000
RECEIPT_TIMEOUT = 30


@dataclass
class TransferResult:
    """Outcome of one USDC transfer."""
    success: bool
    tx_hash: Optional[str] = None
    explorer_url: Optional[str] = None
    error: Optional[str] = None
    gas_used: Optional[int] = None


class Wallet:
    """An agent's signing key on one settlement network."""

    def __init__(self, account: LocalAccount, network: str = DEFAULT_NETWORK):
        self.account = account
        self.network = network
        self.chain: NetworkConfig = get_network(network)
        self._last_nonce: Optional[int] = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_private_key(cls, private_key: str, network: str = DEFAULT_NETWORK) -> "Wallet":
        if not private_key.startswith("0x"):
            private_key = "0x" + private_key
        return cls(Account.from_key(private_key), network)

    @classmethod
    def from_env(cls, var_name: str = "BUYER_PRIVATE_KEY", network: str = DEFAULT_NETWORK) -> "Wallet":
        """Load the key named by `var_name` (a `.env` file is read first).

        Raises:
            ConfigError: If the variable is not set
        """
        load_dotenv(find_dotenv(usecwd=True), override=False)
        private_key = os.environ.get(var_name)
        if not private_key:
            raise ConfigError(f"{var_name} is not set")
        return cls.from_private_key(private_key, network)

    @property
    def address(self) -> str:
        return self.account.address

    def _connect(self) -> tuple[Web3, object]:
        # New provider each time; a cached one can hand back a stale pending nonce
        w3 = Web3(Web3.HTTPProvider(self.chain.rpc_url))
        # Base is an OP-stack chain with POA-style extra data
        w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        usdc = w3.eth.contract(address=Web3.to_checksum_address(self.chain.usdc_address), abi=USDC_ABI)
        return w3, usdc

    async def balance(self) -> float:
        """USDC balance in dollars."""
        def read() -> int:
            _, usdc = self._connect()
            return usdc.functions.balanceOf(self.address).call()

        return usdc_raw_to_dollars(await asyncio.to_thread(read))

    async def transfer(self, to: str, amount_minor_units: int, gas_limit: Optional[int] = None) -> TransferResult:
        """Send `amount_minor_units` cents of USDC to `to`.

        Chain failures come back as an unsuccessful TransferResult.
        """
        async with self._lock:
            try:
                result = await asyncio.to_thread(self._send, to, amount_minor_units, gas_limit or TRANSFER_GAS)
            except (Web3Exception, ValueError, OSError) as e:
                log.error("USDC transfer failed", e)
                return TransferResult(success=False, error=str(e))

        if result.success:
            log.success("USDC transfer confirmed", result.explorer_url)
        return result

    def _next_nonce(self, w3: Web3) -> int:
        pending = w3.eth.get_transaction_count(self.address, "pending")
        if self._last_nonce is not None and self._last_nonce >= pending:
            return self._last_nonce + 1
        return pending

    def _send(self, to: str, amount_minor_units: int, gas: int) -> TransferResult:
        w3, usdc = self._connect()
        raw_amount = minor_to_usdc_raw(amount_minor_units)

        available = usdc.functions.balanceOf(self.address).call()
        if available < raw_amount:
            return TransferResult(
                success=False,
                error=(
                    f"Insufficient balance: have {usdc_raw_to_dollars(available):.2f}, "
                    f"need {amount_minor_units / 100:.2f}"
                ),
            )

        nonce = self._next_nonce(w3)
        tx = usdc.functions.transfer(Web3.to_checksum_address(to), raw_amount).build_transaction({
            "chainId": self.chain.chain_id,
            "from": self.address,
            "nonce": nonce,
            # 20% over the quoted price avoids replacement-underpriced rejections
            "gasPrice": int(w3.eth.gas_price * 1.2),
            "gas": gas,
        })

        signed = self.account.sign_transaction(tx)
        sent = w3.eth.send_raw_transaction(signed.raw_transaction)
        self._last_nonce = nonce

        tx_hash = "0x" + sent.hex().removeprefix("0x")
        explorer_url = self.chain.tx_url(tx_hash)
        log.transaction("USDC transfer sent", {"To": to, "Amount": f"${amount_minor_units / 100:.2f}", "Tx": explorer_url})

        receipt = w3.eth.wait_for_transaction_receipt(sent, timeout=RECEIPT_TIMEOUT)
        if receipt["status"] != 1:
            return TransferResult(success=False, tx_hash=tx_hash, explorer_url=explorer_url, error="Transaction reverted")
        return TransferResult(success=True, tx_hash=tx_hash, explorer_url=explorer_url, gas_used=receipt["gasUsed"])

    def __repr__(self) -> str:
        return f"Wallet({self.address[:10]}...{self.address[-6:]}, network={self.network})"
