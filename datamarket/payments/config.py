"""Datamarket payment settings.

Payment requests are priced in USD cents. On-chain settlement moves the
same amount as USDC (6 decimals) on one of the networks below.

Testnet Setup:
    1. Get test ETH: https://www.alchemy.com/faucets/base-sepolia
    2. Get test USDC: https://faucet.circle.com (select Base Sepolia)
    3. Set DATAMARKET_SETTLEMENT=onchain and DATAMARKET_NETWORK=base-sepolia
"""

from dataclasses import dataclass
import os


CURRENCY = "USD"
PAYMENT_REQUEST_TTL_SECONDS = 3600

USDC_DECIMALS = 6

# Default to testnet
DEFAULT_NETWORK = os.environ.get("DATAMARKET_NETWORK", "base-sepolia")


@dataclass(frozen=True)
class NetworkConfig:
    """A chain that can settle USDC payments."""
    chain_id: int
    name: str
    rpc_url: str
    explorer_url: str
    usdc_address: str
    is_testnet: bool = False

    def tx_url(self, tx_hash: str) -> str:
        return f"{self.explorer_url}/tx/{tx_hash}"


NETWORKS = {
    "base": NetworkConfig(
        chain_id=8453,
        name="Base",
        rpc_url=os.environ.get("BASE_RPC_URL", "https://mainnet.base.org"),
        explorer_url="https://basescan.org",
        usdc_address="0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
    ),
    "base-sepolia": NetworkConfig(
        chain_id=84532,
        name="Base Sepolia (Testnet)",
        rpc_url=os.environ.get("BASE_SEPOLIA_RPC_URL", "https://sepolia.base.org"),
        explorer_url="https://sepolia.basescan.org",
        usdc_address="0x036CbD53842c5426634e7929541eC2318f3dCF7e",
        is_testnet=True,
    ),
    "sepolia": NetworkConfig(
        chain_id=11155111,
        name="Ethereum Sepolia (Testnet)",
        rpc_url=os.environ.get("SEPOLIA_RPC_URL", "https://rpc.sepolia.org"),
        explorer_url="https://sepolia.etherscan.io",
        usdc_address="0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238",
        is_testnet=True,
    ),
}

# Only balanceOf and transfer are called
USDC_ABI = [
    {
        "name": "balanceOf",
        "type": "function",
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "outputs": [{"name": "balance", "type": "uint256"}],
    },
    {
        "name": "transfer",
        "type": "function",
        "constant": False,
        "inputs": [{"name": "_to", "type": "address"}, {"name": "_value", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
]


def get_network(network: str = DEFAULT_NETWORK) -> NetworkConfig:
    try:
        return NETWORKS[network]
    except KeyError:
        raise ValueError(f"Unknown network: {network}. Supported: {sorted(NETWORKS)}") from None


def get_explorer_url(tx_hash: str, network: str = DEFAULT_NETWORK) -> str:
    return get_network(network).tx_url(tx_hash)


def minor_to_usdc_raw(amount_minor_units: int) -> int:
    """Cents -> raw USDC units."""
    return amount_minor_units * 10 ** (USDC_DECIMALS - 2)


def usdc_raw_to_dollars(raw: int) -> float:
    return raw / 10 ** USDC_DECIMALS
