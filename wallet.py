import logging

from web3 import Web3

from schemas import WalletSession

logger = logging.getLogger(__name__)

NETWORK_NAMES = {
    '0x1': 'Ethereum Mainnet',
    '0x5': 'Goerli Testnet',
    '0xaa36a7': 'Sepolia Testnet',
    '0x89': 'Polygon Mainnet',
    '0x13881': 'Mumbai Testnet',
}


def network_name(chain_id_hex: str) -> str:
    return NETWORK_NAMES.get(chain_id_hex, f"Unknown Network ({chain_id_hex})")


def wallet_session(client, address: str, expected_chain_id: str) -> WalletSession:
    """Wallet state for one connected address, recomputed on every call."""
    checksum = Web3.to_checksum_address(address)
    chain_id = hex(client.w3.eth.chain_id)
    balance_wei = client.w3.eth.get_balance(checksum)
    return WalletSession(
        address=checksum,
        chain_id=chain_id,
        network_name=network_name(chain_id),
        is_correct_network=chain_id == expected_chain_id.lower(),
        balance=str(Web3.from_wei(balance_wei, "ether")),
        is_admin=client.is_admin(checksum),
    )
