"""
Wallet sign-in.

A caller asks for a one-time nonce, signs the returned message with its wallet
(personal_sign / EIP-191) and trades the signature for a bearer token. Every
route that acts for a wallet takes the address from that token, never from a
client-supplied header.
"""

import logging
import secrets
import threading
import time
from typing import Dict, Optional, Tuple

from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

logger = logging.getLogger(__name__)


class AuthError(Exception):
    pass


def sign_in_message(address: str, nonce: str) -> str:
    return f"Sign in to the voting service\nAddress: {address}\nNonce: {nonce}"


def recover_signer(message: str, signature: str) -> Optional[str]:
    try:
        return Account.recover_message(encode_defunct(text=message), signature=signature)
    except Exception as e:
        logger.warning("Signature recovery failed: %s", e)
        return None


class AuthService:
    def __init__(self, nonce_ttl: int = 300, session_ttl: int = 3600, clock=time.monotonic):
        self.nonce_ttl = nonce_ttl
        self.session_ttl = session_ttl
        self._clock = clock
        self._challenges: Dict[str, Tuple[str, float]] = {}
        self._sessions: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _purge(self, now: float) -> None:
        for table in (self._challenges, self._sessions):
            for key in [k for k, (_, expires_at) in table.items() if expires_at < now]:
                del table[key]

    def challenge(self, address: str) -> str:
        """Issue a fresh nonce for `address`; returns the message to sign."""
        if not Web3.is_address(address):
            raise AuthError("Invalid wallet address")
        checksum = Web3.to_checksum_address(address)
        nonce = secrets.token_hex(16)
        with self._lock:
            now = self._clock()
            self._purge(now)
            self._challenges[checksum.lower()] = (nonce, now + self.nonce_ttl)
        return sign_in_message(checksum, nonce)

    def verify(self, address: str, signature: str) -> str:
        """Consume the pending nonce and return a session token if the signature matches."""
        if not Web3.is_address(address):
            raise AuthError("Invalid wallet address")
        checksum = Web3.to_checksum_address(address)
        with self._lock:
            entry = self._challenges.pop(checksum.lower(), None)
        if entry is None or entry[1] < self._clock():
            raise AuthError("No active challenge. Please request a new one.")

        signer = recover_signer(sign_in_message(checksum, entry[0]), signature)
        if signer is None or signer.lower() != checksum.lower():
            logger.warning("Sign-in signature mismatch for %s", checksum)
            raise AuthError("Signature does not match wallet address")

        token = secrets.token_urlsafe(32)
        with self._lock:
            self._sessions[token] = (checksum, self._clock() + self.session_ttl)
        logger.info("Wallet %s signed in", checksum)
        return token

    def address_for(self, token: str) -> Optional[str]:
        with self._lock:
            entry = self._sessions.get(token)
            if entry is None:
                return None
            if entry[1] < self._clock():
                del self._sessions[token]
                return None
            return entry[0]
