"""
Thin client for the on-chain Voting contract.

Every method maps to one contract call. Tallying, admin authorization and
double-vote prevention happen inside the contract; reverts are passed through
as web3 exceptions and only translated into readable messages by
``describe_revert``.
"""

import json
import logging
from typing import Iterable, List, Optional, Set

from eth_account import Account
from web3 import Web3

from schemas import Candidate, ChainEvent, ContractStatus, Results, VoterStatus

logger = logging.getLogger(__name__)

VOTING_ABI = [
    {"type": "function", "name": "votingActive", "stateMutability": "view", "inputs": [],
     "outputs": [{"name": "", "type": "bool"}]},
    {"type": "function", "name": "totalCandidates", "stateMutability": "view", "inputs": [],
     "outputs": [{"name": "", "type": "uint256"}]},
    {"type": "function", "name": "totalVotes", "stateMutability": "view", "inputs": [],
     "outputs": [{"name": "", "type": "uint256"}]},
    {"type": "function", "name": "admin", "stateMutability": "view", "inputs": [],
     "outputs": [{"name": "", "type": "address"}]},
    {"type": "function", "name": "candidates", "stateMutability": "view",
     "inputs": [{"name": "", "type": "uint256"}],
     "outputs": [{"name": "id", "type": "uint256"}, {"name": "name", "type": "string"},
                 {"name": "voteCount", "type": "uint256"}]},
    {"type": "function", "name": "voters", "stateMutability": "view",
     "inputs": [{"name": "", "type": "address"}],
     "outputs": [{"name": "isRegistered", "type": "bool"}, {"name": "hasVoted", "type": "bool"}]},
    {"type": "function", "name": "vote", "stateMutability": "nonpayable",
     "inputs": [{"name": "candidateId", "type": "uint256"}], "outputs": []},
    {"type": "function", "name": "addCandidate", "stateMutability": "nonpayable",
     "inputs": [{"name": "name", "type": "string"}], "outputs": []},
    {"type": "function", "name": "registerVoter", "stateMutability": "nonpayable",
     "inputs": [{"name": "voter", "type": "address"}], "outputs": []},
    {"type": "function", "name": "startVoting", "stateMutability": "nonpayable", "inputs": [], "outputs": []},
    {"type": "function", "name": "endVoting", "stateMutability": "nonpayable", "inputs": [], "outputs": []},
    {"type": "event", "name": "VotingStarted", "anonymous": False, "inputs": []},
    {"type": "event", "name": "VotingEnded", "anonymous": False, "inputs": []},
    {"type": "event", "name": "VoteCast", "anonymous": False,
     "inputs": [{"name": "voter", "type": "address", "indexed": True},
                {"name": "candidateId", "type": "uint256", "indexed": True}]},
    {"type": "event", "name": "CandidateAdded", "anonymous": False,
     "inputs": [{"name": "candidateId", "type": "uint256", "indexed": True},
                {"name": "name", "type": "string", "indexed": False}]},
]

EVENT_NAMES = ("VotingStarted", "VotingEnded", "VoteCast", "CandidateAdded")

# revert reason substring -> message shown to the user
REVERT_MESSAGES = [
    ("Only admin", "Only admin can perform this action"),
    ("already active", "Voting is already active"),
    ("not active", "Voting is not currently active"),
    ("already voted", "You have already voted"),
    ("not registered", "You are not registered to vote"),
    ("Invalid candidate", "Invalid candidate selection"),
    ("already registered", "This address is already registered as a voter"),
]


class TransactionFailed(Exception):
    """Raised when a mined transaction has status 0."""


def describe_revert(error: Exception, fallback: str) -> str:
    text = str(error)
    for needle, message in REVERT_MESSAGES:
        if needle in text:
            return message
    return fallback


def load_abi(path: Optional[str] = None) -> list:
    if not path:
        return VOTING_ABI
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    # accept a bare ABI list or a compiler artifact with an "abi" key
    return data if isinstance(data, list) else data["abi"]


class ContractClient:
    def __init__(self, w3, contract, admin_private_key: str = "", tx_timeout: int = 120):
        self.w3 = w3
        self.contract = contract
        self.tx_timeout = tx_timeout
        self._signer = Account.from_key(admin_private_key) if admin_private_key else None

    @classmethod
    def from_config(cls, config) -> "ContractClient":
        if not config.CONTRACT_ADDRESS:
            raise RuntimeError("CONTRACT_ADDRESS is not set")
        w3 = Web3(Web3.HTTPProvider(config.RPC_URL))
        contract = w3.eth.contract(
            address=Web3.to_checksum_address(config.CONTRACT_ADDRESS),
            abi=load_abi(config.ABI_PATH),
        )
        logger.info("Voting contract at %s via %s", config.CONTRACT_ADDRESS, config.RPC_URL)
        return cls(w3, contract, config.ADMIN_PRIVATE_KEY, config.TX_TIMEOUT_SECONDS)

    # --------- Reads ---------

    def voting_active(self) -> bool:
        return bool(self.contract.functions.votingActive().call())

    def total_candidates(self) -> int:
        return int(self.contract.functions.totalCandidates().call())

    def total_votes(self) -> int:
        return int(self.contract.functions.totalVotes().call())

    def admin(self) -> str:
        return self.contract.functions.admin().call()

    def candidate(self, index: int) -> Candidate:
        candidate_id, name, vote_count = self.contract.functions.candidates(index).call()
        return Candidate(id=int(candidate_id), name=name, vote_count=int(vote_count))

    def voter(self, address: str) -> VoterStatus:
        checksum = Web3.to_checksum_address(address)
        is_registered, has_voted = self.contract.functions.voters(checksum).call()
        return VoterStatus(address=checksum, is_registered=is_registered, has_voted=has_voted)

    def status(self) -> ContractStatus:
        return ContractStatus(
            voting_active=self.voting_active(),
            total_candidates=self.total_candidates(),
            total_votes=self.total_votes(),
            admin=self.admin(),
        )

    def is_admin(self, address: str) -> bool:
        return address.lower() == self.admin().lower()

    def events(self, name: str, from_block: int = 0) -> List[ChainEvent]:
        if name not in EVENT_NAMES:
            raise ValueError(f"Unknown event: {name}")
        event = getattr(self.contract.events, name)
        return [
            ChainEvent(
                event=name,
                block_number=log["blockNumber"],
                tx_hash=Web3.to_hex(log["transactionHash"]),
                args=dict(log["args"]),
            )
            for log in event().get_logs(from_block=from_block)
        ]

    # --------- Transactions ---------

    def _transact(self, fn, sender: str) -> str:
        sender = Web3.to_checksum_address(sender)
        if self._signer is not None and sender == self._signer.address:
            tx = fn.build_transaction({
                "from": sender,
                "nonce": self.w3.eth.get_transaction_count(sender),
            })
            signed = self._signer.sign_transaction(tx)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        else:
            tx_hash = fn.transact({"from": sender})

        receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.tx_timeout)
        tx_hex = Web3.to_hex(tx_hash)
        if receipt["status"] != 1:
            raise TransactionFailed(f"Transaction {tx_hex} failed")
        logger.info("Transaction %s mined in block %s", tx_hex, receipt["blockNumber"])
        return tx_hex

    def vote(self, candidate_id: int, sender: str) -> str:
        return self._transact(self.contract.functions.vote(candidate_id), sender)

    def add_candidate(self, name: str, sender: str) -> str:
        return self._transact(self.contract.functions.addCandidate(name), sender)

    def register_voter(self, address: str, sender: str) -> str:
        voter = Web3.to_checksum_address(address)
        return self._transact(self.contract.functions.registerVoter(voter), sender)

    def start_voting(self, sender: str) -> str:
        return self._transact(self.contract.functions.startVoting(), sender)

    def end_voting(self, sender: str) -> str:
        return self._transact(self.contract.functions.endVoting(), sender)


# --------- Ballot views ---------

def all_candidates(client: ContractClient) -> List[Candidate]:
    return [client.candidate(i) for i in range(client.total_candidates())]


def visible_candidates(client: ContractClient, hidden: Iterable[int]) -> List[Candidate]:
    """Contract candidates minus the hidden ids; the contract count is untouched."""
    hidden_ids: Set[int] = set(hidden)
    return [c for c in all_candidates(client) if c.id not in hidden_ids]


def results(client: ContractClient, hidden: Iterable[int]) -> Results:
    candidates = visible_candidates(client, hidden)
    return Results(candidates=candidates, total_votes=sum(c.vote_count for c in candidates))
