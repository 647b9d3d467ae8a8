import mongomock
import pytest
from eth_account import Account
from eth_account.messages import encode_defunct
from fastapi.testclient import TestClient
from web3.exceptions import ContractLogicError

import main
from auth import AuthService
from contract import ContractClient
from otp import OtpService
from store import build_stores

ADMIN_KEY = "0x" + "11" * 32
VOTER_KEY = "0x" + "22" * 32
ADMIN = Account.from_key(ADMIN_KEY).address
VOTER = Account.from_key(VOTER_KEY).address
OTHER = "0xdef0000000000000000000000000000000000002"


class _Call:
    def __init__(self, contract, name, args):
        self.contract = contract
        self.name = name
        self.args = args

    def call(self):
        return self.contract.read(self.name, *self.args)

    def transact(self, tx):
        return self.contract.write(self.name, tx["from"], *self.args)


class _Functions:
    def __init__(self, contract):
        self._contract = contract

    def __getattr__(self, name):
        return lambda *args: _Call(self._contract, name, args)


class _Event:
    def __init__(self, contract, name):
        self.contract = contract
        self.name = name

    def get_logs(self, from_block=0):
        return [log for log in self.contract.logs if log["event"] == self.name and log["blockNumber"] >= from_block]


class _Events:
    def __init__(self, contract):
        self._contract = contract

    def __getattr__(self, name):
        return lambda: _Event(self._contract, name)


class FakeVotingContract:
    """In-memory stand-in exposing the web3 contract surface the client uses."""

    def __init__(self, admin):
        self.admin = admin
        self.voting_active = False
        self.candidates = []
        self.voters = {}
        self.total_votes = 0
        self.block = 0
        self.logs = []
        self.functions = _Functions(self)
        self.events = _Events(self)

    def read(self, name, *args):
        if name == "votingActive":
            return self.voting_active
        if name == "totalCandidates":
            return len(self.candidates)
        if name == "totalVotes":
            return self.total_votes
        if name == "admin":
            return self.admin
        if name == "candidates":
            (index,) = args
            if index >= len(self.candidates):
                raise ContractLogicError("execution reverted")
            return tuple(self.candidates[index])
        if name == "voters":
            (address,) = args
            return tuple(self.voters.get(address.lower(), [False, False]))
        raise AttributeError(name)

    def _only_admin(self, sender):
        if sender.lower() != self.admin.lower():
            raise ContractLogicError("execution reverted: Only admin can call this function")

    def write(self, name, sender, *args):
        if name == "startVoting":
            self._only_admin(sender)
            if self.voting_active:
                raise ContractLogicError("execution reverted: Voting already active")
            self.voting_active = True
            args_out = {}
        elif name == "endVoting":
            self._only_admin(sender)
            if not self.voting_active:
                raise ContractLogicError("execution reverted: Voting not active")
            self.voting_active = False
            args_out = {}
        elif name == "addCandidate":
            self._only_admin(sender)
            self.candidates.append([len(self.candidates), args[0], 0])
            args_out = {"candidateId": len(self.candidates) - 1, "name": args[0]}
        elif name == "registerVoter":
            self._only_admin(sender)
            entry = self.voters.setdefault(args[0].lower(), [False, False])
            if entry[0]:
                raise ContractLogicError("execution reverted: Voter already registered")
            entry[0] = True
            args_out = None
        elif name == "vote":
            (candidate_id,) = args
            entry = self.voters.get(sender.lower(), [False, False])
            if not self.voting_active:
                raise ContractLogicError("execution reverted: Voting is not active")
            if not entry[0]:
                raise ContractLogicError("execution reverted: Voter not registered")
            if entry[1]:
                raise ContractLogicError("execution reverted: You have already voted")
            if candidate_id >= len(self.candidates):
                raise ContractLogicError("execution reverted: Invalid candidate")
            entry[1] = True
            self.candidates[candidate_id][2] += 1
            self.total_votes += 1
            args_out = {"voter": sender, "candidateId": candidate_id}
        else:
            raise AttributeError(name)

        self.block += 1
        tx_hash = self.block.to_bytes(32, "big")
        event = {
            "startVoting": "VotingStarted",
            "endVoting": "VotingEnded",
            "addCandidate": "CandidateAdded",
            "vote": "VoteCast",
        }.get(name)
        if event:
            self.logs.append({"event": event, "blockNumber": self.block, "transactionHash": tx_hash, "args": args_out})
        return tx_hash


class FakeEth:
    chain_id = 11155111

    def __init__(self, contract):
        self.contract = contract
        self.balances = {}

    def get_balance(self, address):
        return self.balances.get(address.lower(), 0)

    def wait_for_transaction_receipt(self, tx_hash, timeout=120):
        return {"status": 1, "blockNumber": int.from_bytes(tx_hash, "big"), "transactionHash": tx_hash}


class FakeWeb3:
    def __init__(self, contract):
        self.eth = FakeEth(contract)


@pytest.fixture
def voting_contract():
    contract = FakeVotingContract(ADMIN)
    contract.candidates = [[0, "Alice", 0], [1, "Bob", 0], [2, "Charlie", 0]]
    return contract


@pytest.fixture
def contract_client(voting_contract):
    return ContractClient(FakeWeb3(voting_contract), voting_contract)


@pytest.fixture
def mongo_db():
    return mongomock.MongoClient()["voting_test"]


@pytest.fixture(params=["mongo", "file"])
def stores(request, mongo_db, tmp_path):
    return build_stores(request.param, mongo_db, str(tmp_path))


@pytest.fixture
def voter_store(stores):
    return stores[0]


@pytest.fixture
def hidden_candidates(stores):
    return stores[1]


@pytest.fixture
def api(mongo_db, contract_client):
    voter_store, hidden = build_stores("mongo", mongo_db, "")
    otp_service = OtpService(expiry_seconds=120)
    auth_service = AuthService()
    main.app.dependency_overrides[main.get_voter_store] = lambda: voter_store
    main.app.dependency_overrides[main.get_hidden_candidates] = lambda: hidden
    main.app.dependency_overrides[main.get_contract] = lambda: contract_client
    main.app.dependency_overrides[main.get_otp_service] = lambda: otp_service
    main.app.dependency_overrides[main.get_auth_service] = lambda: auth_service
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def sign_in(client, private_key):
    """Run the challenge/verify handshake and return an Authorization header."""
    address = Account.from_key(private_key).address
    message = client.post("/api/auth/challenge", json={"address": address}).json()["message"]
    signed = Account.sign_message(encode_defunct(text=message), private_key=private_key)
    res = client.post("/api/auth/verify", json={"address": address, "signature": "0x" + bytes(signed.signature).hex()})
    assert res.status_code == 200, res.text
    return {"Authorization": f"Bearer {res.json()['token']}"}


@pytest.fixture
def as_admin(api):
    return sign_in(api, ADMIN_KEY)


@pytest.fixture
def as_voter(api):
    return sign_in(api, VOTER_KEY)


def registration(address=VOTER, **overrides):
    body = {
        "address": address,
        "faceData": "0x" + "ab" * 32,
        "fingerprintData": "0x" + "cd" * 32,
        "nationalId": "123456789012",
        "phoneNumber": "9876543210",
    }
    body.update(overrides)
    return body
