"""
Voter registration request store and hidden-candidate registry.

One registration per wallet address (lowercased). Allowed status changes:

    pending  -> approved   (admin, after registerVoter on chain)
    pending  -> rejected   (admin)
    rejected -> pending    (resubmission through submit)

Records are never hard-deleted; rejection keeps the audit trail.
"""

import json
import logging
import os
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import create_document, get_documents
from schemas import RegistrationRequest, VoterRegistration

logger = logging.getLogger(__name__)

VOTERS_COLLECTION = "voters"
HIDDEN_CANDIDATES_COLLECTION = "hidden_candidates"

# target status -> statuses it may be reached from via set_status
STATUS_TRANSITIONS: Dict[str, Set[str]] = {
    "approved": {"pending"},
    "rejected": {"pending"},
}


class StoreError(Exception):
    """Base class for registration store errors."""


class Conflict(StoreError):
    pass


class NotFound(StoreError):
    pass


class InvalidTransition(StoreError):
    pass


class StoreUnavailable(StoreError):
    """Backing storage could not be read."""


def normalize_address(address: str) -> str:
    return address.strip().lower()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _conflict_for(status: str) -> Conflict:
    if status == "approved":
        return Conflict("This address is already registered as a voter")
    return Conflict("A registration request for this address is already pending")


def _check_transition(address: str, current: str, target: str) -> None:
    if current not in STATUS_TRANSITIONS.get(target, set()):
        raise InvalidTransition(f"Cannot change registration {address} from {current} to {target}")


class VoterStore:
    """Interface shared by the Mongo and JSON-file backends."""

    def submit(self, request: RegistrationRequest) -> VoterRegistration:
        raise NotImplementedError

    def get(self, address: str) -> Optional[VoterRegistration]:
        raise NotImplementedError

    def list(self, status: Optional[str] = None) -> List[VoterRegistration]:
        raise NotImplementedError

    def set_status(self, address: str, status: str) -> VoterRegistration:
        raise NotImplementedError


class MongoVoterStore(VoterStore):
    """Registrations in the `voters` collection, `_id` = lowercase address.

    The `_id` key is the uniqueness constraint: two concurrent first-time
    submissions race on insert and exactly one wins. Resubmission after a
    rejection is a conditional update on `status == "rejected"`.
    """

    def __init__(self, database):
        self.db = database
        self.collection = database[VOTERS_COLLECTION]
        self.collection.create_index("status")

    @staticmethod
    def _to_model(doc: dict) -> VoterRegistration:
        doc = dict(doc)
        doc.pop("_id", None)
        return VoterRegistration.model_validate(doc)

    def submit(self, request: RegistrationRequest) -> VoterRegistration:
        key = normalize_address(request.address)
        now = _now()
        fields = request.model_dump(by_alias=True)
        fields.update({"address": key, "status": "pending", "updatedAt": now})

        try:
            create_document(VOTERS_COLLECTION, {"_id": key, "createdAt": now, **fields}, database=self.db)
            logger.info("Registration submitted for %s", key)
            return self.get(key)
        except DuplicateKeyError:
            pass

        doc = self.collection.find_one_and_update(
            {"_id": key, "status": "rejected"},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            existing = self.collection.find_one({"_id": key}, {"status": 1})
            raise _conflict_for(existing["status"] if existing else "pending")
        logger.info("Registration resubmitted for %s", key)
        return self._to_model(doc)

    def get(self, address: str) -> Optional[VoterRegistration]:
        doc = self.collection.find_one({"_id": normalize_address(address)})
        return self._to_model(doc) if doc else None

    def list(self, status: Optional[str] = None) -> List[VoterRegistration]:
        query = {"status": status} if status else {}
        docs = get_documents(VOTERS_COLLECTION, query, sort=[("createdAt", 1)], database=self.db)
        return [self._to_model(doc) for doc in docs]

    def set_status(self, address: str, status: str) -> VoterRegistration:
        key = normalize_address(address)
        doc = self.collection.find_one_and_update(
            {"_id": key, "status": {"$in": sorted(STATUS_TRANSITIONS.get(status, set()))}},
            {"$set": {"status": status, "updatedAt": _now()}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            existing = self.collection.find_one({"_id": key}, {"status": 1})
            if existing is None:
                raise NotFound(f"Voter request not found: {key}")
            _check_transition(key, existing["status"], status)
            # status changed between the update and the read; report it as stale
            raise InvalidTransition(f"Registration {key} changed concurrently")
        logger.info("Registration %s marked %s", key, status)
        return self._to_model(doc)


class JsonFileVoterStore(VoterStore):
    """Registrations in a JSON list on disk (data/voter-requests.json).

    The lock serialises writers within this process only.
    """

    _lock = threading.Lock()

    def __init__(self, path: str):
        self.path = path

    def _read(self) -> List[dict]:
        if not os.path.exists(self.path):
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError, TypeError) as exc:
            logger.error("Could not read voter requests from %s: %s", self.path, exc)
            raise StoreUnavailable("Voter request storage is unreadable") from exc

    def _write(self, records: List[dict]) -> None:
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        tmp_path = self.path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(records, f, indent=2)
        os.replace(tmp_path, self.path)

    @staticmethod
    def _find(records: List[dict], key: str) -> int:
        for i, record in enumerate(records):
            if normalize_address(record["address"]) == key:
                return i
        return -1

    def submit(self, request: RegistrationRequest) -> VoterRegistration:
        key = normalize_address(request.address)
        now = _now()
        with self._lock:
            records = self._read()
            index = self._find(records, key)
            created_at = now
            if index != -1:
                existing = records[index]
                if existing["status"] != "rejected":
                    raise _conflict_for(existing["status"])
                created_at = existing.get("createdAt") or now

            record = VoterRegistration(
                **request.model_dump(),
                status="pending",
                created_at=created_at,
                updated_at=now,
            )
            record.address = key
            data = record.model_dump(mode="json", by_alias=True)
            if index == -1:
                records.append(data)
            else:
                records[index] = data
            self._write(records)
        logger.info("Registration %s for %s", "resubmitted" if index != -1 else "submitted", key)
        return VoterRegistration.model_validate(data)

    def get(self, address: str) -> Optional[VoterRegistration]:
        records = self._read()
        index = self._find(records, normalize_address(address))
        return VoterRegistration.model_validate(records[index]) if index != -1 else None

    def list(self, status: Optional[str] = None) -> List[VoterRegistration]:
        records = [
            VoterRegistration.model_validate(r)
            for r in self._read()
            if status is None or r["status"] == status
        ]
        return sorted(records, key=lambda r: r.created_at)

    def set_status(self, address: str, status: str) -> VoterRegistration:
        key = normalize_address(address)
        with self._lock:
            records = self._read()
            index = self._find(records, key)
            if index == -1:
                raise NotFound(f"Voter request not found: {key}")
            _check_transition(key, records[index]["status"], status)
            records[index]["status"] = status
            records[index]["updatedAt"] = _now().isoformat()
            self._write(records)
        logger.info("Registration %s marked %s", key, status)
        return VoterRegistration.model_validate(records[index])


# --------- Hidden candidates ---------

class HiddenCandidates:
    """Candidate ids hidden from the voting and results lists.

    Display-only: the contract still holds and counts these candidates.
    Reads go through a process-wide cache that every write invalidates.
    """

    def __init__(self):
        self._cache: Optional[Set[int]] = None
        self._cache_lock = threading.Lock()

    def _load(self) -> Set[int]:
        raise NotImplementedError

    def _add(self, candidate_id: int) -> None:
        raise NotImplementedError

    def _remove(self, candidate_id: int) -> None:
        raise NotImplementedError

    def ids(self) -> Set[int]:
        with self._cache_lock:
            if self._cache is None:
                self._cache = self._load()
            return set(self._cache)

    def hide(self, candidate_id: int) -> None:
        with self._cache_lock:
            self._add(candidate_id)
            self._cache = None
        logger.info("Candidate %s hidden", candidate_id)

    def unhide(self, candidate_id: int) -> None:
        with self._cache_lock:
            self._remove(candidate_id)
            self._cache = None
        logger.info("Candidate %s unhidden", candidate_id)


class MongoHiddenCandidates(HiddenCandidates):

    def __init__(self, database):
        super().__init__()
        self.collection = database[HIDDEN_CANDIDATES_COLLECTION]

    def _load(self) -> Set[int]:
        return {int(doc["_id"]) for doc in self.collection.find({})}

    def _add(self, candidate_id: int) -> None:
        self.collection.update_one(
            {"_id": candidate_id},
            {"$set": {"hiddenAt": _now()}},
            upsert=True,
        )

    def _remove(self, candidate_id: int) -> None:
        self.collection.delete_one({"_id": candidate_id})


class JsonFileHiddenCandidates(HiddenCandidates):

    def __init__(self, path: str):
        super().__init__()
        self.path = path

    def _load(self) -> Set[int]:
        if not os.path.exists(self.path):
            return set()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return {int(i) for i in json.load(f)}
        except (OSError, ValueError, TypeError) as exc:
            logger.error("Could not read hidden candidates from %s: %s", self.path, exc)
            raise StoreUnavailable("Hidden candidate storage is unreadable") from exc

    def _save(self, ids: Set[int]) -> None:
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(sorted(ids), f)

    def _add(self, candidate_id: int) -> None:
        self._save(self._load() | {candidate_id})

    def _remove(self, candidate_id: int) -> None:
        self._save(self._load() - {candidate_id})


def build_stores(backend: str, database, data_dir: str):
    """Pick the voter store and hidden-candidate registry for a backend name."""
    backend = backend or ("mongo" if database is not None else "file")
    if backend == "mongo":
        if database is None:
            raise RuntimeError("VOTER_STORE=mongo requires DATABASE_URL and DATABASE_NAME")
        return MongoVoterStore(database), MongoHiddenCandidates(database)
    if backend == "file":
        return (
            JsonFileVoterStore(os.path.join(data_dir, "voter-requests.json")),
            JsonFileHiddenCandidates(os.path.join(data_dir, "hidden-candidates.json")),
        )
    raise ValueError(f"Unknown VOTER_STORE backend: {backend}")
