import logging
from functools import lru_cache
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pymongo.errors import PyMongoError
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from auth import AuthError, AuthService
from biometrics import CaptureError, digests_match, face_digest, fingerprint_digest, simulated_check
from config import Config
from contract import ContractClient, TransactionFailed, describe_revert, results, visible_candidates
from database import db
from otp import OtpError, OtpService
from schemas import (
    AddCandidateRequest, AddressBatch, ApprovalOutcome, BiometricVerifyRequest, BiometricVerifyResult,
    Candidate, ChainEvent, ChallengeRequest, ChallengeResponse, ContractStatus, FaceCaptureRequest,
    FingerprintCaptureRequest, OtpSendRequest, OtpSendResponse, OtpVerifyRequest, RegistrationRequest,
    RegistrationStatus, Results, SessionToken, SignInRequest, StatusUpdate, VerificationData, VoterRegistration, VoterStatus, VoteRequest, WalletSession,
)
from store import (
    Conflict, HiddenCandidates, InvalidTransition, NotFound, StoreError, StoreUnavailable, VoterStore, build_stores,
)
from wallet import wallet_session

logging.basicConfig(level=Config.LOG_LEVEL, format='[%(asctime)s] %(levelname)s %(name)s: %(message)s')
logger = logging.getLogger(__name__)

app = FastAPI(title="Blockchain Voting Registration API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --------- Dependencies ---------

@lru_cache()
def _stores():
    return build_stores(Config.VOTER_STORE, db, Config.DATA_DIR)


def get_voter_store() -> VoterStore:
    return _stores()[0]


def get_hidden_candidates() -> HiddenCandidates:
    return _stores()[1]


@lru_cache()
def _contract_client() -> ContractClient:
    return ContractClient.from_config(Config)


def get_contract() -> ContractClient:
    try:
        return _contract_client()
    except RuntimeError as e:
        logger.error("Contract client unavailable: %s", e)
        raise HTTPException(status_code=503, detail="Blockchain connection not configured")


@lru_cache()
def get_otp_service() -> OtpService:
    return OtpService(
        expiry_seconds=Config.OTP_EXPIRY_SECONDS,
        resend_interval=Config.OTP_RESEND_MIN_INTERVAL,
        max_attempts=Config.OTP_MAX_ATTEMPTS,
    )


@lru_cache()
def get_auth_service() -> AuthService:
    return AuthService(nonce_ttl=Config.AUTH_NONCE_TTL_SECONDS, session_ttl=Config.AUTH_SESSION_TTL_SECONDS)


_bearer = HTTPBearer(auto_error=False)


def caller_address(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    auth: AuthService = Depends(get_auth_service),
) -> str:
    """Address proven by a signed sign-in challenge."""
    address = auth.address_for(credentials.credentials) if credentials else None
    if address is None:
        raise HTTPException(status_code=401, detail="Please connect your wallet to continue")
    return address


def admin_address(caller: str = Depends(caller_address), client: ContractClient = Depends(get_contract)) -> str:
    if not client.is_admin(caller):
        raise HTTPException(status_code=403, detail="Only admin can perform this action")
    return caller


def _require_address(address: Optional[str]) -> str:
    if not address:
        raise HTTPException(status_code=400, detail="Address parameter is required")
    return address


# --------- Error mapping ---------

_STORE_STATUS = {Conflict: 409, NotFound: 404, InvalidTransition: 409, StoreUnavailable: 503}


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    return JSONResponse(status_code=_STORE_STATUS.get(type(exc), 400), content={"detail": str(exc)})


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.error("Database error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Database unavailable"})


@app.exception_handler(ContractLogicError)
async def revert_handler(request: Request, exc: ContractLogicError):
    logger.warning("Contract reverted on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=400, content={"detail": describe_revert(exc, "Transaction reverted")})


@app.exception_handler(TransactionFailed)
async def tx_failed_handler(request: Request, exc: TransactionFailed):
    logger.error("%s", exc)
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(TimeExhausted)
async def tx_timeout_handler(request: Request, exc: TimeExhausted):
    logger.error("Timed out waiting for receipt on %s", request.url.path)
    return JSONResponse(status_code=504, content={"detail": "Transaction not mined in time"})


@app.exception_handler(CaptureError)
@app.exception_handler(OtpError)
async def bad_input_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.get("/")
def root():
    return {"message": "Voting API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "voter_store": Config.VOTER_STORE or ("mongo" if db is not None else "file"),
        "contract": "✅ Set" if Config.CONTRACT_ADDRESS else "❌ Not Set",
        "collections": []
    }
    if db is not None:
        try:
            response["collections"] = db.list_collection_names()
            response["database"] = "✅ Connected & Working"
        except PyMongoError as e:
            response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    return response


# --------- Wallet sign-in ---------

@app.post("/api/auth/challenge", response_model=ChallengeResponse)
def auth_challenge(payload: ChallengeRequest, auth: AuthService = Depends(get_auth_service)):
    if not Web3.is_address(payload.address):
        raise HTTPException(status_code=400, detail="Invalid wallet address")
    address = Web3.to_checksum_address(payload.address)
    return ChallengeResponse(address=address, message=auth.challenge(address))


@app.post("/api/auth/verify", response_model=SessionToken)
def auth_verify(payload: SignInRequest, auth: AuthService = Depends(get_auth_service)):
    if not Web3.is_address(payload.address):
        raise HTTPException(status_code=400, detail="Invalid wallet address")
    address = Web3.to_checksum_address(payload.address)
    try:
        token = auth.verify(address, payload.signature)
    except AuthError as e:
        raise HTTPException(status_code=401, detail=str(e))
    return SessionToken(token=token, address=address, expires_in=auth.session_ttl)


# --------- Voter registration requests ---------

@app.get("/api/voters", response_model=List[VoterRegistration])
def list_voter_requests(status: Optional[RegistrationStatus] = None, store: VoterStore = Depends(get_voter_store)):
    return store.list(status)


@app.post("/api/voters", response_model=VoterRegistration, status_code=201)
def submit_voter_request(payload: RegistrationRequest, store: VoterStore = Depends(get_voter_store)):
    return store.submit(payload)


@app.get("/api/voters/{address}", response_model=VoterRegistration)
def get_voter_request(address: str, store: VoterStore = Depends(get_voter_store)):
    record = store.get(address)
    if record is None:
        raise HTTPException(status_code=404, detail="Voter request not found")
    return record


@app.patch("/api/voters", response_model=VoterRegistration)
def update_voter_request(
    payload: StatusUpdate,
    store: VoterStore = Depends(get_voter_store),
    admin: str = Depends(admin_address),
):
    logger.info("Admin %s sets %s to %s", admin, payload.address, payload.status)
    return store.set_status(payload.address, payload.status)


@app.delete("/api/voters", response_model=VoterRegistration)
def remove_voter_request(
    address: Optional[str] = None,
    store: VoterStore = Depends(get_voter_store),
    admin: str = Depends(admin_address),
):
    # removal from the queue is a rejection; the record is kept
    return store.set_status(_require_address(address), "rejected")


@app.get("/api/verify-voter", response_model=VerificationData)
def verify_voter(address: Optional[str] = None, store: VoterStore = Depends(get_voter_store)):
    record = store.get(_require_address(address))
    if record is None or record.status != "approved":
        raise HTTPException(status_code=404, detail="Voter verification data not found")
    return VerificationData(face_data=record.face_data, fingerprint_data=record.fingerprint_data)


# --------- Wallet & chain reads ---------

@app.get("/api/wallet/{address}", response_model=WalletSession)
def get_wallet(address: str, client: ContractClient = Depends(get_contract)):
    if not Web3.is_address(address):
        raise HTTPException(status_code=400, detail="Invalid wallet address")
    return wallet_session(client, address, Config.EXPECTED_CHAIN_ID)


@app.get("/api/status", response_model=ContractStatus)
def contract_status(client: ContractClient = Depends(get_contract)):
    return client.status()


@app.get("/api/candidates", response_model=List[Candidate])
def list_candidates(
    client: ContractClient = Depends(get_contract),
    hidden: HiddenCandidates = Depends(get_hidden_candidates),
):
    return visible_candidates(client, hidden.ids())


@app.get("/api/results", response_model=Results)
def election_results(
    client: ContractClient = Depends(get_contract),
    hidden: HiddenCandidates = Depends(get_hidden_candidates),
):
    return results(client, hidden.ids())


@app.get("/api/chain/voters/{address}", response_model=VoterStatus)
def chain_voter(address: str, client: ContractClient = Depends(get_contract)):
    if not Web3.is_address(address):
        raise HTTPException(status_code=400, detail="Invalid wallet address")
    return client.voter(address)


@app.get("/api/events/{name}", response_model=List[ChainEvent])
def chain_events(name: str, from_block: int = Query(0, alias="fromBlock", ge=0), client: ContractClient = Depends(get_contract)):
    try:
        return client.events(name, from_block)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# --------- Voting ---------

@app.post("/api/vote")
def cast_vote(
    payload: VoteRequest,
    caller: str = Depends(caller_address),
    client: ContractClient = Depends(get_contract),
    hidden: HiddenCandidates = Depends(get_hidden_candidates),
):
    if payload.candidate_id in hidden.ids():
        raise HTTPException(status_code=400, detail="Invalid candidate selection")
    tx_hash = client.vote(payload.candidate_id, caller)
    logger.info("Vote cast by %s in %s", caller, tx_hash)
    return {"ok": True, "txHash": tx_hash}


# --------- Admin ---------

@app.post("/api/admin/voting/start")
def start_voting(admin: str = Depends(admin_address), client: ContractClient = Depends(get_contract)):
    return {"ok": True, "txHash": client.start_voting(admin)}


@app.post("/api/admin/voting/end")
def end_voting(admin: str = Depends(admin_address), client: ContractClient = Depends(get_contract)):
    return {"ok": True, "txHash": client.end_voting(admin)}


@app.post("/api/admin/candidates")
def add_candidate(
    payload: AddCandidateRequest,
    admin: str = Depends(admin_address),
    client: ContractClient = Depends(get_contract),
):
    return {"ok": True, "txHash": client.add_candidate(payload.name, admin)}


@app.post("/api/admin/candidates/{candidate_id}/hide")
def hide_candidate(
    candidate_id: int,
    admin: str = Depends(admin_address),
    hidden: HiddenCandidates = Depends(get_hidden_candidates),
):
    hidden.hide(candidate_id)
    return {"ok": True, "hidden": sorted(hidden.ids())}


@app.delete("/api/admin/candidates/{candidate_id}/hide")
def unhide_candidate(
    candidate_id: int,
    admin: str = Depends(admin_address),
    hidden: HiddenCandidates = Depends(get_hidden_candidates),
):
    hidden.unhide(candidate_id)
    return {"ok": True, "hidden": sorted(hidden.ids())}


@app.post("/api/admin/voters/approve", response_model=List[ApprovalOutcome])
def approve_voters(
    payload: AddressBatch,
    admin: str = Depends(admin_address),
    client: ContractClient = Depends(get_contract),
    store: VoterStore = Depends(get_voter_store),
):
    outcomes = []
    for address in payload.addresses:
        record = store.get(address)
        if record is None or record.status != "pending":
            outcomes.append(ApprovalOutcome(
                address=address, registered=False, approved=False,
                error="Voter request not found" if record is None else f"Request is {record.status}",
            ))
            continue

        try:
            tx_hash = client.register_voter(address, admin)
        except (ContractLogicError, TransactionFailed) as e:
            logger.error("Error registering voter %s: %s", address, e)
            outcomes.append(ApprovalOutcome(
                address=address, registered=False, approved=False,
                error=describe_revert(e, f"Failed to register voter: {address}"),
            ))
            continue
        except TimeExhausted:
            # the transaction may still be mined; the request stays pending
            logger.error("Timed out waiting for registration of %s", address)
            outcomes.append(ApprovalOutcome(
                address=address, registered=None, approved=False,
                error="Transaction not mined in time; check the chain before retrying",
            ))
            continue
        except (Web3Exception, OSError) as e:
            logger.error("Node error registering voter %s: %s", address, e)
            outcomes.append(ApprovalOutcome(
                address=address, registered=None, approved=False,
                error=f"Blockchain node error: {e}",
            ))
            continue

        try:
            store.set_status(address, "approved")
        except (StoreError, PyMongoError) as e:
            # on-chain registration stands; the request stays pending until retried
            logger.error("Voter %s registered in %s but status update failed: %s", address, tx_hash, e)
            outcomes.append(ApprovalOutcome(
                address=address, registered=True, approved=False, tx_hash=tx_hash, error=str(e),
            ))
            continue

        outcomes.append(ApprovalOutcome(address=address, registered=True, approved=True, tx_hash=tx_hash))
    return outcomes


@app.post("/api/admin/voters/reject", response_model=List[VoterRegistration])
def reject_voters(
    payload: AddressBatch,
    admin: str = Depends(admin_address),
    store: VoterStore = Depends(get_voter_store),
):
    return [store.set_status(address, "rejected") for address in payload.addresses]


# --------- Simulated biometrics ---------

@app.post("/api/biometrics/face")
def capture_face(payload: FaceCaptureRequest):
    return {"faceData": face_digest(payload.image, demo_mode=Config.DEMO_MODE), "simulated": True}


@app.post("/api/biometrics/fingerprint")
def capture_fingerprint(payload: FingerprintCaptureRequest):
    return {"fingerprintData": fingerprint_digest(payload.seed, demo_mode=Config.DEMO_MODE), "simulated": True}


@app.post("/api/biometrics/verify", response_model=BiometricVerifyResult)
def verify_biometrics(payload: BiometricVerifyRequest, store: VoterStore = Depends(get_voter_store)):
    record = store.get(payload.address)
    if record is None or record.status != "approved":
        raise HTTPException(status_code=404, detail="Voter verification data not found")

    if Config.DEMO_MODE:
        face_ok, finger_ok = simulated_check(), simulated_check()
    else:
        face_ok = digests_match(record.face_data, payload.face_data)
        finger_ok = digests_match(record.fingerprint_data, payload.fingerprint_data)
    return BiometricVerifyResult(
        face_verified=face_ok,
        fingerprint_verified=finger_ok,
        verified=face_ok and finger_ok,
        simulated=Config.DEMO_MODE,
    )


# --------- Simulated OTP ---------

@app.post("/api/otp/send", response_model=OtpSendResponse)
def send_otp(payload: OtpSendRequest, otp: OtpService = Depends(get_otp_service)):
    number, code = otp.issue(payload.phone_number)
    return OtpSendResponse(
        phone_number=number,
        expires_in=otp.expiry_seconds,
        code=code if Config.DEMO_MODE else None,
    )


@app.post("/api/otp/verify")
def verify_otp(payload: OtpVerifyRequest, otp: OtpService = Depends(get_otp_service)):
    return {"verified": otp.verify(payload.phone_number, payload.code)}
