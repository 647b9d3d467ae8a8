"""
Schemas for the voter registration backend

Persisted documents:
- VoterRegistration: off-chain registration request keyed by lowercase wallet
  address (collection "voters"). Biometric fields are opaque hex placeholders.

Chain views (owned by the Voting contract, read-only here):
- Candidate, VoterStatus, ContractStatus.

The remaining models are request/response bodies of the HTTP API. Wire names
are camelCase to match the browser client.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

RegistrationStatus = Literal['pending', 'approved', 'rejected']


class ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


def _not_blank(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("must not be empty")
    return value


class RegistrationRequest(ApiModel):
    address: str = Field(..., description="Wallet address of the applicant")
    face_data: str = Field(..., alias="faceData", description="Captured face digest (hex)")
    fingerprint_data: str = Field(..., alias="fingerprintData", description="Captured fingerprint digest (hex)")
    national_id: str = Field(
        ...,
        alias="nationalId",
        validation_alias=AliasChoices("nationalId", "aadharNumber", "national_id"),
    )
    phone_number: str = Field(..., alias="phoneNumber")

    @field_validator("address", "face_data", "fingerprint_data", "national_id", "phone_number")
    @classmethod
    def not_blank(cls, value: str) -> str:
        return _not_blank(value)


class VoterRegistration(RegistrationRequest):
    status: RegistrationStatus = Field('pending')
    created_at: Optional[datetime] = Field(None, alias="createdAt")
    updated_at: Optional[datetime] = Field(None, alias="updatedAt")


class StatusUpdate(ApiModel):
    address: str
    status: RegistrationStatus


class VerificationData(ApiModel):
    face_data: str = Field(..., alias="faceData")
    fingerprint_data: str = Field(..., alias="fingerprintData")


# --------- Chain views ---------

class Candidate(ApiModel):
    id: int
    name: str
    vote_count: int = Field(0, alias="voteCount")


class VoterStatus(ApiModel):
    address: str
    is_registered: bool = Field(False, alias="isRegistered")
    has_voted: bool = Field(False, alias="hasVoted")


class ContractStatus(ApiModel):
    voting_active: bool = Field(..., alias="votingActive")
    total_candidates: int = Field(..., alias="totalCandidates")
    total_votes: int = Field(..., alias="totalVotes")
    admin: str


class Results(ApiModel):
    candidates: List[Candidate]
    total_votes: int = Field(..., alias="totalVotes", description="Votes across visible candidates only")


class WalletSession(ApiModel):
    address: str
    chain_id: str = Field(..., alias="chainId")
    network_name: str = Field(..., alias="networkName")
    is_correct_network: bool = Field(..., alias="isCorrectNetwork")
    balance: str = Field(..., description="Balance in ether")
    is_admin: bool = Field(..., alias="isAdmin")


# --------- Wallet sign-in ---------

class ChallengeRequest(ApiModel):
    address: str


class ChallengeResponse(ApiModel):
    address: str
    message: str = Field(..., description="Text to sign with personal_sign")


class SignInRequest(ApiModel):
    address: str
    signature: str


class SessionToken(ApiModel):
    token: str
    address: str
    expires_in: int = Field(..., alias="expiresIn")


# --------- Requests ---------

class VoteRequest(ApiModel):
    candidate_id: int = Field(..., alias="candidateId", ge=0)


class AddCandidateRequest(ApiModel):
    name: str

    @field_validator("name")
    @classmethod
    def not_blank(cls, value: str) -> str:
        return _not_blank(value)


class AddressBatch(ApiModel):
    addresses: List[str] = Field(..., min_length=1)


class ApprovalOutcome(ApiModel):
    address: str
    registered: Optional[bool] = Field(..., description="None when the transaction outcome is unknown")
    approved: bool
    tx_hash: Optional[str] = Field(None, alias="txHash")
    error: Optional[str] = None


class FaceCaptureRequest(ApiModel):
    image: Optional[str] = Field(None, description="Base64 image or data URL; omitted in demo mode")


class FingerprintCaptureRequest(ApiModel):
    seed: Optional[int] = None


class BiometricVerifyRequest(ApiModel):
    address: str
    face_data: str = Field(..., alias="faceData")
    fingerprint_data: str = Field(..., alias="fingerprintData")


class BiometricVerifyResult(ApiModel):
    face_verified: bool = Field(..., alias="faceVerified")
    fingerprint_verified: bool = Field(..., alias="fingerprintVerified")
    verified: bool
    simulated: bool = False


class OtpSendRequest(ApiModel):
    phone_number: str = Field(..., alias="phoneNumber")


class OtpSendResponse(ApiModel):
    phone_number: str = Field(..., alias="phoneNumber")
    expires_in: int = Field(..., alias="expiresIn")
    code: Optional[str] = Field(None, description="Only returned in demo mode")


class OtpVerifyRequest(ApiModel):
    phone_number: str = Field(..., alias="phoneNumber")
    code: str = Field(..., pattern=r"^\d{6}$")


class ChainEvent(ApiModel):
    event: str
    block_number: int = Field(..., alias="blockNumber")
    tx_hash: str = Field(..., alias="txHash")
    args: Dict[str, Any] = Field(default_factory=dict)
