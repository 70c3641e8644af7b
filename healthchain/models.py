from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, Optional, Any
from enum import Enum
import uuid

from web3 import Web3

from healthchain.errors import ValidationError


class RecordType(str, Enum):
    """Fixed record categories accepted by the registry"""
    PHYSICAL_EXAMINATION = "Physical Examination"
    LAB_RESULTS = "Lab Results"
    PRESCRIPTION = "Prescription"
    DIAGNOSIS = "Diagnosis"
    VACCINATION = "Vaccination"
    ALLERGY_INFORMATION = "Allergy Information"
    TREATMENT_PLAN = "Treatment Plan"
    MEDICAL_IMAGING = "Medical Imaging"
    SURGERY = "Surgery"
    MENTAL_HEALTH_EVALUATION = "Mental Health Evaluation"
    DENTAL_RECORDS = "Dental Records"


class RecordStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


class GrantStatus(str, Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    REVOKED = "Revoked"
    EXPIRED = "Expired"


TERMINAL_STATUSES = (GrantStatus.REJECTED, GrantStatus.REVOKED, GrantStatus.EXPIRED)


class AuditAction(str, Enum):
    REQUEST_ACCESS = "RequestAccess"
    APPROVE = "Approve"
    REJECT = "Reject"
    REVOKE = "Revoke"
    READ_RECORD = "ReadRecord"


def normalize_address(address) -> str:
    """Return the checksummed form of a principal address"""
    if not isinstance(address, str) or not Web3.is_address(address.lower()):
        raise ValidationError(f"Invalid principal address: {address!r}")
    return Web3.to_checksum_address(address.lower())


def pair_key(a: str, b: str):
    """Key of the unordered (patient, provider) pair"""
    return tuple(sorted((a.lower(), b.lower())))


class RecordDescriptor(BaseModel):
    """Ledger entry pointing at an encrypted record in the content store"""
    record_id: str
    owner: str
    content_ref: str
    record_type: RecordType
    metadata: Dict[str, Any] = Field(default_factory=dict)
    integrity: Optional[str] = None
    status: RecordStatus = RecordStatus.ACTIVE
    version: int = 1
    created_at: int
    updated_at: int


class RecordVersion(BaseModel):
    """One link of a record's content history"""
    version: int
    content_ref: str
    integrity: Optional[str] = None
    recorded_at: int


class AccessGrant(BaseModel):
    """Time-bounded read grant from a patient to a provider"""
    grant_id: str
    patient: str
    provider: str
    requested_at: int
    duration_seconds: int
    status: GrantStatus = GrantStatus.PENDING
    decided_at: Optional[int] = None
    expires_at: Optional[int] = None
    revoked_at: Optional[int] = None

    def is_active(self, now: int) -> bool:
        """Approved and not yet expired at ``now``; expiry is always computed"""
        return (
            self.status == GrantStatus.APPROVED
            and self.expires_at is not None
            and now < self.expires_at
        )

    def effective_status(self, now: int) -> GrantStatus:
        if self.status == GrantStatus.APPROVED and not self.is_active(now):
            return GrantStatus.EXPIRED
        return self.status

    def is_open(self, now: int) -> bool:
        """Pending, or Approved and live"""
        return self.effective_status(now) in (GrantStatus.PENDING, GrantStatus.APPROVED)


class AuditEntry(BaseModel):
    """Immutable access event"""
    model_config = ConfigDict(frozen=True)

    seq: int
    actor: str
    subject: str
    action: AuditAction
    target: Optional[str] = None
    timestamp: int


class Transaction(BaseModel):
    """A mutation submitted to the ledger"""
    model_config = ConfigDict(frozen=True)

    kind: str
    sender: str
    args: Dict[str, Any] = Field(default_factory=dict)
    tx_id: str = Field(default_factory=lambda: uuid.uuid4().hex)


class Receipt(BaseModel):
    """Outcome of a confirmed transaction"""
    tx_id: str
    block: int
    timestamp: int
    result: Any = None


class RegisterRecordRequest(BaseModel):
    """Model for registering a record descriptor"""
    wallet_address: str
    record_type: str
    content_ref: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    integrity: Optional[str] = None


class UpdateRecordRequest(BaseModel):
    """Model for pointing a record at new content"""
    wallet_address: str
    content_ref: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    integrity: Optional[str] = None


class AccessRequest(BaseModel):
    """Model for a provider's access request"""
    wallet_address: str
    patient_address: str
    duration_days: int


class AccessDecision(BaseModel):
    """Model for approving or rejecting a pending request"""
    wallet_address: str
    provider_address: str
    approve: bool
    patient_address: Optional[str] = None


class AccessRevocation(BaseModel):
    """Model for revoking an approved grant"""
    wallet_address: str
    provider_address: str
    patient_address: Optional[str] = None


class ReadRecordRequest(BaseModel):
    """Model for an audited provider read"""
    wallet_address: str
    patient_address: str
