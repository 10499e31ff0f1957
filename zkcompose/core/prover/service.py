"""
Remote proving service - Wire protocol and transports.

Wire contract (JSON over HTTP, bytes as 0x-hex):

    PUT    /images/{image_id}   body: program binary      -> 200/204, 409 if present
    POST   /jobs                body: JobRequest          -> {"job_id": ...}
    GET    /jobs/{job_id}                                 -> JobStatus
    DELETE /jobs/{job_id}                                 -> best-effort cancel

Every response is validated with pydantic before it is used. Transport
errors are classified here: connection errors, timeouts, 429 and 5xx are
TransientServiceError; other 4xx are RemoteRejected.

Two transports implement `ProvingService`:
- HttpProvingService: a real service over requests
- DevProvingService: in-process service running the development guests
"""

import itertools
import threading
from typing import Dict, List, Literal, Optional, Protocol

import requests
from pydantic import BaseModel, Field, ValidationError, model_validator

from zkcompose.core.errors import (
    ExecutionFault,
    RemoteRejected,
    TransientServiceError,
    UnknownProgram,
)
from zkcompose.core.receipt import Assumption, Claim, Receipt
from zkcompose.crypto import hex_to_bytes
from zkcompose.utils.logger import get_logger

logger = get_logger("prover.service")

CLIENT_VERSION = "zkcompose/0.1"


# =============================================================================
# Wire Models
# =============================================================================


class ClaimModel(BaseModel):
    program_id: str
    journal_digest: str

    def to_claim(self) -> Claim:
        return Claim(
            program_id=hex_to_bytes(self.program_id),
            journal_digest=hex_to_bytes(self.journal_digest),
        )


class ReceiptModel(BaseModel):
    journal: str
    seal: str
    claim: ClaimModel
    assumptions: List[ClaimModel] = Field(default_factory=list)
    unresolved: List[ClaimModel] = Field(default_factory=list)

    def to_receipt(self) -> Receipt:
        return Receipt(
            journal=hex_to_bytes(self.journal),
            seal=hex_to_bytes(self.seal),
            claim=self.claim.to_claim(),
            assumptions=tuple(c.to_claim() for c in self.assumptions),
            unresolved=tuple(c.to_claim() for c in self.unresolved),
        )


class JobRequest(BaseModel):
    image_id: str
    public_input: str
    assumption_claims: List[ClaimModel] = Field(default_factory=list)
    assumption_receipts: List[ReceiptModel] = Field(default_factory=list)
    proof_kind: Literal["succinct", "groth16"] = "groth16"


class JobCreated(BaseModel):
    job_id: str = Field(min_length=1)


class JobStatus(BaseModel):
    status: Literal["pending", "complete", "failed"]
    receipt: Optional[ReceiptModel] = None
    error: Optional[str] = None

    @model_validator(mode="after")
    def _receipt_when_complete(self):
        if self.status == "complete" and self.receipt is None:
            raise ValueError("complete status without receipt")
        return self


def build_job_request(
    image_id: str,
    public_input: bytes,
    assumptions: List[Assumption],
    proof_kind: str = "groth16",
) -> dict:
    """Build the POST /jobs payload."""
    return JobRequest(
        image_id=image_id,
        public_input="0x" + public_input.hex(),
        assumption_claims=[ClaimModel(**a.claim.to_dict()) for a in assumptions],
        assumption_receipts=[
            ReceiptModel.model_validate(a.receipt.to_dict())
            for a in assumptions
            if a.receipt is not None
        ],
        proof_kind=proof_kind,
    ).model_dump()


class ProvingService(Protocol):
    """Transport to a remote proving service."""

    def upload_image(self, image_id: str, binary: bytes) -> None: ...

    def create_job(self, request: dict) -> str: ...

    def job_status(self, job_id: str) -> JobStatus: ...

    def cancel_job(self, job_id: str) -> None: ...


# =============================================================================
# HTTP Transport
# =============================================================================


class HttpProvingService:
    """
    Proving service over HTTP.

    Per-call network timeouts only; the overall job timeout belongs to the
    caller's polling loop.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        request_timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.request_timeout = request_timeout
        self.session = session or requests.Session()
        self.session.headers.update({"x-client-version": CLIENT_VERSION})
        if api_key:
            self.session.headers.update({"x-api-key": api_key})

    def _request(self, method: str, path: str, ok_statuses=(200, 201, 202, 204), **kwargs):
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.request_timeout, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientServiceError(f"{method} {path} failed", detail=str(e))
        except requests.RequestException as e:
            raise RemoteRejected(f"{method} {path} could not be sent", detail=str(e))

        if response.status_code in ok_statuses:
            return response
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientServiceError(
                f"{method} {path} returned {response.status_code}",
                detail=response.text[:200],
            )
        raise RemoteRejected(
            f"{method} {path} returned {response.status_code}",
            detail=response.text[:200],
        )

    def _json(self, response: requests.Response, model):
        try:
            return model.model_validate(response.json())
        except ValueError as e:
            # pydantic's ValidationError and JSON decode errors are both ValueErrors
            raise RemoteRejected("Malformed response from proving service", detail=str(e))

    def upload_image(self, image_id: str, binary: bytes) -> None:
        self._request(
            "PUT",
            f"/images/{image_id}",
            ok_statuses=(200, 201, 204, 409),
            data=binary,
            headers={"content-type": "application/octet-stream"},
        )

    def create_job(self, request: dict) -> str:
        response = self._request("POST", "/jobs", json=request)
        return self._json(response, JobCreated).job_id

    def job_status(self, job_id: str) -> JobStatus:
        response = self._request("GET", f"/jobs/{job_id}")
        return self._json(response, JobStatus)

    def cancel_job(self, job_id: str) -> None:
        self._request("DELETE", f"/jobs/{job_id}", ok_statuses=(200, 202, 204, 404))


# =============================================================================
# Dev Transport (in-process)
# =============================================================================


class DevProvingService:
    """
    In-process proving service backed by a proving capability.

    Jobs complete after `complete_after_polls` status calls, so callers see
    the same pending -> complete sequence as against a real service. Every
    submission creates a new job; nothing is deduplicated.
    """

    def __init__(
        self,
        registry,
        capability,
        complete_after_polls: int = 1,
        honor_cancel: bool = True,
    ):
        """
        Args:
            registry: ProgramRegistry of images the service already knows
            capability: Proving capability used to execute jobs
            complete_after_polls: Number of pending polls before completion
            honor_cancel: Whether cancel requests stop a job
        """
        self.registry = registry
        self.capability = capability
        self.complete_after_polls = complete_after_polls
        self.honor_cancel = honor_cancel
        self.images: Dict[str, bytes] = {image.image_id_hex: image.binary for image in registry}
        self.jobs: Dict[str, dict] = {}
        self.requests: List[dict] = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def upload_image(self, image_id: str, binary: bytes) -> None:
        self.images[image_id] = binary

    def create_job(self, request: dict) -> str:
        try:
            parsed = JobRequest.model_validate(request)
        except ValidationError as e:
            raise RemoteRejected("Malformed job request", detail=str(e))

        if parsed.image_id not in self.images:
            raise RemoteRejected(f"Unknown image {parsed.image_id}")

        receipts = [r.to_receipt() for r in parsed.assumption_receipts]
        for receipt in receipts:
            if not receipt.digest_matches():
                raise RemoteRejected(f"Assumption receipt {receipt.claim.short()} is inconsistent")

        with self._lock:
            job_id = f"dev-{next(self._ids):06d}"
            self.jobs[job_id] = {"request": parsed, "polls": 0, "status": None, "cancelled": False}
            self.requests.append(request)

        logger.debug(f"Dev service accepted job {job_id}")
        return job_id

    def _execute(self, parsed: JobRequest) -> JobStatus:
        receipts = {r.claim.to_claim(): r.to_receipt() for r in parsed.assumption_receipts}
        assumptions = [
            Assumption(claim=c.to_claim(), receipt=receipts.get(c.to_claim()))
            for c in parsed.assumption_claims
        ]
        try:
            image = self.registry.by_id(hex_to_bytes(parsed.image_id))
            receipt = self.capability.execute(
                image,
                b"",
                hex_to_bytes(parsed.public_input),
                assumptions,
            )
        except (ExecutionFault, UnknownProgram) as e:
            return JobStatus(status="failed", error=f"{e.kind}: {e}")
        return JobStatus(status="complete", receipt=ReceiptModel.model_validate(receipt.to_dict()))

    def job_status(self, job_id: str) -> JobStatus:
        with self._lock:
            job = self.jobs.get(job_id)
            if job is None:
                raise RemoteRejected(f"Unknown job {job_id}")
            if job["cancelled"]:
                return JobStatus(status="failed", error="cancelled")
            if job["status"] is not None:
                return job["status"]
            job["polls"] += 1
            if job["polls"] <= self.complete_after_polls:
                return JobStatus(status="pending")

        status = self._execute(job["request"])
        with self._lock:
            job["status"] = status
        return status

    def cancel_job(self, job_id: str) -> None:
        with self._lock:
            if job_id in self.jobs and self.honor_cancel:
                self.jobs[job_id]["cancelled"] = True
