"""Verification state machine for credentials.

STATES
-------
    draft ──submit──▶ pending ──▶ inProgress ──▶ verified   (terminal)
                         │            │    ▲
                         │            └────┘ (re-claim)
                         └──────────────────▶ rejected   (terminal)

  draft → pending            owner only, billing already cleared
  pending|inProgress → inProgress|verified|rejected
                             reviewer (admin or verifier) only
  verified, rejected         no way out; re-verification needs a new
                             credential

A credential holds at most one open request.  Submitting while one is
open is a ConflictError, never a silent replacement.

TWO DOCUMENTS, ONE COMMIT
--------------------------
Every transition touches the VerificationRequest (timeline append) and
the Credential (status projection).  Both go into a single
``ledger.commit`` guarded by the versions we read, so a concurrent
reviewer action makes the second commit fail cleanly and nothing is
half-written.  On a store that could still diverge, the request
timeline is the source of truth and ``reconcile()`` rebuilds the
credential projection from it.

Attestation is requested from the Attestor BEFORE the commit.  If it
fails, nothing is written: the state machine never transitions on a
failed external call.  Once stamped, an attestation is never replaced.
"""

from __future__ import annotations

import logging

from app.core.clock import Clock, now_ms
from app.core.errors import (
    ConflictError,
    ExternalCollaboratorError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
    WriteConflict,
)
from app.core.metrics import (
    COLLABORATOR_FAILURES,
    RECONCILIATION_REPAIRS,
    VERIFICATION_CONFLICTS,
    VERIFICATION_TRANSITIONS,
)
from app.core.pricing import VERIFICATION_FEE
from app.db.ledger import ledger
from app.models.credential import (
    CREDENTIAL_TYPES,
    DRAFT,
    OPEN_STATUSES,
    PENDING,
    REJECTED,
    VERIFIED,
    Credential,
)
from app.models.principal import Principal
from app.models.verification import (
    REQUEST_STATUSES,
    TRANSITIONS,
    Clearance,
    VerificationRequest,
    project_status,
)
from app.repos.ledger import (
    CREDENTIALS,
    VERIFICATION_REQUESTS,
    Document,
    LedgerStore,
    Write,
)
from app.services.attestor import Attestation, Attestor, Sha256Attestor

logger = logging.getLogger(__name__)

CLEARANCE_SOURCES = frozenset({"entitlement", "credit", "fee_waived", "payment"})
EDITABLE_FIELDS = ("type", "title", "issuer", "description")
MAX_NOTE_LENGTH = 2000


class VerificationService:
    def __init__(
        self,
        ledger: LedgerStore,
        attestor: Attestor,
        clock: Clock = now_ms,
    ) -> None:
        self._ledger = ledger
        self._attestor = attestor
        self._clock = clock

    # ------------------------------------------------------------------
    # Credential CRUD (owner side)
    # ------------------------------------------------------------------

    async def create_credential(
        self,
        principal: Principal,
        *,
        type: str,
        title: str,
        issuer: str,
        description: str = "",
    ) -> Credential:
        fields = _validate_content(
            {"type": type, "title": title, "issuer": issuer, "description": description}
        )
        credential = Credential.new(owner_id=principal.user_id, at=self._clock(), **fields)
        await self._ledger.commit(
            [Write(CREDENTIALS, credential.id, credential.to_body(), expected_version=None)]
        )
        logger.info(
            "Credential created id=%s owner=%s type=%s",
            credential.id,
            principal.user_id,
            credential.type,
            extra={"credential_id": credential.id, "user_id": principal.user_id},
        )
        return credential

    async def get_credential(self, principal: Principal, credential_id: str) -> Credential:
        _, credential = await self._load_credential(credential_id)
        if not principal.may_read(credential.owner_id):
            raise PermissionDeniedError("not your credential")
        return credential

    async def edit_credential(
        self, principal: Principal, credential_id: str, changes: dict
    ) -> Credential:
        """Edit content fields.  Only the owner, only while draft."""
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"fields not editable: {', '.join(sorted(unknown))}")

        doc, credential = await self._load_credential(credential_id)
        self._require_owner(principal, credential)
        if credential.verification_status != DRAFT:
            raise ConflictError(
                "credential content is frozen once verification is requested",
                current_state=credential.verification_status,
            )

        merged = _validate_content(
            {name: changes.get(name, getattr(credential, name)) for name in EDITABLE_FIELDS}
        )
        updated = credential.with_changes(**merged, updated_at=self._clock())
        await self._commit_or_conflict(
            [Write(CREDENTIALS, credential.id, updated.to_body(), doc.version)],
            credential_id=credential.id,
        )
        return updated

    async def delete_credential(self, principal: Principal, credential_id: str) -> str:
        """Delete a credential.  Returns "deleted" or "archived".

        A credential with an open request cannot be deleted (reject the
        request first).  One that a finished request still references is
        archived (``deleted_at`` set) so the audit trail stays intact.
        """
        doc, credential = await self._load_credential(credential_id)
        self._require_owner(principal, credential)

        request = await self._current_request(credential)
        if request is not None and request.is_open:
            VERIFICATION_CONFLICTS.labels(reason="open_request").inc()
            raise ConflictError(
                "credential has an open verification request",
                current_state=request.status,
            )

        if request is not None:
            archived = credential.with_changes(
                deleted_at=self._clock(), updated_at=self._clock()
            )
            await self._commit_or_conflict(
                [Write(CREDENTIALS, credential.id, archived.to_body(), doc.version)],
                credential_id=credential.id,
            )
            mode = "archived"
        else:
            await self._commit_or_conflict(
                [Write(CREDENTIALS, credential.id, None, doc.version)],
                credential_id=credential.id,
            )
            mode = "deleted"

        logger.info(
            "Credential %s id=%s by owner=%s",
            mode,
            credential.id,
            principal.user_id,
            extra={"credential_id": credential.id, "user_id": principal.user_id},
        )
        return mode

    # ------------------------------------------------------------------
    # draft → pending
    # ------------------------------------------------------------------

    async def precheck_submission(
        self, principal: Principal, credential_id: str
    ) -> tuple[Document, Credential]:
        """Everything submit() checks, without writing.

        Billing runs this before consuming an entitlement or emitting a
        payment obligation, so a doomed request costs the user nothing.
        """
        doc, credential = await self._load_credential(credential_id)
        self._require_owner(principal, credential)
        await self._require_submittable(credential)
        return doc, credential

    def submission_writes(
        self,
        doc: Document,
        credential: Credential,
        clearance: Clearance,
        at: int,
        note: str | None = None,
    ) -> tuple[VerificationRequest, list[Write]]:
        """The writes that open a request; callers may add their own.

        The payment path commits these together with the payment status
        and the ledger credit, so all three land or none do.
        """
        _validate_clearance(clearance, credential.id)
        request = VerificationRequest.open(
            credential_id=credential.id,
            requester_id=credential.owner_id,
            clearance=clearance,
            at=at,
            note=clean_note(note, "note"),
        )
        updated = credential.with_changes(
            verification_status=PENDING,
            verification_request_id=request.id,
            updated_at=at,
        )
        writes = [
            Write(VERIFICATION_REQUESTS, request.id, request.to_body(), expected_version=None),
            Write(CREDENTIALS, credential.id, updated.to_body(), expected_version=doc.version),
        ]
        return request, writes

    async def submit(
        self,
        principal: Principal,
        credential_id: str,
        clearance: Clearance,
        note: str | None = None,
    ) -> VerificationRequest:
        _validate_clearance(clearance, credential_id)
        doc, credential = await self.precheck_submission(principal, credential_id)
        request, writes = self.submission_writes(
            doc, credential, clearance, self._clock(), note
        )
        await self._commit_or_conflict(writes, credential_id=credential.id)
        self.record_submission(request, clearance)
        return request

    def record_submission(self, request: VerificationRequest, clearance: Clearance) -> None:
        VERIFICATION_TRANSITIONS.labels(from_status=DRAFT, to_status=PENDING).inc()
        logger.info(
            "Verification requested credential=%s request=%s via %s",
            request.credential_id,
            request.id,
            clearance.source,
            extra={
                "credential_id": request.credential_id,
                "verification_request_id": request.id,
                "user_id": request.requester_id,
                "from_status": DRAFT,
                "to_status": PENDING,
            },
        )

    # ------------------------------------------------------------------
    # Reviewer transitions
    # ------------------------------------------------------------------

    async def advance(
        self,
        principal: Principal,
        request_id: str,
        new_status: str,
        note: str | None = None,
        public_note: str | None = None,
    ) -> VerificationRequest:
        if new_status not in REQUEST_STATUSES:
            raise ValidationError(
                f"status must be one of {', '.join(REQUEST_STATUSES)} (got {new_status!r})"
            )
        note = clean_note(note, "note")
        public_note = clean_note(public_note, "public_note")
        if new_status == REJECTED and not note:
            raise ValidationError("a rejection note is required")

        if not principal.is_reviewer():
            logger.warning(
                "Access denied: user=%s tried to advance request=%s",
                principal.user_id,
                request_id,
            )
            raise PermissionDeniedError("reviewer or admin role required")

        request_doc = await self._ledger.get(VERIFICATION_REQUESTS, request_id)
        if request_doc is None:
            raise NotFoundError("verification request not found")
        request = VerificationRequest.from_body(request_doc.body)

        if new_status not in TRANSITIONS.get(request.status, frozenset()):
            VERIFICATION_CONFLICTS.labels(reason="invalid_edge").inc()
            raise ConflictError(
                f"cannot move a {request.status} request to {new_status}",
                current_state=request.status,
            )

        cred_doc, credential = await self._load_credential(
            request.credential_id, include_deleted=True
        )
        at = request.next_timestamp(self._clock())

        changes: dict = {"verification_status": new_status, "updated_at": at}
        if new_status == VERIFIED and not credential.is_attested:
            attestation = await self._attest(credential, request, at)
            changes.update(
                attestation_hash=attestation.hash,
                attestation_id=attestation.attestation_id,
                attested_at=attestation.attested_at,
            )
        elif new_status == REJECTED:
            changes.update(rejected_at=at, rejection_reason=note)

        advanced = request.append(
            status=new_status,
            actor_id=principal.user_id,
            at=at,
            note=note,
            public_note=public_note,
        )
        updated = credential.with_changes(**changes)
        await self._commit_or_conflict(
            [
                Write(VERIFICATION_REQUESTS, request.id, advanced.to_body(), request_doc.version),
                Write(CREDENTIALS, credential.id, updated.to_body(), cred_doc.version),
            ],
            credential_id=credential.id,
            request_id=request.id,
        )

        VERIFICATION_TRANSITIONS.labels(
            from_status=request.status, to_status=new_status
        ).inc()
        logger.info(
            "Verification request=%s %s -> %s by reviewer=%s",
            request.id,
            request.status,
            new_status,
            principal.user_id,
            extra={
                "credential_id": credential.id,
                "verification_request_id": request.id,
                "user_id": principal.user_id,
                "from_status": request.status,
                "to_status": new_status,
            },
        )
        return advanced

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def status(
        self, principal: Principal, credential_id: str
    ) -> tuple[Credential, VerificationRequest | None]:
        credential = await self.get_credential(principal, credential_id)
        return credential, await self._current_request(credential)

    async def list_requests(
        self,
        principal: Principal,
        status: str | None = None,
        limit: int = 50,
    ) -> list[VerificationRequest]:
        """Reviewer queue, newest first."""
        if not principal.is_reviewer():
            raise PermissionDeniedError("reviewer or admin role required")
        if status is not None and status not in REQUEST_STATUSES:
            raise ValidationError(f"unknown status filter {status!r}")
        docs = await self._ledger.find(
            VERIFICATION_REQUESTS, {"status": status} if status else None
        )
        requests = [VerificationRequest.from_body(d.body) for d in docs]
        requests.sort(key=lambda r: (r.created_at, r.id), reverse=True)
        return requests[:limit]

    async def stale_requests(self, older_than_ms: int) -> list[VerificationRequest]:
        """Pending requests with no activity for ``older_than_ms``.

        Reported only.  Nothing here rejects or expires a request.
        """
        cutoff = self._clock() - older_than_ms
        docs = await self._ledger.find(VERIFICATION_REQUESTS, {"status": PENDING})
        stale = [
            r
            for r in (VerificationRequest.from_body(d.body) for d in docs)
            if r.last_entry.at <= cutoff
        ]
        stale.sort(key=lambda r: r.created_at)
        return stale

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile(self, request_id: str) -> bool:
        """Rebuild one credential's projection from its request timeline.

        Returns True when the credential needed (and got) a repair.
        """
        request_doc = await self._ledger.get(VERIFICATION_REQUESTS, request_id)
        if request_doc is None:
            raise NotFoundError("verification request not found")
        request = VerificationRequest.from_body(request_doc.body)

        cred_doc = await self._ledger.get(CREDENTIALS, request.credential_id)
        if cred_doc is None:
            logger.warning(
                "Request %s references missing credential %s",
                request.id,
                request.credential_id,
            )
            return False
        credential = Credential.from_body(cred_doc.body)
        if credential.verification_request_id not in (None, request.id):
            return False

        last = request.last_entry
        expected = project_status(last.status)
        changes: dict = {}
        if credential.verification_status != expected:
            changes["verification_status"] = expected
        if credential.verification_request_id != request.id:
            changes["verification_request_id"] = request.id
        if expected == VERIFIED and not credential.is_attested:
            try:
                attestation = await self._attest(credential, request, last.at)
            except ExternalCollaboratorError:
                logger.warning("Attestation still missing for credential=%s", credential.id)
            else:
                changes.update(
                    attestation_hash=attestation.hash,
                    attestation_id=attestation.attestation_id,
                    attested_at=attestation.attested_at,
                )
        if expected == REJECTED and credential.rejected_at is None:
            changes.update(rejected_at=last.at, rejection_reason=last.note)

        if not changes:
            return False
        return await self._apply_repair(cred_doc, credential, changes)

    async def reconcile_all(self) -> int:
        """Reconcile every request, then reset credentials left pointing
        at a request that does not exist.  Returns the repair count."""
        repaired = 0
        for doc in await self._ledger.find(VERIFICATION_REQUESTS):
            if await self.reconcile(doc.key):
                repaired += 1

        for status in sorted(OPEN_STATUSES):
            for cred_doc in await self._ledger.find(
                CREDENTIALS, {"verification_status": status}
            ):
                credential = Credential.from_body(cred_doc.body)
                if credential.verification_request_id is not None and (
                    await self._ledger.get(
                        VERIFICATION_REQUESTS, credential.verification_request_id
                    )
                    is not None
                ):
                    continue
                if await self._apply_repair(
                    cred_doc,
                    credential,
                    {"verification_status": DRAFT, "verification_request_id": None},
                ):
                    repaired += 1

        logger.info("Reconciliation pass complete repaired=%d", repaired)
        return repaired

    async def _apply_repair(
        self, doc: Document, credential: Credential, changes: dict
    ) -> bool:
        updated = credential.with_changes(
            **changes, updated_at=max(self._clock(), credential.updated_at)
        )
        try:
            await self._ledger.commit(
                [Write(CREDENTIALS, credential.id, updated.to_body(), doc.version)]
            )
        except WriteConflict:
            logger.info("Credential %s changed during reconciliation, skipped", credential.id)
            return False
        RECONCILIATION_REPAIRS.inc()
        logger.warning(
            "Repaired credential=%s fields=%s",
            credential.id,
            sorted(changes),
            extra={"credential_id": credential.id},
        )
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load_credential(
        self, credential_id: str, *, include_deleted: bool = False
    ) -> tuple[Document, Credential]:
        doc = await self._ledger.get(CREDENTIALS, credential_id)
        if doc is None:
            raise NotFoundError("credential not found")
        credential = Credential.from_body(doc.body)
        if credential.is_deleted and not include_deleted:
            raise NotFoundError("credential not found")
        return doc, credential

    async def _current_request(self, credential: Credential) -> VerificationRequest | None:
        if credential.verification_request_id is None:
            return None
        doc = await self._ledger.get(VERIFICATION_REQUESTS, credential.verification_request_id)
        return VerificationRequest.from_body(doc.body) if doc is not None else None

    async def _require_submittable(self, credential: Credential) -> None:
        request = await self._current_request(credential)
        if request is not None and request.is_open:
            VERIFICATION_CONFLICTS.labels(reason="open_request").inc()
            raise ConflictError(
                "credential already has an open verification request",
                current_state=request.status,
            )
        if credential.verification_status != DRAFT:
            VERIFICATION_CONFLICTS.labels(reason="invalid_edge").inc()
            raise ConflictError(
                "only draft credentials can be submitted for verification",
                current_state=credential.verification_status,
            )

    @staticmethod
    def _require_owner(principal: Principal, credential: Credential) -> None:
        if not principal.owns(credential.owner_id):
            logger.warning(
                "Access denied: user=%s is not owner of credential=%s",
                principal.user_id,
                credential.id,
            )
            raise PermissionDeniedError("not your credential")

    async def _attest(
        self, credential: Credential, request: VerificationRequest, at: int
    ) -> Attestation:
        try:
            attestation = await self._attestor.attest(credential, request, at)
        except Exception as exc:
            COLLABORATOR_FAILURES.labels(collaborator="attestor").inc()
            logger.exception("Attestor failed for credential=%s", credential.id)
            raise ExternalCollaboratorError("attestor", "attestation failed") from exc
        if (
            not isinstance(attestation, Attestation)
            or not attestation.hash
            or not attestation.attestation_id
        ):
            COLLABORATOR_FAILURES.labels(collaborator="attestor").inc()
            logger.error("Attestor returned malformed output for credential=%s", credential.id)
            raise ExternalCollaboratorError("attestor", "attestation was malformed")
        return attestation

    async def _commit_or_conflict(
        self,
        writes: list[Write],
        *,
        credential_id: str,
        request_id: str | None = None,
    ) -> None:
        try:
            await self._ledger.commit(writes)
        except WriteConflict as exc:
            VERIFICATION_CONFLICTS.labels(reason="concurrent_write").inc()
            current = await self._ledger.get(CREDENTIALS, credential_id)
            state = current.body.get("verification_status") if current is not None else None
            logger.info(
                "Concurrent write on %s/%s, transition refused",
                exc.collection,
                exc.key,
                extra={"credential_id": credential_id, "verification_request_id": request_id},
            )
            raise ConflictError(
                "credential changed concurrently, retry", current_state=state
            ) from exc


def _validate_content(fields: dict) -> dict:
    if fields["type"] not in CREDENTIAL_TYPES:
        raise ValidationError(
            f"type must be one of {', '.join(CREDENTIAL_TYPES)} (got {fields['type']!r})"
        )
    cleaned = {}
    for name in EDITABLE_FIELDS:
        value = fields[name]
        if not isinstance(value, str):
            raise ValidationError(f"{name} must be a string")
        cleaned[name] = value.strip()
    for required in ("title", "issuer"):
        if not cleaned[required]:
            raise ValidationError(f"{required} is required")
    return cleaned


def _validate_clearance(clearance: Clearance, credential_id: str) -> None:
    if clearance.action_type != VERIFICATION_FEE or clearance.target_id != credential_id:
        raise ValidationError("billing clearance does not cover this verification")
    if clearance.source not in CLEARANCE_SOURCES:
        raise ValidationError(f"unknown clearance source {clearance.source!r}")


def clean_note(note: str | None, name: str) -> str | None:
    if note is None:
        return None
    note = note.strip()
    if len(note) > MAX_NOTE_LENGTH:
        raise ValidationError(f"{name} is longer than {MAX_NOTE_LENGTH} characters")
    return note or None


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

verification_service = VerificationService(ledger, Sha256Attestor())
