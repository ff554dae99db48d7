"""
Biometric identity re-confirmation.

A re-confirmation binds the Provider identity of the requesting session
at initiation time (``expected_identity``) and, on callback, compares it
with the identity the Provider returns for the fresh authentication.

IMPORTANT DESIGN RULE:
- The comparison is exact string equality. No normalisation, no prefix
  or partial matching.
- An absent expected value is a mismatch, never a pass.
- Every mismatch emits exactly one SECURITY_INCIDENT audit record.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from signflow.app.core.config import Settings
from signflow.app.core.errors import (
    InvalidToken,
    JobNotFound,
    SecurityMismatch,
    ValidationError,
)
from signflow.app.events import AuditAction, SafeAuditor, SubjectType
from signflow.app.schemas.identity import CallerIdentity
from signflow.app.schemas.jobs import utcnow
from signflow.app.schemas.reconfirmation import (
    IdentityReconfirmation,
    ReconfirmationStatus,
    UsernameType,
)
from signflow.app.services.correlation import (
    TOKEN_TTL_SECONDS,
    CorrelationTokenStore,
    FlowKind,
)
from signflow.app.services.provider_identity import (
    AUTHORIZE_PATH,
    ProviderIdentityClient,
)
from signflow.app.storage.reconfirmations import ReconfirmationStore

logger = logging.getLogger("signflow.reconfirmation")

FACE_CALLBACK_PATH = "/face/callback"
RECONFIRM_SCOPE = "openid urn:uae:digitalid:profile:general"
IDENTITY_FIELD = "uuid"
INCIDENT_IDENTITY_MISMATCH = "IDENTITY_MISMATCH"


class ReconfirmationChallenge(BaseModel):
    verification_id: UUID
    authorization_url: str
    expires_in: int = TOKEN_TTL_SECONDS

    model_config = ConfigDict(frozen=True)


def identities_match(expected: Optional[str], returned: Optional[str]) -> bool:
    if not expected or not returned:
        return False
    return expected == returned


def username_hint(caller: CallerIdentity, username_type: UsernameType) -> str:
    if username_type is UsernameType.EID and caller.is_visitor:
        raise ValidationError(
            "Emirates ID login hint is not available for visitor accounts",
            code="INVALID_USERNAME_TYPE",
        )

    value = {
        UsernameType.EID: caller.eid,
        UsernameType.MOBILE: caller.mobile,
        UsernameType.EMAIL: caller.email,
    }[username_type]
    if not value:
        raise ValidationError(
            f"Profile has no {username_type.value.lower()} to use as login hint",
            code="MISSING_USERNAME",
        )
    return value


class ReconfirmationService:
    def __init__(
        self,
        *,
        settings: Settings,
        store: ReconfirmationStore,
        tokens: CorrelationTokenStore,
        provider: ProviderIdentityClient,
        auditor: SafeAuditor,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.store = store
        self.tokens = tokens
        self.provider = provider
        self.auditor = auditor
        self._clock = clock

    @property
    def redirect_uri(self) -> str:
        return f"{self.settings.app_base_url.rstrip('/')}{FACE_CALLBACK_PATH}"

    # ------------------------------------------------------------------
    # Initiation
    # ------------------------------------------------------------------

    async def initiate(
        self,
        caller: CallerIdentity,
        *,
        purpose: str,
        username_type: UsernameType,
        transaction_ref: Optional[str] = None,
        client_ip: Optional[str] = None,
    ) -> ReconfirmationChallenge:
        hint = username_hint(caller, username_type)
        if not purpose or not purpose.strip():
            raise ValidationError("A purpose is required", code="MISSING_PURPOSE")

        record = await self.store.save(
            IdentityReconfirmation(
                owner_id=caller.owner_id,
                purpose=purpose.strip(),
                transaction_ref=transaction_ref,
                expected_identity=caller.provider_identity,
                client_ip=client_ip,
                created_at=self._clock(),
            )
        )
        token = await self.tokens.issue(FlowKind.RECONFIRM, str(record.id), caller.owner_id)

        url = self.provider.authorize_url(
            AUTHORIZE_PATH,
            {
                "response_type": "code",
                "client_id": self.settings.provider_client_id,
                "redirect_uri": self.redirect_uri,
                "state": token,
                "scope": RECONFIRM_SCOPE,
                "acr_values": self.settings.reconfirmation_acr_values,
                "login_hint": hint,
                "ui_locales": "en",
            },
        )

        logger.info(
            "reconfirmation_initiated",
            extra={
                "verification_id": str(record.id),
                "username_type": username_type.value,
            },
        )
        await self.auditor.record(
            actor_id=caller.owner_id,
            action=AuditAction.RECONFIRM_INITIATED,
            subject_type=SubjectType.RECONFIRMATION,
            subject_id=str(record.id),
            client_ip=client_ip,
            purpose=record.purpose,
            transaction_ref=transaction_ref,
        )
        return ReconfirmationChallenge(verification_id=record.id, authorization_url=url)

    # ------------------------------------------------------------------
    # Callback
    # ------------------------------------------------------------------

    async def handle_callback(
        self,
        *,
        state: str,
        code: Optional[str],
        error: Optional[str] = None,
        client_ip: Optional[str] = None,
    ) -> IdentityReconfirmation:
        payload = await self.tokens.consume(state)
        if payload.flow_kind is not FlowKind.RECONFIRM or not payload.continuation:
            raise InvalidToken()
        try:
            record_id = UUID(payload.continuation)
        except ValueError:
            raise InvalidToken()

        record = await self.store.get(record_id)
        if record is None or record.status is not ReconfirmationStatus.PENDING:
            raise InvalidToken()

        if error or not code:
            reason = error or "missing_code"
            record = await self._finalize(
                record,
                status=ReconfirmationStatus.FAILED,
                match=None,
                error_message=f"Verification {reason} by user or Provider",
            )
            await self.auditor.record(
                actor_id=record.owner_id,
                action=AuditAction.RECONFIRM_FAILED,
                subject_type=SubjectType.RECONFIRMATION,
                subject_id=str(record.id),
                client_ip=client_ip,
                reason=reason,
            )
            return record

        access_token = await self.provider.exchange_code(code=code, redirect_uri=self.redirect_uri)
        userinfo = await self.provider.fetch_userinfo(access_token=access_token)
        returned = userinfo.get(IDENTITY_FIELD)
        returned = str(returned) if returned is not None else None

        if identities_match(record.expected_identity, returned):
            record = await self._finalize(
                record,
                status=ReconfirmationStatus.VERIFIED,
                match=True,
                returned_identity=returned,
                verified_at=self._clock(),
            )
            logger.info("reconfirmation_verified", extra={"verification_id": str(record.id)})
            await self.auditor.record(
                actor_id=record.owner_id,
                action=AuditAction.RECONFIRM_VERIFIED,
                subject_type=SubjectType.RECONFIRMATION,
                subject_id=str(record.id),
                client_ip=client_ip,
                purpose=record.purpose,
                transaction_ref=record.transaction_ref,
            )
            return record

        record = await self._finalize(
            record,
            status=ReconfirmationStatus.FAILED,
            match=False,
            returned_identity=returned,
            error_message="Identity mismatch",
        )
        logger.warning("reconfirmation_identity_mismatch", extra={"verification_id": str(record.id)})
        await self.auditor.record(
            actor_id=record.owner_id,
            action=AuditAction.SECURITY_INCIDENT,
            subject_type=SubjectType.RECONFIRMATION,
            subject_id=str(record.id),
            client_ip=client_ip or record.client_ip,
            incident_type=INCIDENT_IDENTITY_MISMATCH,
            expected_identity=record.expected_identity,
            received_identity=returned,
            purpose=record.purpose,
            transaction_ref=record.transaction_ref,
            verification_id=str(record.id),
        )
        raise SecurityMismatch()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_for_owner(self, record_id: UUID, owner_id: str) -> IdentityReconfirmation:
        record = await self.store.get(record_id)
        if record is None or record.owner_id != owner_id:
            raise JobNotFound("Verification not found")
        return record

    async def has_recent_verification(
        self,
        owner_id: str,
        window: Optional[timedelta] = None,
    ) -> bool:
        if window is None:
            window = timedelta(minutes=self.settings.reconfirmation_window_minutes)
        since = self._clock() - window
        return await self.store.find_recent_verified(owner_id, since) is not None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _finalize(self, record: IdentityReconfirmation, **changes) -> IdentityReconfirmation:
        # model_validate so the VERIFIED/match invariant is enforced on update.
        def _apply(current: IdentityReconfirmation) -> IdentityReconfirmation:
            data = current.model_dump()
            data.update(changes)
            return IdentityReconfirmation.model_validate(data)

        return await self.store.update(record.id, _apply)
