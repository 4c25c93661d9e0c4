import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from carehub.models import (
    STAGE_IDS,
    ContactCodeIssued,
    Provider,
    StageReview,
    VerificationRecord,
)
from carehub.services.accounts import (
    ProviderAccounts,
    derive_verification_status,
    provider_key,
    verification_key,
)
from carehub.services.common import Clock, utc_now
from carehub.services.errors import (
    MarketplaceConflictError,
    MarketplaceNotFoundError,
    MarketplaceValidationError,
)
from carehub.services.kv_store import KVStore

logger = logging.getLogger(__name__)

CONTACT_CHANNELS = ("email", "mobile")


def contact_code_key(provider_id: str, channel: str) -> str:
    return f"contact_code:{provider_id}:{channel}"


class VerificationWorkflow:
    """Four-stage provider verification.

    Stages move ``pending -> submitted -> approved | rejected``. A provider is
    ``verified`` exactly when all four stages are approved; the verification
    record and the provider profile are always written in one transaction.
    Blacklisting is an overlay on ``verification_status`` and does not touch
    the stages.
    """

    def __init__(
        self,
        store: KVStore,
        accounts: ProviderAccounts,
        *,
        clock: Clock = utc_now,
        strict_order: bool = False,
        attempts: int = 5,
        code_ttl_minutes: int = 10,
    ) -> None:
        self._store = store
        self._accounts = accounts
        self._clock = clock
        self._strict_order = strict_order
        self._attempts = attempts
        self._code_ttl = timedelta(minutes=code_ttl_minutes)

    def get_status(self, provider_id: str) -> VerificationRecord:
        raw = self._store.get(verification_key(provider_id))
        if not raw:
            raise MarketplaceNotFoundError("Verification record not found")
        return VerificationRecord.model_validate(raw)

    def list_pending(self) -> List[VerificationRecord]:
        rows = self._store.query_index("verification", "awaiting_review", True)
        pending = [VerificationRecord.model_validate(row) for row in rows if row]
        pending.sort(key=lambda record: record.created_at.isoformat() if record.created_at else "")
        return pending

    def submit_stage(self, provider_id: str, stage: int, data: Optional[Dict[str, Any]] = None) -> VerificationRecord:
        self._validate_stage(stage)
        key = verification_key(provider_id)

        def mutate(current: Optional[Dict[str, Any]]) -> Dict[str, Any]:
            if not current:
                raise MarketplaceNotFoundError("Verification record not found")
            record = VerificationRecord.model_validate(current)
            status = record.stages.get(stage, "pending")
            if status == "approved":
                raise MarketplaceConflictError(f"Stage {stage} is already approved")
            if status == "rejected":
                raise MarketplaceConflictError(f"Stage {stage} was rejected and cannot be resubmitted")
            self._check_order(record, stage)
            stages = {**record.stages, stage: "submitted"}
            stage_data = {**record.stage_data, stage: {**(data or {}), "submitted_at": self._clock().isoformat()}}
            return record.model_copy(update={"stages": stages, "stage_data": stage_data}).model_dump(mode="json")

        record = VerificationRecord.model_validate(self._store.update(key, mutate, attempts=self._attempts))
        logger.info("Provider %s submitted verification stage %s", provider_id, stage)
        return record

    def review(
        self,
        provider_id: str,
        stage: int,
        action: str,
        notes: str,
        reviewer_id: str,
    ) -> Tuple[VerificationRecord, Provider]:
        self._validate_stage(stage)
        if action not in {"approve", "reject"}:
            raise MarketplaceValidationError("action must be 'approve' or 'reject'")
        keys = [verification_key(provider_id), provider_key(provider_id)]

        def mutate(snapshot: Dict[str, Optional[Dict[str, Any]]]) -> Dict[str, Optional[Dict[str, Any]]]:
            record, provider = self._load_pair(snapshot, provider_id)
            status = record.stages.get(stage, "pending")
            # A rejected stage stays reviewable so an admin can overturn the rejection.
            if status not in {"submitted", "rejected"}:
                raise MarketplaceConflictError(f"Stage {stage} is {status}, only submitted or rejected stages can be reviewed")
            if action == "approve":
                self._check_order(record, stage)

            now = self._clock()
            review = StageReview(action=action, notes=notes, reviewer_id=reviewer_id, reviewed_at=now)  # type: ignore[arg-type]
            record = record.model_copy(
                update={
                    "stages": {**record.stages, stage: "approved" if action == "approve" else "rejected"},
                    "review_notes": {**record.review_notes, stage: review},
                }
            )
            changes: Dict[str, Any] = {}
            if record.all_approved():
                record = record.model_copy(update={"approved_at": now})
                changes.update(verified=True, verified_at=now)
                if not provider.is_blacklisted:
                    changes.update(verification_status="approved", available=True)
            elif record.any_rejected():
                changes.update(verified=False, available=False)
                if not provider.is_blacklisted:
                    changes["verification_status"] = "rejected"
            elif not provider.is_blacklisted:
                changes["verification_status"] = derive_verification_status(record)
            provider = provider.model_copy(update=changes)
            return {
                keys[0]: record.model_dump(mode="json"),
                keys[1]: provider.model_dump(mode="json"),
            }

        written = self._store.update_many(keys, mutate, attempts=self._attempts)
        record = VerificationRecord.model_validate(written[keys[0]])
        provider = Provider.model_validate(written[keys[1]])
        logger.info(
            "Reviewer %s %sd stage %s for provider %s (status %s, verified=%s)",
            reviewer_id,
            action,
            stage,
            provider_id,
            provider.verification_status,
            provider.verified,
        )
        return record, provider

    def unapprove(self, provider_id: str, admin_id: str) -> Provider:
        keys = [verification_key(provider_id), provider_key(provider_id)]

        def mutate(snapshot: Dict[str, Optional[Dict[str, Any]]]) -> Dict[str, Optional[Dict[str, Any]]]:
            record, provider = self._load_pair(snapshot, provider_id)
            if provider.verification_status != "approved":
                raise MarketplaceConflictError("Provider is not approved")
            # Stages go back to submitted, not pending, so they land in the review queue again.
            record = record.model_copy(update={"stages": {stage: "submitted" for stage in STAGE_IDS}, "approved_at": None})
            provider = provider.model_copy(
                update={
                    "verified": False,
                    "available": False,
                    "verification_status": "pending",
                    "unapproved_at": self._clock(),
                    "unapproved_by": admin_id,
                }
            )
            return {
                keys[0]: record.model_dump(mode="json"),
                keys[1]: provider.model_dump(mode="json"),
            }

        written = self._store.update_many(keys, mutate, attempts=self._attempts)
        logger.info("Provider %s unapproved by admin %s", provider_id, admin_id)
        return Provider.model_validate(written[keys[1]])

    def blacklist(self, provider_id: str, reason: str, admin_id: str) -> Provider:
        def mutate(provider: Provider) -> Provider:
            if provider.is_blacklisted:
                raise MarketplaceConflictError("Provider is already blacklisted")
            return provider.model_copy(
                update={
                    "verification_status": "blacklisted",
                    "available": False,
                    "blacklist_reason": reason,
                    "blacklisted_at": self._clock(),
                    "blacklisted_by": admin_id,
                }
            )

        provider = self._accounts.update(provider_id, mutate)
        logger.info("Provider %s blacklisted by admin %s", provider_id, admin_id)
        return provider

    def remove_blacklist(self, provider_id: str, admin_id: str) -> Provider:
        keys = [verification_key(provider_id), provider_key(provider_id)]

        def mutate(snapshot: Dict[str, Optional[Dict[str, Any]]]) -> Dict[str, Optional[Dict[str, Any]]]:
            record, provider = self._load_pair(snapshot, provider_id)
            if not provider.is_blacklisted:
                raise MarketplaceConflictError("Provider is not blacklisted")
            provider = provider.model_copy(
                update={
                    "verification_status": derive_verification_status(record),
                    "verified": record.all_approved(),
                    "blacklist_reason": None,
                    "blacklisted_at": None,
                    "blacklisted_by": None,
                }
            )
            return {keys[1]: provider.model_dump(mode="json")}

        written = self._store.update_many(keys, mutate, attempts=self._attempts)
        provider = Provider.model_validate(written[keys[1]])
        logger.info(
            "Blacklist removed from provider %s by admin %s (status %s)",
            provider_id,
            admin_id,
            provider.verification_status,
        )
        return provider

    def issue_contact_code(self, provider_id: str, channel: str) -> ContactCodeIssued:
        self._validate_channel(channel)
        self.get_status(provider_id)
        code = f"{secrets.randbelow(900000) + 100000}"
        expires_at = self._clock() + self._code_ttl
        self._store.set(contact_code_key(provider_id, channel), {"code": code, "expires_at": expires_at.isoformat()})
        logger.info("Issued %s verification code for provider %s", channel, provider_id)
        return ContactCodeIssued(channel=channel, code=code, expires_at=expires_at)  # type: ignore[arg-type]

    def confirm_contact_code(self, provider_id: str, channel: str, code: str) -> VerificationRecord:
        self._validate_channel(channel)
        keys = [verification_key(provider_id), contact_code_key(provider_id, channel)]

        def mutate(snapshot: Dict[str, Optional[Dict[str, Any]]]) -> Dict[str, Optional[Dict[str, Any]]]:
            if not snapshot[keys[0]]:
                raise MarketplaceNotFoundError("Verification record not found")
            stored = snapshot[keys[1]]
            if not stored:
                raise MarketplaceValidationError("Code not found or expired")
            if datetime.fromisoformat(str(stored.get("expires_at"))) < self._clock():
                raise MarketplaceValidationError("Code expired")
            if not secrets.compare_digest(str(stored.get("code", "")), code.strip()):
                raise MarketplaceValidationError("Invalid code")

            record = VerificationRecord.model_validate(snapshot[keys[0]])
            flag = "email_verified" if channel == "email" else "mobile_verified"
            record = record.model_copy(update={flag: True})
            if record.email_verified and record.mobile_verified and record.stages.get(1) == "pending":
                stage_data = {
                    **record.stage_data,
                    1: {"email_verified": True, "mobile_verified": True, "submitted_at": self._clock().isoformat()},
                }
                record = record.model_copy(update={"stages": {**record.stages, 1: "submitted"}, "stage_data": stage_data})
            return {keys[0]: record.model_dump(mode="json"), keys[1]: None}

        written = self._store.update_many(keys, mutate, attempts=self._attempts)
        logger.info("Provider %s confirmed %s", provider_id, channel)
        return VerificationRecord.model_validate(written[keys[0]])

    def _load_pair(
        self,
        snapshot: Dict[str, Optional[Dict[str, Any]]],
        provider_id: str,
    ) -> Tuple[VerificationRecord, Provider]:
        raw_record = snapshot[verification_key(provider_id)]
        raw_provider = snapshot[provider_key(provider_id)]
        if not raw_provider:
            raise MarketplaceNotFoundError("Provider not found")
        if not raw_record:
            raise MarketplaceNotFoundError("Verification record not found")
        return VerificationRecord.model_validate(raw_record), Provider.model_validate(raw_provider)

    def _check_order(self, record: VerificationRecord, stage: int) -> None:
        if not self._strict_order or stage == STAGE_IDS[0]:
            return
        if record.stages.get(stage - 1) != "approved":
            raise MarketplaceConflictError(f"Stage {stage - 1} must be approved before stage {stage}")

    def _validate_stage(self, stage: int) -> None:
        if stage not in STAGE_IDS:
            raise MarketplaceValidationError(f"Unknown verification stage: {stage}")

    def _validate_channel(self, channel: str) -> None:
        if channel not in CONTACT_CHANNELS:
            raise MarketplaceValidationError("channel must be 'email' or 'mobile'")
