import logging
from typing import Any, Callable, Dict, List, Optional

from carehub.models import STAGE_IDS, Provider, ProviderSignupRequest, VerificationRecord, VerificationStatus
from carehub.services.common import Clock, utc_now
from carehub.services.errors import (
    MarketplaceConflictError,
    MarketplaceError,
    MarketplaceNotFoundError,
    MarketplacePermissionError,
    MarketplaceValidationError,
)
from carehub.services.kv_store import KVStore

logger = logging.getLogger(__name__)


def provider_key(provider_id: str) -> str:
    return f"provider:{provider_id}"


def verification_key(provider_id: str) -> str:
    return f"verification:{provider_id}"


def derive_verification_status(record: VerificationRecord) -> VerificationStatus:
    if record.all_approved():
        return "approved"
    if record.any_rejected():
        return "rejected"
    if record.has_submitted():
        return "submitted"
    return "pending"


def is_eligible(provider: Provider) -> bool:
    return provider.verified and provider.verification_status == "approved"


class ProviderAccounts:
    """Provider profiles: signup, lookups and availability.

    Other services change provider records only through ``update`` (primary
    writes) or ``update_best_effort`` (secondary writes that must not fail the
    caller).
    """

    def __init__(self, store: KVStore, *, clock: Clock = utc_now, attempts: int = 5) -> None:
        self._store = store
        self._clock = clock
        self._attempts = attempts

    def register_provider(self, provider_id: str, request: ProviderSignupRequest) -> Provider:
        if not provider_id.strip():
            raise MarketplaceValidationError("Provider id is required")
        if not request.name.strip():
            raise MarketplaceValidationError("Provider name is required")
        if request.hourly_rate < 0:
            raise MarketplaceValidationError("hourly_rate cannot be negative")

        now = self._clock()
        skills = [skill.strip() for skill in request.skills if skill and skill.strip()]
        stages: Dict[int, str] = {stage: "pending" for stage in STAGE_IDS}
        stage_data: Dict[int, Dict[str, Any]] = {}
        submitted_at = now.isoformat()

        # Signup already carries evidence for some stages; those start out submitted.
        if request.email_verified and request.mobile_verified:
            stages[1] = "submitted"
            stage_data[1] = {"email": request.email, "phone": request.phone, "submitted_at": submitted_at}
        if request.id_card_number.strip() and request.id_card_copy.strip():
            stages[2] = "submitted"
            stage_data[2] = {
                "id_card_number": request.id_card_number.strip(),
                "id_card_copy": request.id_card_copy.strip(),
                "profile_photo": request.profile_photo,
                "submitted_at": submitted_at,
            }
        if request.specialty.strip() and skills:
            stages[3] = "submitted"
            stage_data[3] = {
                "specialty": request.specialty.strip(),
                "skills": skills,
                "experience_years": request.experience_years,
                "experience_details": request.experience_details,
                "certifications": request.certifications,
                "submitted_at": submitted_at,
            }
        stages[4] = "submitted"
        stage_data[4] = {"assessment": "scheduled", "submitted_at": submitted_at}

        record = VerificationRecord(
            provider_id=provider_id,
            provider_name=request.name.strip(),
            email_verified=request.email_verified,
            mobile_verified=request.mobile_verified,
            stages=stages,  # type: ignore[arg-type]
            stage_data=stage_data,
            created_at=now,
        )
        provider = Provider(
            id=provider_id,
            name=request.name.strip(),
            email=request.email.strip(),
            phone=request.phone.strip(),
            address=request.address.strip(),
            gender=request.gender,
            specialty=request.specialty.strip(),
            skills=skills,
            certifications=request.certifications,
            hourly_rate=request.hourly_rate,
            experience_years=request.experience_years,
            experience_details=request.experience_details,
            verification_status=derive_verification_status(record),
            created_at=now,
        )
        keys = [provider_key(provider_id), verification_key(provider_id)]

        def mutate(snapshot: Dict[str, Optional[Dict[str, Any]]]) -> Dict[str, Optional[Dict[str, Any]]]:
            if snapshot[keys[0]] is not None:
                raise MarketplaceConflictError("Provider already registered")
            return {
                keys[0]: provider.model_dump(mode="json"),
                keys[1]: record.model_dump(mode="json"),
            }

        self._store.update_many(keys, mutate, attempts=self._attempts)
        logger.info("Registered provider %s (status %s)", provider_id, provider.verification_status)
        return provider

    def get_provider(self, provider_id: str) -> Provider:
        raw = self._store.get(provider_key(provider_id))
        if not raw:
            raise MarketplaceNotFoundError("Provider not found")
        return Provider.model_validate(raw)

    def find_provider(self, provider_id: str) -> Optional[Provider]:
        raw = self._store.get(provider_key(provider_id))
        return Provider.model_validate(raw) if raw else None

    def list_providers(self, verification_status: Optional[str] = None) -> List[Provider]:
        if verification_status:
            rows = self._store.query_index("provider", "verification_status", verification_status)
        else:
            rows = self._store.list_by_prefix("provider:")
        providers = [Provider.model_validate(row) for row in rows if row]
        providers.sort(key=lambda provider: provider.created_at.isoformat() if provider.created_at else "", reverse=True)
        return providers

    def update(self, provider_id: str, mutate: Callable[[Provider], Provider]) -> Provider:
        def apply(current: Optional[Dict[str, Any]]) -> Dict[str, Any]:
            if not current:
                raise MarketplaceNotFoundError("Provider not found")
            return mutate(Provider.model_validate(current)).model_dump(mode="json")

        return Provider.model_validate(self._store.update(provider_key(provider_id), apply, attempts=self._attempts))

    def update_best_effort(self, provider_id: str, mutate: Callable[[Provider], Provider], action: str) -> Optional[Provider]:
        try:
            return self.update(provider_id, mutate)
        except MarketplaceError:
            logger.exception("Secondary provider update '%s' failed for %s", action, provider_id)
            return None

    def set_availability(self, provider_id: str, available: bool) -> Provider:
        def mutate(provider: Provider) -> Provider:
            if available and not is_eligible(provider):
                raise MarketplacePermissionError("Only verified providers can go available")
            return provider.model_copy(update={"available": available})

        provider = self.update(provider_id, mutate)
        logger.info("Provider %s availability set to %s", provider_id, available)
        return provider
