"""Enhancement orchestrator: the only write path that spends a credit.

Order of side effects for an authenticated request:

1. resolve the profile
2. decide (deny before any external side effect)
3. upload the original
4. produce the artifact (client-rendered filter output, or inference)
5. upload the enhanced artifact
6. spend the credit and write the image record in one transaction

A failure before step 6 spends nothing. Uploads from a failed step 6 are
orphans and are removed by the retention sweep.
"""
import logging
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from enhancer.adapters.inference import InferenceTimeout, ReplicateInference, decode_data_url
from enhancer.adapters.storage import SupabaseStorage
from enhancer.core.config import Settings
from enhancer.core.errors import (
    NEEDS_PURCHASE,
    InsufficientEntitlement,
    InvalidRequest,
    UnknownOutcome,
    UpstreamUnavailable,
)
from enhancer.data.images import CreditRaceLost, ImageRecord, ImageStore
from enhancer.data.profiles import AI, BASIC, Profile
from enhancer.services.entitlements import EntitlementReconciler, Identity

log = logging.getLogger("enhancement")

MODES = (BASIC, AI)
DEFAULT_LABELS = {BASIC: "Basic enhancement", AI: "AI face restoration (GFPGAN v1.4)"}
EXTENSIONS = {"image/png": "png", "image/jpeg": "jpg", "image/webp": "webp", "image/gif": "gif"}


@dataclass(frozen=True)
class EnhanceRequest:
    mode: str
    image: str
    # basic mode: the client-rendered filter output as a data URL
    filtered: Optional[str] = None
    prompt_label: Optional[str] = None
    model: str = "gfpgan"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "EnhanceRequest":
        return cls(
            mode=raw.get("mode") or AI,
            image=raw.get("image") or "",
            filtered=raw.get("filtered"),
            prompt_label=raw.get("prompt_label"),
            model=raw.get("model") or "gfpgan",
        )


@dataclass(frozen=True)
class EnhanceOutcome:
    mode: str
    original_url: str
    enhanced_url: str
    image: Optional[ImageRecord] = None
    profile: Optional[Profile] = None
    guest_used: Optional[int] = None
    guest_remaining: Optional[int] = None

    def to_public(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "mode": self.mode,
            "originalUrl": self.original_url,
            "enhancedUrl": self.enhanced_url,
        }
        if self.image is not None:
            out["image"] = self.image.to_public()
        if self.profile is not None:
            out["credits"] = self.profile.credits
            out["aiCredits"] = self.profile.ai_credits
            out["tier"] = self.profile.tier
        if self.guest_used is not None:
            out["guestUsed"] = self.guest_used
            out["guestRemaining"] = self.guest_remaining
        return out


def _ext(content_type: str) -> str:
    return EXTENSIONS.get(content_type, "png")


class EnhancementOrchestrator:
    def __init__(
        self,
        reconciler: EntitlementReconciler,
        images: ImageStore,
        storage: SupabaseStorage,
        inference: ReplicateInference,
        settings: Settings,
        guest=None,
    ):
        self.reconciler = reconciler
        self.images = images
        self.storage = storage
        self.inference = inference
        self.settings = settings
        self.guest = guest

    def _validate(self, req: EnhanceRequest):
        if req.mode not in MODES:
            raise InvalidRequest(f"Unknown mode: {req.mode}")
        original = decode_data_url(req.image)
        filtered = None
        if req.mode == BASIC:
            if not req.filtered:
                raise InvalidRequest("Basic enhancement needs the filtered image.")
            filtered = decode_data_url(req.filtered)
        return original, filtered

    async def _run_inference(self, original_url: str, model: str):
        try:
            result = await self.inference.enhance(original_url, model)
        except InferenceTimeout as e:
            raise UpstreamUnavailable(
                "inference", "The enhancement took too long. Nothing was charged; please retry."
            ) from e
        return await self.inference.fetch_artifact(result.output_url)

    async def enhance(self, identity: Identity, req: EnhanceRequest) -> EnhanceOutcome:
        if identity.is_guest:
            decision = await self.reconciler.decide(identity, BASIC)
            decision.raise_for_denial()
        user_id = identity.user_id
        profile = self.reconciler.resolve_profile(user_id)
        decision = await self.reconciler.decide(identity, req.mode, profile)
        decision.raise_for_denial()

        (orig_bytes, orig_type), filtered = self._validate(req)
        stem = uuid.uuid4().hex
        original_url = await self.storage.upload(
            f"{user_id}/{stem}-original.{_ext(orig_type)}", orig_bytes, orig_type
        )
        if req.mode == BASIC:
            enh_bytes, enh_type = filtered
        else:
            enh_bytes, enh_type = await self._run_inference(original_url, req.model)
        enhanced_url = await self.storage.upload(
            f"{user_id}/{stem}-enhanced.{_ext(enh_type)}", enh_bytes, enh_type
        )

        record = ImageRecord(
            user_id=user_id,
            original_url=original_url,
            enhanced_url=enhanced_url,
            prompt_label=req.prompt_label or DEFAULT_LABELS[req.mode],
            mode=req.mode,
        )
        try:
            self.images.record_enhancement(record, decision.spend)
        except CreditRaceLost:
            log.info("enhancement.race_lost user=%s mode=%s", user_id, req.mode)
            raise InsufficientEntitlement(
                NEEDS_PURCHASE, "You have no credits left for this enhancement. Choose a plan to continue."
            )
        except SQLAlchemyError:
            log.exception("enhancement.record failed user=%s image=%s", user_id, record.id)
            raise UnknownOutcome()

        after = self.reconciler.profiles.get(user_id)
        log.info(
            "enhancement.done user=%s mode=%s image=%s credits=%s ai=%s",
            user_id,
            req.mode,
            record.id,
            after.credits if after else None,
            after.ai_credits if after else None,
        )
        return EnhanceOutcome(req.mode, original_url, enhanced_url, image=record, profile=after)

    async def enhance_guest(self, identity: Identity, req: EnhanceRequest) -> EnhanceOutcome:
        """AI path for guests: counted by the guest tracker, no image record written."""
        if req.mode not in MODES:
            raise InvalidRequest(f"Unknown mode: {req.mode}")
        if not identity.guest_session:
            raise InvalidRequest("Missing guest session id.")
        # basic mode is account-only, so guests get needs_sign_up for it
        decision = await self.reconciler.decide(identity, req.mode)
        decision.raise_for_denial()

        (orig_bytes, orig_type), _ = self._validate(req)
        stem = uuid.uuid4().hex
        prefix = f"guests/{identity.guest_session}"
        original_url = await self.storage.upload(
            f"{prefix}/{stem}-original.{_ext(orig_type)}", orig_bytes, orig_type
        )
        enh_bytes, enh_type = await self._run_inference(original_url, req.model)
        enhanced_url = await self.storage.upload(
            f"{prefix}/{stem}-enhanced.{_ext(enh_type)}", enh_bytes, enh_type
        )
        used = await self.guest.record_use(identity.guest_session, identity.reported_guest_uses)
        remaining = max(0, self.settings.FREE_CREDITS - used)
        log.info("enhancement.guest session=%s used=%d", identity.guest_session, used)
        return EnhanceOutcome(
            AI, original_url, enhanced_url, guest_used=used, guest_remaining=remaining
        )
