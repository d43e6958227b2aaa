"""FINANCE_BUCKET_GOVERNANCE_V1 effect handlers.

Treasurer assignment, the band's bucket-management policy, and the finance
buckets themselves can only change through an approved governance proposal
carrying these effects.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictBool

from bandgov.core.effects import EffectContext, EffectHandler, EffectRegistry
from bandgov.core.errors import EffectExecutionError

if TYPE_CHECKING:
    from bandgov.db.models import MemberRow

logger = logging.getLogger(__name__)

FINANCE_BUCKET_GOVERNANCE_V1 = "FINANCE_BUCKET_GOVERNANCE_V1"

SET_BUCKET_MANAGEMENT_POLICY = "SET_BUCKET_MANAGEMENT_POLICY"
ADD_TREASURER = "ADD_TREASURER"
REMOVE_TREASURER = "REMOVE_TREASURER"
CREATE_BUCKET = "CREATE_BUCKET"
UPDATE_BUCKET = "UPDATE_BUCKET"
DEACTIVATE_BUCKET = "DEACTIVATE_BUCKET"

# Suggested ``order`` values for clients composing a multi-effect proposal.
EFFECT_EXECUTION_ORDER: dict[str, int] = {
    SET_BUCKET_MANAGEMENT_POLICY: 1,
    ADD_TREASURER: 2,
    REMOVE_TREASURER: 3,
    CREATE_BUCKET: 4,
    UPDATE_BUCKET: 5,
    DEACTIVATE_BUCKET: 6,
}

FINANCE_BUCKET_GOVERNANCE_ALLOWED_ROLES = ("CONDUCTOR", "MODERATOR", "GOVERNOR", "FOUNDER")

BUCKET_NAME_MAX = 64

BucketManagementPolicy = Literal["TREASURER_ONLY", "OFFICER_TIER"]
BucketType = Literal["OPERATING", "PROJECT", "RESTRICTED", "UNRESTRICTED", "COMMITMENT"]
BucketVisibility = Literal["OFFICERS_ONLY", "MEMBERS"]


def can_create_finance_bucket_governance_proposal(role: str) -> bool:
    return role in FINANCE_BUCKET_GOVERNANCE_ALLOWED_ROLES


async def _require_member(context: EffectContext, effect_type: str, user_id: str) -> MemberRow:
    member = await context.repo.get_member(context.band_id, user_id)
    if member is None:
        msg = f"{effect_type}: User {user_id} is not a member of this band"
        raise EffectExecutionError(msg)
    return member


# --- Payloads ---


class PolicyPayload(BaseModel):
    value: BucketManagementPolicy


class TreasurerPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1)


class NewBucket(BaseModel):
    name: str = Field(min_length=1, max_length=BUCKET_NAME_MAX)
    type: BucketType
    visibility: BucketVisibility


class CreateBucketPayload(BaseModel):
    bucket: NewBucket


class BucketFields(BaseModel):
    """The only bucket fields a proposal may change. ``type`` is immutable."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=BUCKET_NAME_MAX)
    visibility: BucketVisibility | None = None
    is_active: StrictBool | None = Field(default=None, alias="isActive")


class UpdateBucketPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    bucket_id: str = Field(alias="bucketId", min_length=1)
    fields: BucketFields


class BucketRefPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    bucket_id: str = Field(alias="bucketId", min_length=1)


# --- Handlers ---


class SetBucketManagementPolicy(EffectHandler[PolicyPayload]):
    effect_type = SET_BUCKET_MANAGEMENT_POLICY
    payload_model = PolicyPayload

    async def apply(self, payload: PolicyPayload, context: EffectContext) -> None:
        await context.repo.set_bucket_management_policy(context.band_id, payload.value)


class AddTreasurer(EffectHandler[TreasurerPayload]):
    effect_type = ADD_TREASURER
    payload_model = TreasurerPayload

    async def check(self, payload: TreasurerPayload, context: EffectContext) -> list[str]:
        member = await context.repo.get_member(context.band_id, payload.user_id)
        if member is None:
            return [f"ADD_TREASURER: User {payload.user_id} is not a member of this band"]
        if member.status != "ACTIVE":
            return [f"ADD_TREASURER: User {payload.user_id} is not an active member"]
        if member.is_treasurer:
            return [f"ADD_TREASURER: User {payload.user_id} is already a treasurer"]
        return []

    async def apply(self, payload: TreasurerPayload, context: EffectContext) -> None:
        member = await _require_member(context, ADD_TREASURER, payload.user_id)
        await context.repo.update_member(member.id, is_treasurer=True)


class RemoveTreasurer(EffectHandler[TreasurerPayload]):
    effect_type = REMOVE_TREASURER
    payload_model = TreasurerPayload

    async def check(self, payload: TreasurerPayload, context: EffectContext) -> list[str]:
        repo = context.repo
        member = await repo.get_member(context.band_id, payload.user_id)
        if member is None:
            return [f"REMOVE_TREASURER: User {payload.user_id} is not a member of this band"]
        if not member.is_treasurer:
            return [f"REMOVE_TREASURER: User {payload.user_id} is not a treasurer"]
        settings = await repo.get_finance_settings(context.band_id)
        if settings is not None and settings.bucket_management_policy == "TREASURER_ONLY":
            if await repo.count_treasurers(context.band_id) <= 1:
                return [
                    "REMOVE_TREASURER: Cannot remove the last treasurer "
                    "when policy is TREASURER_ONLY"
                ]
        return []

    async def apply(self, payload: TreasurerPayload, context: EffectContext) -> None:
        member = await _require_member(context, REMOVE_TREASURER, payload.user_id)
        await context.repo.update_member(member.id, is_treasurer=False)


class CreateBucket(EffectHandler[CreateBucketPayload]):
    effect_type = CREATE_BUCKET
    payload_model = CreateBucketPayload

    async def check(self, payload: CreateBucketPayload, context: EffectContext) -> list[str]:
        errors: list[str] = []
        bucket = payload.bucket
        if await context.repo.get_bucket_by_name(context.band_id, bucket.name) is not None:
            errors.append(
                f'CREATE_BUCKET: A bucket named "{bucket.name}" already exists in this band'
            )
        if bucket.type == "OPERATING" and await context.repo.count_operating_buckets(
            context.band_id
        ):
            errors.append("CREATE_BUCKET: Only one OPERATING bucket is allowed per band")
        return errors

    async def apply(self, payload: CreateBucketPayload, context: EffectContext) -> None:
        bucket = await context.repo.create_bucket(
            band_id=context.band_id,
            name=payload.bucket.name,
            type=payload.bucket.type,
            visibility=payload.bucket.visibility,
            created_by_proposal_id=context.proposal_id,
        )
        logger.info("bucket_created band=%s bucket=%s", context.band_id, bucket.id)


class UpdateBucket(EffectHandler[UpdateBucketPayload]):
    effect_type = UPDATE_BUCKET
    payload_model = UpdateBucketPayload

    async def check(self, payload: UpdateBucketPayload, context: EffectContext) -> list[str]:
        changes = payload.fields.model_dump(exclude_unset=True)
        if not changes:
            return ["UPDATE_BUCKET: fields object with at least one field is required"]
        bucket = await context.repo.get_bucket(payload.bucket_id)
        if bucket is None:
            return [f"UPDATE_BUCKET: Bucket {payload.bucket_id} not found"]
        if bucket.band_id != context.band_id:
            return [f"UPDATE_BUCKET: Bucket {payload.bucket_id} does not belong to this band"]
        new_name = changes.get("name")
        if new_name is not None and new_name != bucket.name:
            if await context.repo.get_bucket_by_name(context.band_id, new_name) is not None:
                return [f'UPDATE_BUCKET: A bucket named "{new_name}" already exists in this band']
        return []

    async def apply(self, payload: UpdateBucketPayload, context: EffectContext) -> None:
        changes = payload.fields.model_dump(exclude_unset=True)
        await context.repo.update_bucket(payload.bucket_id, **changes)


class DeactivateBucket(EffectHandler[BucketRefPayload]):
    effect_type = DEACTIVATE_BUCKET
    payload_model = BucketRefPayload

    async def check(self, payload: BucketRefPayload, context: EffectContext) -> list[str]:
        bucket = await context.repo.get_bucket(payload.bucket_id)
        if bucket is None:
            return [f"DEACTIVATE_BUCKET: Bucket {payload.bucket_id} not found"]
        if bucket.band_id != context.band_id:
            return [f"DEACTIVATE_BUCKET: Bucket {payload.bucket_id} does not belong to this band"]
        if not bucket.is_active:
            return [f"DEACTIVATE_BUCKET: Bucket {payload.bucket_id} is already inactive"]
        if bucket.type == "OPERATING":
            if await context.repo.count_operating_buckets(context.band_id) <= 1:
                return ["DEACTIVATE_BUCKET: Cannot deactivate the only OPERATING bucket"]
        return []

    async def apply(self, payload: BucketRefPayload, context: EffectContext) -> None:
        await context.repo.update_bucket(payload.bucket_id, is_active=False)


FINANCE_BUCKET_HANDLERS: tuple[type[EffectHandler], ...] = (
    SetBucketManagementPolicy,
    AddTreasurer,
    RemoveTreasurer,
    CreateBucket,
    UpdateBucket,
    DeactivateBucket,
)


def register_finance_bucket_governance_effects(registry: EffectRegistry) -> None:
    """Register the six finance handlers and the V1 subtype whitelist."""
    for handler_cls in FINANCE_BUCKET_HANDLERS:
        registry.register(handler_cls())
    registry.register_subtype_effects(
        FINANCE_BUCKET_GOVERNANCE_V1,
        [handler_cls.effect_type for handler_cls in FINANCE_BUCKET_HANDLERS],
    )


def build_registry(allow_override: bool = False) -> EffectRegistry:
    """Build the process registry with every built-in subtype, then freeze it."""
    registry = EffectRegistry(allow_override=allow_override)
    register_finance_bucket_governance_effects(registry)
    registry.freeze()
    return registry
