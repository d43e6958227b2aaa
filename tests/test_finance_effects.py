"""Tests for the FINANCE_BUCKET_GOVERNANCE_V1 effect handlers."""

import pytest

from bandgov.core.effects import EffectContext
from bandgov.core.errors import EffectExecutionError
from bandgov.core.finance_effects import (
    AddTreasurer,
    CreateBucket,
    DeactivateBucket,
    RemoveTreasurer,
    SetBucketManagementPolicy,
    UpdateBucket,
    can_create_finance_bucket_governance_proposal,
)
from bandgov.db.repository import Repository


@pytest.fixture
async def band_id(make_band) -> str:
    band = await make_band()
    return band.id


@pytest.fixture
def context(repo: Repository, band_id: str) -> EffectContext:
    return EffectContext(
        band_id=band_id, repo=repo, proposal_id="p-1", executed_by_id="u-founder"
    )


async def _bucket(repo: Repository, band_id: str, name: str, bucket_type: str = "PROJECT"):
    return await repo.create_bucket(
        band_id=band_id, name=name, type=bucket_type, visibility="MEMBERS"
    )


class TestRoleGate:
    @pytest.mark.parametrize("role", ["CONDUCTOR", "MODERATOR", "GOVERNOR", "FOUNDER"])
    def test_allowed(self, role):
        assert can_create_finance_bucket_governance_proposal(role)

    @pytest.mark.parametrize("role", ["VOTING_MEMBER", "OBSERVER"])
    def test_denied(self, role):
        assert not can_create_finance_bucket_governance_proposal(role)


class TestSetBucketManagementPolicy:
    async def test_invalid_value(self, context):
        errors = await SetBucketManagementPolicy().validate({"value": "ANYONE"}, context)
        assert len(errors) == 1
        assert errors[0].startswith("SET_BUCKET_MANAGEMENT_POLICY: value must be")

    async def test_missing_value(self, context):
        errors = await SetBucketManagementPolicy().validate({}, context)
        assert errors == ["SET_BUCKET_MANAGEMENT_POLICY: value is required"]

    async def test_apply_creates_then_updates_settings(self, context, repo, band_id):
        handler = SetBucketManagementPolicy()
        await handler.execute({"value": "TREASURER_ONLY"}, context)
        settings = await repo.get_finance_settings(band_id)
        assert settings.bucket_management_policy == "TREASURER_ONLY"

        await handler.execute({"value": "OFFICER_TIER"}, context)
        settings = await repo.get_finance_settings(band_id)
        assert settings.bucket_management_policy == "OFFICER_TIER"


class TestTreasurers:
    async def test_add_requires_membership(self, context):
        errors = await AddTreasurer().validate({"userId": "u-stranger"}, context)
        assert errors == ["ADD_TREASURER: User u-stranger is not a member of this band"]

    async def test_add_requires_active_member(self, context, repo, band_id):
        await repo.add_member(band_id, "u-invited", status="INVITED")
        errors = await AddTreasurer().validate({"userId": "u-invited"}, context)
        assert errors == ["ADD_TREASURER: User u-invited is not an active member"]

    async def test_add_rejects_existing_treasurer(self, context, repo, band_id):
        await repo.add_member(band_id, "u-treasurer", is_treasurer=True)
        errors = await AddTreasurer().validate({"userId": "u-treasurer"}, context)
        assert errors == ["ADD_TREASURER: User u-treasurer is already a treasurer"]

    async def test_add_requires_user_id(self, context):
        errors = await AddTreasurer().validate({"userId": ""}, context)
        assert errors == ["ADD_TREASURER: userId is required"]

    async def test_add_and_remove(self, context, repo, band_id):
        await AddTreasurer().execute({"userId": "u-member-1"}, context)
        member = await repo.get_member(band_id, "u-member-1")
        assert member.is_treasurer

        assert await RemoveTreasurer().validate({"userId": "u-member-1"}, context) == []
        await RemoveTreasurer().execute({"userId": "u-member-1"}, context)
        member = await repo.get_member(band_id, "u-member-1")
        assert not member.is_treasurer

    @pytest.mark.parametrize("handler", [AddTreasurer(), RemoveTreasurer()])
    async def test_apply_fails_for_missing_member(self, context, handler):
        with pytest.raises(EffectExecutionError, match="u-gone is not a member of this band"):
            await handler.execute({"userId": "u-gone"}, context)

    async def test_remove_requires_treasurer(self, context):
        errors = await RemoveTreasurer().validate({"userId": "u-member-2"}, context)
        assert errors == ["REMOVE_TREASURER: User u-member-2 is not a treasurer"]

    async def test_cannot_remove_last_treasurer_under_treasurer_only(
        self, context, repo, band_id
    ):
        await repo.add_member(band_id, "u-treasurer", is_treasurer=True)
        await repo.set_bucket_management_policy(band_id, "TREASURER_ONLY")
        errors = await RemoveTreasurer().validate({"userId": "u-treasurer"}, context)
        assert errors == [
            "REMOVE_TREASURER: Cannot remove the last treasurer when policy is TREASURER_ONLY"
        ]

        await repo.add_member(band_id, "u-treasurer-2", is_treasurer=True)
        assert await RemoveTreasurer().validate({"userId": "u-treasurer"}, context) == []


class TestCreateBucket:
    async def test_name_length(self, context):
        payload = {"bucket": {"name": "x" * 65, "type": "PROJECT", "visibility": "MEMBERS"}}
        errors = await CreateBucket().validate(payload, context)
        assert errors == ["CREATE_BUCKET: bucket.name must be 64 characters or less"]

    async def test_duplicate_name(self, context, repo, band_id):
        await _bucket(repo, band_id, "Tour")
        payload = {"bucket": {"name": "Tour", "type": "PROJECT", "visibility": "MEMBERS"}}
        errors = await CreateBucket().validate(payload, context)
        assert errors == ['CREATE_BUCKET: A bucket named "Tour" already exists in this band']

    async def test_single_operating_bucket(self, context, repo, band_id):
        await _bucket(repo, band_id, "Main", "OPERATING")
        payload = {"bucket": {"name": "Other", "type": "OPERATING", "visibility": "MEMBERS"}}
        errors = await CreateBucket().validate(payload, context)
        assert errors == ["CREATE_BUCKET: Only one OPERATING bucket is allowed per band"]

    async def test_apply_records_proposal(self, context, repo, band_id):
        payload = {"bucket": {"name": "Tour", "type": "PROJECT", "visibility": "OFFICERS_ONLY"}}
        await CreateBucket().execute(payload, context)
        bucket = await repo.get_bucket_by_name(band_id, "Tour")
        assert bucket.visibility == "OFFICERS_ONLY"
        assert bucket.is_active
        assert bucket.created_by_proposal_id == "p-1"


class TestUpdateBucket:
    async def test_fields_required(self, context, repo, band_id):
        bucket = await _bucket(repo, band_id, "Tour")
        errors = await UpdateBucket().validate({"bucketId": bucket.id, "fields": {}}, context)
        assert errors == ["UPDATE_BUCKET: fields object with at least one field is required"]

    async def test_type_cannot_change(self, context, repo, band_id):
        bucket = await _bucket(repo, band_id, "Tour")
        payload = {"bucketId": bucket.id, "fields": {"type": "OPERATING"}}
        errors = await UpdateBucket().validate(payload, context)
        assert errors == ['UPDATE_BUCKET: Field "type" is not allowed']

    async def test_is_active_must_be_boolean(self, context, repo, band_id):
        bucket = await _bucket(repo, band_id, "Tour")
        payload = {"bucketId": bucket.id, "fields": {"isActive": "yes"}}
        errors = await UpdateBucket().validate(payload, context)
        assert errors == ["UPDATE_BUCKET: fields.isActive must be a boolean"]

    async def test_bucket_must_exist(self, context):
        payload = {"bucketId": "nope", "fields": {"name": "Renamed"}}
        errors = await UpdateBucket().validate(payload, context)
        assert errors == ["UPDATE_BUCKET: Bucket nope not found"]

    async def test_bucket_from_other_band(self, context, repo, make_band):
        other = await make_band(roster={"u-x": "FOUNDER"})
        bucket = await _bucket(repo, other.id, "Theirs")
        payload = {"bucketId": bucket.id, "fields": {"name": "Mine"}}
        errors = await UpdateBucket().validate(payload, context)
        assert errors == [f"UPDATE_BUCKET: Bucket {bucket.id} does not belong to this band"]

    async def test_rename_collision(self, context, repo, band_id):
        bucket = await _bucket(repo, band_id, "Tour")
        await _bucket(repo, band_id, "Gear")
        payload = {"bucketId": bucket.id, "fields": {"name": "Gear"}}
        errors = await UpdateBucket().validate(payload, context)
        assert errors == ['UPDATE_BUCKET: A bucket named "Gear" already exists in this band']

    async def test_apply(self, context, repo, band_id):
        bucket = await _bucket(repo, band_id, "Tour")
        payload = {
            "bucketId": bucket.id,
            "fields": {"name": "Tour 2027", "visibility": "OFFICERS_ONLY"},
        }
        assert await UpdateBucket().validate(payload, context) == []
        await UpdateBucket().execute(payload, context)
        updated = await repo.get_bucket(bucket.id)
        assert updated.name == "Tour 2027"
        assert updated.visibility == "OFFICERS_ONLY"
        assert updated.type == "PROJECT"


class TestDeactivateBucket:
    async def test_only_operating_bucket(self, context, repo, band_id):
        bucket = await _bucket(repo, band_id, "Main", "OPERATING")
        errors = await DeactivateBucket().validate({"bucketId": bucket.id}, context)
        assert errors == ["DEACTIVATE_BUCKET: Cannot deactivate the only OPERATING bucket"]

    async def test_already_inactive(self, context, repo, band_id):
        bucket = await _bucket(repo, band_id, "Tour")
        await repo.update_bucket(bucket.id, is_active=False)
        errors = await DeactivateBucket().validate({"bucketId": bucket.id}, context)
        assert errors == [f"DEACTIVATE_BUCKET: Bucket {bucket.id} is already inactive"]

    async def test_apply(self, context, repo, band_id):
        bucket = await _bucket(repo, band_id, "Tour")
        await DeactivateBucket().execute({"bucketId": bucket.id}, context)
        assert not (await repo.get_bucket(bucket.id)).is_active
