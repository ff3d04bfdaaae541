"""Tests for StorageQuota model."""

import pytest
from django.db import IntegrityError

from server.apps.uploads.models import StorageQuota


@pytest.mark.django_db
def test_storage_quota_default_values(user):
    """Test StorageQuota default values."""
    quota = StorageQuota.objects.create(user=user)

    # Default quota is 10 GB
    assert quota.quota_bytes == 10 * 1024 * 1024 * 1024
    assert quota.used_bytes == 0
    assert quota.usage_by_category == {}


@pytest.mark.django_db
def test_storage_quota_one_to_one_constraint(user):
    """Test that a user can only have one quota record."""
    StorageQuota.objects.create(user=user)

    with pytest.raises(IntegrityError):
        StorageQuota.objects.create(user=user)


@pytest.mark.django_db
def test_storage_quota_str_representation(user):
    """Test StorageQuota string representation."""
    quota = StorageQuota.objects.create(
        user=user,
        quota_bytes=1024,
        used_bytes=512,
    )

    assert str(quota) == f'{user.username}: 512/1024'


@pytest.mark.django_db
def test_has_space_for(user):
    """Test has_space_for up to and past the exact limit."""
    quota = StorageQuota.objects.create(
        user=user,
        quota_bytes=1000,
        used_bytes=400,
    )

    assert quota.has_space_for(500)
    assert quota.has_space_for(600)
    assert not quota.has_space_for(601)


@pytest.mark.django_db
def test_available_bytes_never_negative(user):
    """Test available_bytes is clamped at zero when over quota."""
    quota = StorageQuota.objects.create(
        user=user,
        quota_bytes=1000,
        used_bytes=1500,
    )

    assert quota.available_bytes() == 0


@pytest.mark.django_db
def test_used_bytes_cannot_be_negative(user):
    """Test the database rejects negative usage."""
    with pytest.raises(IntegrityError):
        StorageQuota.objects.create(user=user, used_bytes=-1)
