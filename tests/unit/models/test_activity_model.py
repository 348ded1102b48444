from decimal import Decimal

import pytest

from ludus.core.exceptions import InvalidTransitionException
from ludus.models.activity import Activity, ActivityStatus


def _activity(**overrides) -> Activity:
    values = dict(
        vendor_id="vendor-1",
        title="Sunset dhow cruise",
        base_price=Decimal("95.50"),
        currency="SAR",
        capacity=12,
        is_active=True,
        moderation_status=ActivityStatus.APPROVED.value,
    )
    values.update(overrides)
    return Activity(**values)


class TestActivityModel:
    def test_bookable_only_when_active_and_approved(self) -> None:
        assert _activity().is_bookable
        assert not _activity(is_active=False).is_bookable
        assert not _activity(moderation_status=ActivityStatus.PENDING.value).is_bookable

    def test_to_dict_serializes_price_as_string(self) -> None:
        data = _activity(description="Two hours on the water").to_dict()
        assert data["base_price"] == "95.50"
        assert data["moderation_status"] == "approved"
        assert data["description"] == "Two hours on the water"

    def test_moderation_status_is_guarded(self) -> None:
        activity = _activity(moderation_status=ActivityStatus.REJECTED.value)
        with pytest.raises(InvalidTransitionException):
            activity.moderation_status = ActivityStatus.APPROVED.value
        assert activity.moderation_status == "rejected"
