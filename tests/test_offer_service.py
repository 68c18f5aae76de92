from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app.errors import ExpiredError, UpstreamError, ValidationError
from app.services.amadeus_client import ProviderError
from app.services.offer_service import get_verified_offer, validate_search_window, verified_key, verify_offer


class TestVerifyOffer:
    def test_unchanged_offer(self, kv, provider, make_offer):
        v = verify_offer(kv, provider, "OFR1", make_offer())
        assert not v.price_changed
        assert v.seats_available
        assert v.total == Decimal("500.00")
        assert v.expiration > datetime.now(timezone.utc)
        assert kv.get(verified_key("OFR1"))["offerId"] == "OFR1"

    def test_price_change_is_flagged(self, kv, provider, make_offer):
        provider.price_offer.side_effect = None
        provider.price_offer.return_value = make_offer(total="480.00")

        v = verify_offer(kv, provider, "OFR1", make_offer(total="450.00"))

        assert v.price_changed
        assert v.original_price == Decimal("450.00")
        assert v.new_price == Decimal("480.00")
        # the provider's price is what is held
        assert get_verified_offer(kv, "OFR1").total == Decimal("480.00")

    def test_no_seats(self, kv, provider, make_offer):
        v = verify_offer(kv, provider, "OFR1", make_offer(seats=0))
        assert not v.seats_available

    def test_seat_count_carried_when_pricing_omits_it(self, kv, provider, make_offer):
        priced = make_offer()
        del priced["numberOfBookableSeats"]
        provider.price_offer.side_effect = None
        provider.price_offer.return_value = priced

        v = verify_offer(kv, provider, "OFR1", make_offer(seats=4))
        assert v.offer.numberOfBookableSeats == 4

    def test_provider_expired_offer(self, kv, provider, make_offer):
        provider.price_offer.side_effect = ProviderError("gone", status_code=400, expired=True)
        with pytest.raises(ExpiredError) as exc:
            verify_offer(kv, provider, "OFR1", make_offer())
        assert exc.value.code == "OFFER_EXPIRED"
        assert kv.get(verified_key("OFR1")) is None

    def test_provider_failure(self, kv, provider, make_offer):
        provider.price_offer.side_effect = ProviderError("timeout", timeout=True)
        with pytest.raises(UpstreamError) as exc:
            verify_offer(kv, provider, "OFR1", make_offer())
        assert exc.value.code == "OFFER_VERIFICATION_FAILED"

    def test_malformed_offer_rejected_before_provider_call(self, kv, provider):
        with pytest.raises(ValidationError):
            verify_offer(kv, provider, "OFR1", {"id": "OFR1", "price": {"total": "abc"}})
        provider.price_offer.assert_not_called()

    def test_path_and_body_ids_must_agree(self, kv, provider, make_offer):
        with pytest.raises(ValidationError):
            verify_offer(kv, provider, "OFR2", make_offer("OFR1"))

    def test_same_origin_and_destination_rejected_before_provider_call(self, kv, provider, make_offer):
        with pytest.raises(ValidationError) as exc:
            verify_offer(kv, provider, "OFR1", make_offer(origin="ACC", destination="ACC"))
        assert exc.value.details["field"] == "destination"
        provider.price_offer.assert_not_called()
        assert kv.get(verified_key("OFR1")) is None

    def test_past_departure_rejected_before_provider_call(self, kv, provider, make_offer):
        with pytest.raises(ValidationError):
            verify_offer(kv, provider, "OFR1", make_offer(days_out=-2))
        provider.price_offer.assert_not_called()

    def test_round_trip_checks_outbound_leg_only(self, kv, provider, make_offer):
        offer = make_offer()
        outbound = offer["itineraries"][0]["segments"][0]
        offer["itineraries"].append({"segments": [{
            "departure": {"iataCode": "NBO", "at": outbound["arrival"]["at"]},
            "arrival": {"iataCode": "ACC", "at": outbound["arrival"]["at"]},
        }]})
        assert verify_offer(kv, provider, "OFR1", offer).seats_available


class TestGetVerifiedOffer:
    def test_missing_snapshot(self, kv):
        with pytest.raises(ExpiredError):
            get_verified_offer(kv, "nope")

    def test_read_does_not_consume(self, kv, verified):
        verified()
        get_verified_offer(kv, "OFR1")
        assert get_verified_offer(kv, "OFR1").offer_id == "OFR1"

    def test_stale_snapshot_is_expired(self, kv, verified):
        verified()
        snap = kv.get(verified_key("OFR1"))
        snap["capturedAt"] = (datetime.now(timezone.utc) - timedelta(minutes=11)).isoformat()
        kv.set(verified_key("OFR1"), snap, 600)
        with pytest.raises(ExpiredError):
            get_verified_offer(kv, "OFR1")


class TestSearchWindow:
    TODAY = date(2026, 3, 31)

    def test_same_origin_and_destination(self):
        with pytest.raises(ValidationError):
            validate_search_window("ACC", "acc", date(2026, 4, 10), today=self.TODAY)

    def test_past_date(self):
        with pytest.raises(ValidationError):
            validate_search_window("ACC", "LOS", date(2026, 3, 30), today=self.TODAY)

    def test_too_far_ahead(self):
        with pytest.raises(ValidationError):
            validate_search_window("ACC", "LOS", date(2027, 3, 1), today=self.TODAY)

    def test_edge_of_window_is_allowed(self):
        # 11 months after Mar 31 clamps to Feb 28
        validate_search_window("ACC", "LOS", date(2027, 2, 28), today=self.TODAY)
        validate_search_window("ACC", "LOS", self.TODAY, today=self.TODAY)
