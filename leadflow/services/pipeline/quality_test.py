"""Unit tests for the lead quality transforms."""

from datetime import datetime, timedelta, timezone

import pytest

from leadflow.services.pipeline import quality
from leadflow.services.pipeline.models import LeadStatus, NormalizedLead, RawRecord


NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def _lead(**overrides) -> NormalizedLead:
    data = {
        "business_name": "Joe's Plumbing",
        "address": "123 Main St, Austin, TX 78701, USA",
        "phone": "5125551234",
        "website_url": "https://joesplumbing.com",
        "google_rating": 4.5,
        "external_place_id": "place-1",
    }
    data.update(overrides)
    return NormalizedLead(**data)


# ---------------------------------------------------------------------------
# calculate_freshness_score
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestFreshnessScore:
    def test_fresh_data_scores_100(self):
        assert quality.calculate_freshness_score(NOW, now=NOW) == 100.0

    def test_decays_two_points_per_day(self):
        assert quality.calculate_freshness_score(NOW - timedelta(days=10), now=NOW) == 80.0

    def test_fractional_days_rounded(self):
        score = quality.calculate_freshness_score(NOW - timedelta(hours=6), now=NOW)
        assert score == 99.5

    def test_floor_at_zero(self):
        assert quality.calculate_freshness_score(NOW - timedelta(days=365), now=NOW) == 0.0

    def test_future_dates_capped_at_100(self):
        assert quality.calculate_freshness_score(NOW + timedelta(days=3), now=NOW) == 100.0

    def test_missing_date_counts_as_now(self):
        assert quality.calculate_freshness_score(None, now=NOW) == 100.0

    def test_accepts_iso_strings(self):
        score = quality.calculate_freshness_score("2025-05-31T12:00:00+00:00", now=NOW)
        assert score == 98.0


# ---------------------------------------------------------------------------
# is_social_or_directory_url
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestSocialOrDirectoryUrl:
    @pytest.mark.parametrize(
        "url",
        [
            "https://facebook.com/joes",
            "https://www.facebook.com/joes",
            "https://m.facebook.com/joes",
            "http://yelp.com/biz/joes",
            "https://linktr.ee/joes",
            "https://x.com/joes",
            "https://austin.bbb.org/profile/joes",
        ],
    )
    def test_detects_social_and_directory_hosts(self, url):
        assert quality.is_social_or_directory_url(url) is True

    @pytest.mark.parametrize(
        "url",
        [
            "https://joesplumbing.com",
            "https://notfacebook.com",
            "https://box.com",
            None,
            "",
            "not a url",
        ],
    )
    def test_regular_sites_are_not_flagged(self, url):
        assert quality.is_social_or_directory_url(url) is False


# ---------------------------------------------------------------------------
# normalize
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestNormalize:
    def test_trims_and_denulls_strings(self):
        lead = quality.normalize(
            RawRecord(business_name="  Joe's  ", address="   ", city=" Austin ")
        )
        assert lead.business_name == "Joe's"
        assert lead.address is None
        assert lead.city == "Austin"

    def test_falls_back_to_name(self):
        lead = quality.normalize({"name": "Joe's Plumbing"})
        assert lead.business_name == "Joe's Plumbing"

    def test_missing_name_becomes_empty_string(self):
        lead = quality.normalize({})
        assert lead.business_name == ""

    def test_phone_keeps_digits_and_leading_plus(self):
        assert quality.normalize({"phone": "+1 (512) 555-1234"}).phone == "+15125551234"
        assert quality.normalize({"phone": "(512) 555-1234"}).phone == "5125551234"
        assert quality.normalize({"phone": "512+555"}).phone == "512555"

    def test_phone_without_digits_is_dropped(self):
        assert quality.normalize({"phone": "n/a"}).phone is None

    def test_bare_domain_gets_https(self):
        lead = quality.normalize({"website_url": "joesplumbing.com"})
        assert lead.website_url == "https://joesplumbing.com"
        assert lead.has_website is True

    def test_existing_scheme_kept(self):
        lead = quality.normalize({"website_url": "http://joesplumbing.com"})
        assert lead.website_url == "http://joesplumbing.com"

    def test_social_website_is_not_a_website(self):
        lead = quality.normalize({"website_url": "https://www.facebook.com/joes"})
        assert lead.website_url == "https://www.facebook.com/joes"
        assert lead.has_website is False

    def test_no_website(self):
        lead = quality.normalize({"business_name": "Joe's"})
        assert lead.website_url is None
        assert lead.has_website is False

    def test_defaults(self):
        lead = quality.normalize({"business_name": "Joe's"})
        assert lead.source == "google_maps"
        assert lead.review_count == 0
        assert lead.pure_service_area_business is False
        assert lead.freshness_score == 100.0

    def test_freshness_from_source_date(self):
        old = datetime.now(timezone.utc) - timedelta(days=5)
        lead = quality.normalize({"business_name": "Joe's", "source_updated_at": old})
        assert 89.9 <= lead.freshness_score <= 90.0

    def test_supplied_freshness_kept(self):
        old = datetime.now(timezone.utc) - timedelta(days=5)
        lead = quality.normalize(
            {"business_name": "Joe's", "source_updated_at": old, "freshness_score": 42}
        )
        assert lead.freshness_score == 42.0

    def test_supplied_freshness_clamped(self):
        lead = quality.normalize({"business_name": "Joe's", "freshness_score": 150})
        assert lead.freshness_score == 100.0

    def test_keeps_rating_outside_range_for_validation(self):
        lead = quality.normalize({"business_name": "Joe's", "google_rating": 7})
        assert lead.google_rating == 7.0


# ---------------------------------------------------------------------------
# deduplicate
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestDeduplicate:
    def test_first_occurrence_wins_by_place_id(self):
        first = _lead(business_name="First")
        second = _lead(business_name="Second")
        result = quality.deduplicate([first, second])
        assert result == [first]

    def test_name_address_key_is_case_insensitive(self):
        a = _lead(external_place_id=None, business_name="Joe's", address="1 Main St")
        b = _lead(external_place_id=None, business_name="JOE'S", address="1 MAIN ST")
        assert quality.deduplicate([a, b]) == [a]

    def test_order_preserved(self):
        leads = [_lead(external_place_id=f"p{i}") for i in (3, 1, 2, 1)]
        result = quality.deduplicate(leads)
        assert [lead.external_place_id for lead in result] == ["p3", "p1", "p2"]

    def test_empty(self):
        assert quality.deduplicate([]) == []


# ---------------------------------------------------------------------------
# validate
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestValidate:
    def test_valid_lead(self):
        result = quality.validate(_lead())
        assert result.is_valid is True
        assert result.errors == []

    def test_collects_every_error(self):
        lead = _lead(
            business_name="",
            address=None,
            google_rating=6.0,
            phone="12345",
            website_url="ftp://joes.com",
        )
        result = quality.validate(lead)
        assert result.is_valid is False
        assert result.errors == [
            "business_name is required",
            "address is required",
            "google_rating must be between 0 and 5",
            "phone must contain at least 10 digits",
            "website_url must be a valid URL",
        ]

    def test_rating_bounds_inclusive(self):
        assert quality.validate(_lead(google_rating=0)).is_valid
        assert quality.validate(_lead(google_rating=5)).is_valid
        assert not quality.validate(_lead(google_rating=-0.1)).is_valid

    def test_optional_fields_may_be_missing(self):
        lead = _lead(phone=None, website_url=None, google_rating=None)
        assert quality.validate(lead).is_valid

    def test_phone_with_plus_counts_digits_only(self):
        assert quality.validate(_lead(phone="+123456789")).errors == [
            "phone must contain at least 10 digits"
        ]


# ---------------------------------------------------------------------------
# derive_metadata
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestDeriveMetadata:
    def test_full_score(self):
        metadata = quality.derive_metadata(_lead())
        assert metadata.quality_score == 100.0
        assert metadata.website_host == "joesplumbing.com"
        assert metadata.has_contact_channel is True

    def test_weights_are_all_or_nothing(self):
        lead = _lead(phone=None, website_url=None, google_rating=None)
        assert quality.derive_metadata(lead).quality_score == 50.0

    def test_host_strips_path(self):
        lead = _lead(website_url="https://joesplumbing.com/contact?x=1")
        assert quality.derive_metadata(lead).website_host == "joesplumbing.com"

    def test_no_contact_channel(self):
        metadata = quality.derive_metadata(_lead(phone=None, website_url=None))
        assert metadata.has_contact_channel is False
        assert metadata.website_host is None


# ---------------------------------------------------------------------------
# enrich
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestEnrich:
    def test_patch_wins(self):
        enriched = quality.enrich(_lead(), {"city": "Dallas", "quality_score": 70})
        assert enriched.city == "Dallas"
        assert enriched.quality_score == 70

    def test_status_defaults_to_validated(self):
        assert quality.enrich(_lead()).status == LeadStatus.VALIDATED

    def test_status_from_patch(self):
        enriched = quality.enrich(_lead(), {"status": LeadStatus.ENRICHED})
        assert enriched.status == LeadStatus.ENRICHED

    def test_refreshes_last_synced_at(self):
        lead = _lead(last_synced_at=NOW - timedelta(days=30))
        assert quality.enrich(lead).last_synced_at > lead.last_synced_at

    def test_recomputes_freshness_when_source_date_changes(self):
        lead = _lead(source_updated_at=NOW, freshness_score=100)
        older = datetime.now(timezone.utc) - timedelta(days=10)
        enriched = quality.enrich(lead, {"source_updated_at": older})
        assert 79.9 <= enriched.freshness_score <= 80.0

    def test_keeps_freshness_when_source_date_unchanged(self):
        lead = _lead(source_updated_at=NOW - timedelta(days=10), freshness_score=55)
        enriched = quality.enrich(lead, {"city": "Austin"})
        assert enriched.freshness_score == 55

    def test_explicit_freshness_wins(self):
        lead = _lead(source_updated_at=NOW)
        enriched = quality.enrich(
            lead, {"source_updated_at": NOW - timedelta(days=10), "freshness_score": 12}
        )
        assert enriched.freshness_score == 12
