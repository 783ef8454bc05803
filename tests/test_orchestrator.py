import datetime as dt

import pytest

from petradar.common.errors import ExternalServiceError, ValidationError
from petradar.config import MatchingPolicy
from petradar.pet_db import (
    LostReportFields, MatchingOrchestrator, ReportStatus, SightingFields, SightingStatus, search_window,
)
from petradar.pet_db.models import ImageUpload
from petradar.pet_db.store import IMAGES, MATCHES, SIGHTINGS

from conftest import FakeObjectStore, hit, make_report, make_user, push_token

SIGHTING_DAY = "2025-06-15"


@pytest.fixture
def owners(store):
    for name in ("alice", "bob", "carol"):
        make_user(store, name, token=push_token(name))


@pytest.fixture
def candidates(store, owners):
    """A (Active), B (Found), C (Active) lost in the weeks before the sighting"""
    a = make_report(store, "alice", pet_name="Luna", lost_date="2025-06-01")
    b = make_report(store, "bob", pet_name="Milo", lost_date="2025-06-05", status=ReportStatus.FOUND)
    c = make_report(store, "carol", pet_name="Toby", lost_date="2025-06-10")
    return a, b, c


def sighting_fields(**overrides):
    params = dict(sighting_date=SIGHTING_DAY, description="Beagle near the park",
                  latitude=40.4187, longitude=-3.6951, location_text="Calle de Alcalá")
    params.update(overrides)
    return SightingFields(**params)


class TestNewSighting:

    def test_matches_active_reports_above_threshold(self, orchestrator, similarity, candidates, gateway):
        a, b, c = candidates
        similarity.hits = [hit(a.id, 0.9), hit(b.id, 0.8), hit(c.id, 0.75)]

        result = orchestrator.handle_new_sighting("reporter", sighting_fields(), photo_of_dog())

        assert result.match_count == 2
        assert [m.report_id for m in result.matches] == [a.id, c.id]
        assert [m.score for m in result.matches] == [0.9, 0.75]
        skipped = {o.subject_id: o.skipped for o in result.outcomes if o.skipped}
        assert skipped == {b.id: "report not active"}
        assert [s["token"] for s in gateway.sent] == [push_token("alice"), push_token("carol")]

    def test_found_report_skipped_even_at_perfect_similarity(self, orchestrator, similarity,
                                                             candidates, gateway, db):
        _, b, _ = candidates
        similarity.hits = [hit(b.id, 1.0)]

        result = orchestrator.handle_new_sighting("reporter", sighting_fields(), photo_of_dog())

        assert result.match_count == 0
        assert result.outcomes[0].skipped == "report not active"
        assert db.data[MATCHES] == {}
        assert gateway.sent == []

    def test_search_window_and_limit(self, orchestrator, similarity, candidates):
        orchestrator.handle_new_sighting("reporter", sighting_fields(), photo_of_dog())
        assert similarity.searches == [(dt.date(2025, 5, 16), dt.date(2025, 6, 22), 20)]

    def test_just_below_threshold_is_skipped(self, orchestrator, similarity, candidates):
        a, _, _ = candidates
        similarity.hits = [hit(a.id, 0.7499)]

        result = orchestrator.handle_new_sighting("reporter", sighting_fields(), photo_of_dog())

        assert result.match_count == 0
        assert result.outcomes[0].skipped == "below threshold"

    def test_sighting_is_on_street_with_photo(self, orchestrator, store, object_store, similarity):
        result = orchestrator.handle_new_sighting("reporter", sighting_fields(), photo_of_dog())

        stored = store.get_sighting(result.sighting.id)
        assert stored.status == SightingStatus.ON_STREET
        assert store.get_image(sighting_id=stored.id).vector_id == f"vec-{stored.id}"
        [path] = object_store.uploads
        assert path.startswith(f"sightings/{stored.id}/") and path.endswith(".jpg")
        assert similarity.registered == [(stored.id, dt.date(2025, 6, 15))]

    def test_response_payload(self, orchestrator, similarity, candidates):
        a, _, _ = candidates
        similarity.hits = [hit(a.id, 0.9)]

        payload = orchestrator.handle_new_sighting("reporter", sighting_fields(), photo_of_dog()).as_json()

        assert payload["matches_found"] == 1
        assert payload["matches"][0]["report_id"] == a.id
        assert payload["sighting"]["status"] == "OnStreet"
        assert payload["sighting"]["sighting_date"] == SIGHTING_DAY
        assert payload["sighting"]["latitude"] == pytest.approx(40.4187)
        assert payload["image"]["url"].startswith("https://storage.googleapis.com/")

    def test_hit_on_another_sighting_is_ignored(self, orchestrator, store, similarity):
        other = store.create_sighting("someone", sighting_fields())
        similarity.hits = [hit(other.id, 0.95)]

        result = orchestrator.handle_new_sighting("reporter", sighting_fields(), photo_of_dog())

        assert result.outcomes[0].skipped == "not a lost report"


class TestFailures:

    def test_notification_failure_does_not_stop_other_candidates(self, orchestrator, similarity,
                                                                 candidates, gateway):
        a, _, c = candidates
        gateway.behaviour[push_token("alice")] = ExternalServiceError("Push gateway failed: 503")
        similarity.hits = [hit(a.id, 0.9), hit(c.id, 0.8)]

        result = orchestrator.handle_new_sighting("reporter", sighting_fields(), photo_of_dog())

        assert result.match_count == 2
        first, second = result.outcomes
        assert not first.notification.delivered
        assert second.notification.delivered

    def test_owner_without_token_still_gets_match(self, orchestrator, store, similarity):
        make_user(store, "dave")
        report = make_report(store, "dave")
        similarity.hits = [hit(report.id, 0.8)]

        result = orchestrator.handle_new_sighting("reporter", sighting_fields(), photo_of_dog())

        assert result.match_count == 1
        assert result.outcomes[0].notification.reason == "No push token"

    def test_store_error_on_one_candidate(self, orchestrator, store, similarity, candidates, monkeypatch):
        a, _, c = candidates
        similarity.hits = [hit(a.id, 0.9), hit(c.id, 0.8)]
        create_match = store.create_match

        def flaky(report_id, sighting_id, score, *args, **kwargs):
            if report_id == a.id:
                raise RuntimeError("deadline exceeded")
            return create_match(report_id, sighting_id, score, *args, **kwargs)

        monkeypatch.setattr(store, "create_match", flaky)

        result = orchestrator.handle_new_sighting("reporter", sighting_fields(), photo_of_dog())

        assert result.outcomes[0].error == "deadline exceeded"
        assert [m.report_id for m in result.matches] == [c.id]

    def test_retry_creates_no_duplicate_matches(self, orchestrator, store, similarity, candidates, db):
        a, _, c = candidates
        similarity.hits = [hit(a.id, 0.9), hit(c.id, 0.8)]
        image = photo_of_dog()

        first = orchestrator.handle_new_sighting("reporter", sighting_fields(), image)
        again = orchestrator.match_candidates(first.sighting, image)

        assert first.match_count == 2
        assert [o.skipped for o in again] == ["already matched", "already matched"]
        assert len(db.data[MATCHES]) == 2

    def test_resubmitted_sighting_creates_no_new_matches(self, orchestrator, similarity, candidates,
                                                         object_store, gateway, db):
        a, _, c = candidates
        similarity.hits = [hit(a.id, 0.9), hit(c.id, 0.75)]

        first = orchestrator.handle_new_sighting("reporter", sighting_fields(), photo_of_dog())
        similarity.duplicate_of = first.image.vector_id
        second = orchestrator.handle_new_sighting("reporter", sighting_fields(), photo_of_dog())

        assert first.match_count == 2
        assert second.match_count == 0
        assert [o.skipped for o in second.outcomes] == ["already matched", "already matched"]
        assert second.sighting.id == first.sighting.id
        assert second.image.sighting_id == first.sighting.id
        assert len(db.data[MATCHES]) == 2
        assert list(db.data[SIGHTINGS]) == [first.sighting.id]
        assert len(gateway.sent) == 2
        kept = object_store.path_for_url(first.image.url)
        assert object_store.deleted == [path for path in object_store.uploads if path != kept]

    def test_upload_failure_leaves_no_image(self, store, similarity, dispatcher, db):
        orchestrator = MatchingOrchestrator(store, FakeObjectStore(fail=True), similarity, dispatcher)

        with pytest.raises(ExternalServiceError):
            orchestrator.handle_new_sighting("reporter", sighting_fields(), photo_of_dog())

        assert db.data[IMAGES] == {}
        assert similarity.registered == []
        assert len(db.data[SIGHTINGS]) == 1

    def test_registration_failure_leaves_no_image(self, orchestrator, similarity, db):
        similarity.fail_register = True
        with pytest.raises(ExternalServiceError):
            orchestrator.handle_new_sighting("reporter", sighting_fields(), photo_of_dog())
        assert db.data[IMAGES] == {}

    def test_search_failure_is_not_fatal(self, orchestrator, similarity, db):
        similarity.fail_search = True

        result = orchestrator.handle_new_sighting("reporter", sighting_fields(), photo_of_dog())

        assert result.match_count == 0
        assert "search failed" in result.search_error
        assert len(db.data[IMAGES]) == 1
        payload = result.as_json()
        assert payload["matches_found"] == 0
        assert payload["search_error"] == "Similarity service search failed"

    def test_successful_search_has_no_error(self, orchestrator):
        payload = orchestrator.handle_new_sighting("reporter", sighting_fields(), photo_of_dog()).as_json()
        assert payload["search_error"] is None

    def test_duplicate_photo_reuses_existing_image(self, orchestrator, store, similarity):
        lost = orchestrator.handle_new_lost_report(
            "alice", LostReportFields(pet_name="Luna", species="dog", lost_date="2025-06-01"), photo_of_dog())
        similarity.duplicate_of = lost.image.vector_id

        result = orchestrator.handle_new_sighting("reporter", sighting_fields(), photo_of_dog())

        assert result.image.id == lost.image.id
        assert store.get_image(sighting_id=result.sighting.id) is None
        assert store.get_sighting(result.sighting.id) is not None


class TestValidation:

    @pytest.mark.parametrize("image", [
        None,
        ImageUpload(data=b"", content_type="image/jpeg"),
        ImageUpload(data=b"GIF89a", content_type="image/gif", filename="dog.gif"),
        ImageUpload(data=b"x" * (10 * 1024 * 1024 + 1), content_type="image/png", filename="big.png"),
    ])
    def test_bad_image_creates_nothing(self, orchestrator, image, db):
        with pytest.raises(ValidationError):
            orchestrator.handle_new_sighting("reporter", sighting_fields(), image)
        assert db.data[SIGHTINGS] == {}

    def test_missing_date(self, orchestrator, db):
        with pytest.raises(ValidationError):
            orchestrator.handle_new_sighting("reporter", sighting_fields(sighting_date=None), photo_of_dog())
        assert db.data[SIGHTINGS] == {}


class TestLostReport:

    def test_registers_photo_under_lost_date(self, orchestrator, object_store, similarity, store):
        result = orchestrator.handle_new_lost_report(
            "alice", LostReportFields(pet_name="Luna", species="dog", lost_date="2025-06-01"),
            ImageUpload(data=b"png", content_type="image/png", filename="luna.png"))

        assert result.report.status == ReportStatus.ACTIVE
        assert similarity.registered == [(result.report.id, dt.date(2025, 6, 1))]
        assert similarity.searches == []
        [path] = object_store.uploads
        assert path.startswith(f"lost-pets/{result.report.id}/") and path.endswith(".png")
        assert store.get_image(report_id=result.report.id).url == result.image.url


def test_search_window_bounds():
    assert search_window(dt.date(2025, 6, 15)) == (dt.date(2025, 5, 16), dt.date(2025, 6, 22))
    assert search_window(dt.date(2025, 3, 1), MatchingPolicy(days_before=1, days_after=0)) == \
        (dt.date(2025, 2, 28), dt.date(2025, 3, 1))


def test_custom_policy_threshold(store, object_store, similarity, dispatcher):
    report = make_report(store, "alice")
    similarity.hits = [hit(report.id, 0.6)]
    orchestrator = MatchingOrchestrator(store, object_store, similarity, dispatcher,
                                        MatchingPolicy(similarity_threshold=0.5, max_results=5))

    result = orchestrator.handle_new_sighting("reporter", sighting_fields(), photo_of_dog())

    assert result.match_count == 1
    assert similarity.searches[0][2] == 5


def photo_of_dog():
    return ImageUpload(data=b"\xff\xd8\xff\xe0jpeg-bytes", content_type="image/jpeg", filename="dog.jpg")
