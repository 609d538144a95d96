"""
Tests for the annotation lifecycle coordinator.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from annotation_api.annotation_manager import (
    UNSET,
    AnnotationFilter,
    AnnotationPatch,
    AnnotationRecord,
)
from annotation_api.errors import (
    BadStatus,
    EmptyBody,
    InvalidTransition,
    NotFound,
    PipelineError,
    PublisherUnavailable,
    UnsupportedType,
    ValidationError,
)
from annotation_api.events import ProgressBroadcaster
from annotation_api.models import AnnotationStatus, AnnotationUpdateRequest

from conftest import build_pdf


class RecordingBroadcaster(ProgressBroadcaster):
    def __init__(self, published):
        super().__init__()
        self.published = published

    def publish(self, topic, event):
        self.published.append(event)
        return super().publish(topic, event)


def create(manager, title="Intro", user_id="user-1", pdf=None):
    return manager.create_annotation(user_id, title, None, pdf or build_pdf("Cats are mammals."), "pdf")


class TestCreateAnnotation:
    def test_completed_record_is_persisted(self, manager):
        record = create(manager)

        assert record.status == AnnotationStatus.COMPLETED
        assert record.genre == "Educational"
        assert record.annotation == "Cats are mammals."
        assert record.text_content == "Cats are mammals."
        assert record.error_message is None

        stored = manager.get_annotation(record.id)
        assert stored.status == AnnotationStatus.COMPLETED
        assert stored.annotation == "Cats are mammals."
        assert stored.updated_at >= stored.created_at

    def test_missing_genre_line_defaults_to_other(self, manager):
        manager.generator.response = "Felines are obligate carnivores."
        record = create(manager)
        assert record.genre == "Other"
        assert record.annotation == "Felines are obligate carnivores."

    def test_blank_title_is_rejected_before_anything_is_stored(self, manager):
        with pytest.raises(ValidationError):
            create(manager, title="  ")
        assert manager.list_annotations() == []

    def test_extraction_failure_persists_failed_record(self, manager):
        with pytest.raises(PipelineError) as exc_info:
            create(manager, pdf=build_pdf(""))

        failed = exc_info.value.annotation
        assert exc_info.value.status_code == 500
        assert failed.status == AnnotationStatus.FAILED
        assert failed.error_message.startswith("Text extraction failed")
        assert manager.generator.calls == []

        stored = manager.get_annotation(failed.id)
        assert stored.status == AnnotationStatus.FAILED
        assert stored.error_message == failed.error_message

    def test_unsupported_type_fails_the_record(self, manager):
        with pytest.raises(PipelineError) as exc_info:
            manager.create_annotation("user-1", "Intro", None, b"hello", "docx")
        assert isinstance(exc_info.value.cause, UnsupportedType)
        assert exc_info.value.status_code == 400

    def test_generation_failure_persists_failed_record(self, manager):
        manager.generator.error = BadStatus("Ollama API error (status 500): boom", upstream_status=500)

        with pytest.raises(PipelineError) as exc_info:
            create(manager)

        failed = manager.get_annotation(exc_info.value.annotation.id)
        assert failed.status == AnnotationStatus.FAILED
        assert failed.error_message == "Annotation generation failed: Ollama API error (status 500): boom"
        assert failed.text_content == "Cats are mammals."

    def test_progress_events_are_published(self, manager):
        published = []
        manager.broadcaster = RecordingBroadcaster(published)

        record = create(manager)

        assert [event.step for event in published] == ["created", "extracting", "generating", "completed"]
        assert all(event.annotation_id == record.id for event in published)
        assert published[-1].is_terminal
        assert published[-1].progress == 100


class TestUpdateAnnotation:
    def test_empty_patch_only_advances_updated_at(self, manager):
        record = create(manager)
        old = datetime(2020, 1, 1, tzinfo=timezone.utc)
        manager.database.update_annotation(record.id, {"updated_at": old})

        updated = manager.update_annotation(record.id, AnnotationPatch())

        assert updated.title == record.title
        assert updated.annotation == record.annotation
        assert updated.genre == record.genre
        assert updated.updated_at > old

    def test_set_fields_change(self, manager):
        record = create(manager)
        updated = manager.update_annotation(record.id, AnnotationPatch(title="Felines", genre="Academic"))
        assert updated.title == "Felines"
        assert updated.genre == "Academic"
        assert updated.annotation == record.annotation

    def test_blank_title_rejected(self, manager):
        record = create(manager)
        with pytest.raises(ValidationError):
            manager.update_annotation(record.id, AnnotationPatch(title=""))

    def test_blank_genre_rejected_on_completed(self, manager):
        record = create(manager)
        with pytest.raises(ValidationError):
            manager.update_annotation(record.id, AnnotationPatch(genre=" "))

    def test_missing_annotation(self, manager):
        with pytest.raises(NotFound):
            manager.update_annotation("missing", AnnotationPatch(title="x"))


class TestAnnotationPatch:
    def test_from_request_uses_only_present_fields(self):
        patch = AnnotationPatch.from_request(AnnotationUpdateRequest.model_validate({"title": "A", "image": ""}))
        assert patch.changes() == {"title": "A", "image": ""}
        assert patch.annotation is UNSET

    def test_from_request_rejects_null(self):
        with pytest.raises(ValidationError):
            AnnotationPatch.from_request(AnnotationUpdateRequest.model_validate({"genre": None}))

    def test_from_form_skips_empty_values(self):
        patch = AnnotationPatch.from_form({"title": "", "annotation": "Body", "other": "x"})
        assert patch.changes() == {"annotation": "Body"}

    def test_empty_patch(self):
        assert AnnotationPatch().is_empty
        assert not AnnotationPatch(title="x").is_empty


class TestRecordTransitions:
    def _record(self, status):
        now = datetime.now(timezone.utc)
        return AnnotationRecord(
            id="a1", user_id="u1", title="T", source_type="pdf", status=status, created_at=now, updated_at=now
        )

    def test_completed_cannot_fail(self):
        record = self._record(AnnotationStatus.COMPLETED)
        with pytest.raises(InvalidTransition):
            record.mark_failed("late failure")

    def test_failed_cannot_complete(self):
        record = self._record(AnnotationStatus.FAILED)
        with pytest.raises(InvalidTransition):
            record.mark_completed("body", "Other")

    def test_failed_sets_error_message(self):
        record = self._record(AnnotationStatus.PROCESSING)
        record.mark_failed("boom")
        assert record.status == AnnotationStatus.FAILED
        assert record.error_message == "boom"


class TestDeleteAndList:
    def test_delete_returns_record_and_second_delete_fails(self, manager):
        record = create(manager)
        deleted = manager.delete_annotation(record.id)
        assert deleted.id == record.id

        with pytest.raises(NotFound):
            manager.delete_annotation(record.id)
        with pytest.raises(NotFound):
            manager.get_annotation(record.id)

    def test_delete_missing(self, manager):
        with pytest.raises(NotFound):
            manager.delete_annotation("missing")

    def test_list_newest_first_with_filters(self, manager):
        first = create(manager, title="First", user_id="alice")
        second = create(manager, title="Second", user_id="alice")
        create(manager, title="Other", user_id="bob")
        manager.generator.response = "GENRE: Fiction\nA tale."
        fiction = create(manager, title="Story", user_id="alice")

        alice = manager.list_annotations(AnnotationFilter(user_id="alice"), limit=None)
        assert [r.id for r in alice] == [fiction.id, second.id, first.id]

        fiction_only = manager.list_annotations(AnnotationFilter(genre="Fiction"))
        assert [r.id for r in fiction_only] == [fiction.id]

        page = manager.list_annotations(AnnotationFilter(user_id="alice"), limit=1, offset=1)
        assert [r.id for r in page] == [second.id]

    def test_stats(self, manager):
        create(manager, user_id="alice")
        with pytest.raises(PipelineError):
            create(manager, user_id="alice", pdf=build_pdf(""))
        create(manager, user_id="bob")

        stats = manager.stats("alice")
        assert stats.total == 2
        assert stats.completed == 1
        assert stats.failed == 1
        assert stats.processing == 0


class TestGenerateSpeech:
    def test_publishes_and_stores_url(self, manager):
        record = create(manager)
        updated = manager.generate_speech(record.id)
        assert updated.tts_url == f"{manager.publisher.base_url}tts/{record.id}_1.mp3"
        assert manager.get_annotation(record.id).tts_url == updated.tts_url

    def test_empty_annotation_never_contacts_publisher(self, manager):
        with pytest.raises(PipelineError) as exc_info:
            create(manager, pdf=build_pdf(""))

        with pytest.raises(EmptyBody):
            manager.generate_speech(exc_info.value.annotation.id)
        assert manager.publisher.speech_calls == []

    def test_missing_publisher(self, manager):
        record = create(manager)
        manager.publisher = None
        with pytest.raises(PublisherUnavailable):
            manager.generate_speech(record.id)

    def test_missing_annotation(self, manager):
        with pytest.raises(NotFound):
            manager.generate_speech("missing")

    def test_tts_events(self, manager):
        """Events published from a worker thread arrive on the subscriber's loop."""
        record = create(manager)

        async def follow():
            subscription = manager.broadcaster.subscribe(record.id)
            await asyncio.to_thread(manager.generate_speech, record.id)
            steps = []
            while len(steps) < 2:
                event = await subscription.next_event(timeout=5)
                assert event is not None
                steps.append(event.step)
            manager.broadcaster.unsubscribe(subscription)
            return steps

        assert asyncio.run(follow()) == ["tts_started", "tts_completed"]


class TestCleanupAndServices:
    def test_cleanup_only_touches_bucket_objects(self, manager):
        record = create(manager)
        record = manager.generate_speech(record.id)
        record.image = "https://example.org/cover.png"

        manager.cleanup_assets(record)
        assert manager.publisher.deleted == [f"tts/{record.id}_1.mp3"]

    def test_check_services_with_stub_backends(self, manager):
        status = manager.check_services()
        assert status["ollama"]["status"] == "Not Configured"
        assert status["aws"]["status"] == "OK"

    def test_updated_at_moves_forward_on_tts(self, manager):
        record = create(manager)
        manager.database.update_annotation(record.id, {"updated_at": record.updated_at - timedelta(days=1)})
        updated = manager.generate_speech(record.id)
        assert updated.updated_at > record.updated_at - timedelta(days=1)
