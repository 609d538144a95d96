"""
Annotation orchestration and lifecycle management.

This module manages the end-to-end lifecycle of annotation records:
- Record allocation and status bookkeeping (processing -> completed | failed)
- Synchronous text extraction and annotation generation
- Speech generation and asset publishing on explicit request
- Partial updates, deletion, listing and per-user statistics
- Progress events for live subscribers

The AnnotationManager class provides the core business logic for the API,
coordinating the extractor, the generator, the publisher and persistence.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Union
from uuid import uuid4

from .database import AnnotationDatabase
from .errors import (
    APIError,
    EmptyBody,
    InvalidTransition,
    NotFound,
    PipelineError,
    PublisherUnavailable,
    ValidationError,
)
from .events import ProgressBroadcaster
from .extractors import extract_text
from .generator import AnnotationGenerator, OllamaClient
from .models import AnnotationResponse, AnnotationStats, AnnotationStatus, AnnotationUpdateRequest, ProgressEvent
from .publisher import AWSPublisher
from .utils import utcnow

logger = logging.getLogger(__name__)


class Unset:
    """Marker for a patch field that was not supplied."""

    _instance: Optional["Unset"] = None

    def __new__(cls) -> "Unset":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET = Unset()

PatchValue = Union[Unset, str]


@dataclass(frozen=True)
class AnnotationPatch:
    """
    Partial update for an annotation.

    Each field is either UNSET (leave unchanged) or a string to store, which
    may be empty. This keeps "absent" and "explicitly empty" distinct.
    """

    title: PatchValue = UNSET
    image: PatchValue = UNSET
    annotation: PatchValue = UNSET
    genre: PatchValue = UNSET

    @classmethod
    def from_request(cls, request: AnnotationUpdateRequest) -> "AnnotationPatch":
        """Build a patch from a JSON body; only keys present in the body are set."""
        values: Dict[str, str] = {}
        for name in request.model_fields_set:
            value = getattr(request, name)
            if value is None:
                raise ValidationError(f"{name} cannot be null")
            values[name] = value
        return cls(**values)

    @classmethod
    def from_form(cls, form: Mapping[str, Any]) -> "AnnotationPatch":
        """Build a patch from form fields; empty form values count as not supplied."""
        values = {}
        for field in fields(cls):
            value = form.get(field.name)
            if isinstance(value, str) and value != "":
                values[field.name] = value
        return cls(**values)

    def with_image(self, image_url: str) -> "AnnotationPatch":
        return AnnotationPatch(title=self.title, image=image_url, annotation=self.annotation, genre=self.genre)

    def changes(self) -> Dict[str, str]:
        return {
            field.name: getattr(self, field.name)
            for field in fields(self)
            if not isinstance(getattr(self, field.name), Unset)
        }

    @property
    def is_empty(self) -> bool:
        return not self.changes()


@dataclass
class AnnotationFilter:
    user_id: Optional[str] = None
    status: Optional[AnnotationStatus] = None
    genre: Optional[str] = None


@dataclass
class AnnotationRecord:
    """
    Internal representation of an annotation with full state.

    Attributes:
        id: Unique annotation identifier (hex UUID)
        user_id: Creating user, kept for attribution
        title: User-provided title
        image: Optional image URL
        source_type: File type tag of the uploaded document ("pdf")
        text_content: Text extracted from the document
        annotation: Generated study-note body
        genre: Genre label from the generation step
        tts_url: URL of the most recently generated audio
        status: Lifecycle status
        error_message: Failure detail; set only when status is failed
        created_at: Creation timestamp (UTC)
        updated_at: Last modification timestamp (UTC)
    """

    id: str
    user_id: str
    title: str
    source_type: str
    status: AnnotationStatus
    created_at: datetime
    updated_at: datetime
    image: Optional[str] = None
    text_content: str = ""
    annotation: str = ""
    genre: str = ""
    tts_url: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnnotationRecord":
        names = {field.name for field in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in names})

    def to_dict(self) -> Dict[str, Any]:
        return {field.name: getattr(self, field.name) for field in fields(self)}

    def to_response(self) -> AnnotationResponse:
        return AnnotationResponse(
            id=self.id,
            user_id=self.user_id,
            title=self.title,
            image=self.image or None,
            source_type=self.source_type,
            annotation=self.annotation,
            genre=self.genre,
            tts_url=self.tts_url or None,
            status=self.status,
            error_message=self.error_message,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def snapshot_event(self) -> ProgressEvent:
        """Progress event describing the record's current status."""
        terminal = self.status != AnnotationStatus.PROCESSING
        return ProgressEvent(
            annotation_id=self.id,
            status=self.status,
            step=self.status.value,
            progress=100 if terminal else 0,
            message=f"Annotation is {self.status.value}.",
            error=self.error_message,
            timestamp=utcnow(),
        )

    def mark_completed(self, annotation: str, genre: str) -> None:
        if self.status != AnnotationStatus.PROCESSING:
            raise InvalidTransition(f"cannot complete annotation in status {self.status.value}")
        if not annotation.strip() or not genre.strip():
            raise ValueError("completed annotations need a body and a genre")
        self.annotation = annotation
        self.genre = genre
        self.status = AnnotationStatus.COMPLETED
        self.error_message = None
        self.updated_at = utcnow()

    def mark_failed(self, error_message: str) -> None:
        if self.status != AnnotationStatus.PROCESSING:
            raise InvalidTransition(f"cannot fail annotation in status {self.status.value}")
        self.status = AnnotationStatus.FAILED
        self.error_message = error_message or "unknown error"
        self.updated_at = utcnow()


class AnnotationManager:
    """
    Central coordinator for the annotation lifecycle.

    All pipeline steps run synchronously in the calling thread; there is no
    background worker. Records are not locked: concurrent updates to the same
    record resolve as last-write-wins in the database.

    Attributes:
        database: Annotation persistence
        generator: Text-generation backend
        publisher: Speech/image publisher, or None when not configured
        broadcaster: Progress fan-out, or None to disable events
        cleanup_on_delete: Whether callers should remove published assets after delete
    """

    def __init__(
        self,
        database: AnnotationDatabase,
        generator: AnnotationGenerator,
        publisher: Optional[AWSPublisher] = None,
        broadcaster: Optional[ProgressBroadcaster] = None,
        cleanup_on_delete: bool = False,
    ) -> None:
        self.database = database
        self.generator = generator
        self.publisher = publisher
        self.broadcaster = broadcaster
        self.cleanup_on_delete = cleanup_on_delete

    def _emit(self, record: AnnotationRecord, step: str, progress: int, message: str, error: Optional[str] = None) -> None:
        if self.broadcaster is None:
            return
        self.broadcaster.publish(
            record.id,
            ProgressEvent(
                annotation_id=record.id,
                status=record.status,
                step=step,
                progress=progress,
                message=message,
                error=error,
                timestamp=utcnow(),
            ),
        )

    def _persist_state(self, record: AnnotationRecord) -> None:
        self.database.update_annotation(
            record.id,
            {
                "text_content": record.text_content,
                "annotation": record.annotation,
                "genre": record.genre,
                "status": record.status,
                "error_message": record.error_message,
                "updated_at": record.updated_at,
            },
        )

    def _fail(self, record: AnnotationRecord, message: str, cause: Exception) -> PipelineError:
        record.mark_failed(message)
        self._persist_state(record)
        self._emit(record, "failed", 100, "Annotation failed.", error=message)
        logger.warning(f"Annotation {record.id} failed: {message}")
        return PipelineError(cause, record)

    def create_annotation(
        self,
        user_id: str,
        title: str,
        image: Optional[str],
        data: bytes,
        file_type: str,
    ) -> AnnotationRecord:
        """
        Create an annotation from an uploaded document.

        This method:
        1. Allocates and persists a record in "processing"
        2. Extracts text from the document
        3. Generates the annotation body and genre
        4. Marks the record completed and persists it

        Args:
            user_id: Creating user
            title: Annotation title (required)
            image: Optional image URL
            data: Raw document bytes
            file_type: Document type tag, e.g. "pdf"

        Returns:
            The completed record

        Raises:
            ValidationError: If the title is blank
            PipelineError: If extraction or generation failed; the record has
                been persisted as failed and is attached to the error
        """
        title = (title or "").strip()
        if not title:
            raise ValidationError("Title is required")

        now = utcnow()
        record = AnnotationRecord(
            id=uuid4().hex,
            user_id=user_id,
            title=title,
            image=image or None,
            source_type=(file_type or "").strip().lower().lstrip("."),
            status=AnnotationStatus.PROCESSING,
            created_at=now,
            updated_at=now,
        )
        self.database.save_annotation(record.to_dict())
        self._emit(record, "created", 0, "Annotation registered.")

        logger.info(f"Extracting text from {record.source_type} upload for annotation {record.id}")
        self._emit(record, "extracting", 10, "Extracting text.")
        try:
            record.text_content = extract_text(data, file_type)
        except Exception as exc:
            raise self._fail(record, f"Text extraction failed: {exc}", exc) from exc
        logger.info(f"Extracted {len(record.text_content)} characters for annotation {record.id}")

        self._emit(record, "generating", 40, "Generating annotation.")
        try:
            result = self.generator.generate(record.text_content, title)
        except Exception as exc:
            raise self._fail(record, f"Annotation generation failed: {exc}", exc) from exc

        record.mark_completed(result.body, result.genre)
        self._persist_state(record)
        self._emit(record, "completed", 100, "Annotation completed.")
        logger.info(f"Annotation {record.id} completed: {len(result.body)} characters, genre {result.genre}")
        return record

    def get_annotation(self, annotation_id: str) -> AnnotationRecord:
        data = self.database.get_annotation(annotation_id)
        if data is None:
            raise NotFound("annotation not found")
        return AnnotationRecord.from_dict(data)

    def list_annotations(
        self,
        annotation_filter: Optional[AnnotationFilter] = None,
        limit: Optional[int] = 10,
        offset: int = 0,
    ) -> List[AnnotationRecord]:
        """
        List annotations, newest first.

        Pagination is plain limit/offset; pages may shift under concurrent inserts.
        """
        annotation_filter = annotation_filter or AnnotationFilter()
        rows = self.database.list_annotations(
            user_id=annotation_filter.user_id,
            status=annotation_filter.status,
            genre=annotation_filter.genre,
            limit=limit,
            offset=offset,
        )
        return [AnnotationRecord.from_dict(row) for row in rows]

    def update_annotation(self, annotation_id: str, patch: AnnotationPatch) -> AnnotationRecord:
        """
        Apply a partial update. The update timestamp always advances, even
        for an empty patch.

        Raises:
            NotFound: If the annotation does not exist
            ValidationError: If the patch would blank the title, or the body
                or genre of a completed annotation
        """
        record = self.get_annotation(annotation_id)
        changes = patch.changes()

        if "title" in changes and not changes["title"].strip():
            raise ValidationError("title cannot be empty")
        if record.status == AnnotationStatus.COMPLETED:
            for name in ("annotation", "genre"):
                if name in changes and not changes[name].strip():
                    raise ValidationError(f"{name} cannot be empty on a completed annotation")

        update_fields: Dict[str, Any] = dict(changes)
        if "image" in update_fields:
            update_fields["image"] = update_fields["image"] or None
        update_fields["updated_at"] = utcnow()

        if not self.database.update_annotation(annotation_id, update_fields):
            raise NotFound("annotation not found")
        logger.info(f"Annotation {annotation_id} updated: {sorted(changes) or 'no fields'}")
        return self.get_annotation(annotation_id)

    def delete_annotation(self, annotation_id: str) -> AnnotationRecord:
        """
        Delete an annotation and return the deleted record.

        Published audio/image assets are left in place; see cleanup_assets().
        """
        record = self.get_annotation(annotation_id)
        if not self.database.delete_annotation(annotation_id):
            raise NotFound("annotation not found")
        logger.info(f"Annotation {annotation_id} deleted")
        return record

    def generate_speech(self, annotation_id: str) -> AnnotationRecord:
        """
        Synthesize and publish audio for an annotation's text.

        Every call publishes a new object and overwrites the stored URL.

        Raises:
            NotFound: If the annotation does not exist
            EmptyBody: If the annotation text is empty
            PublisherUnavailable: If no publisher is configured
        """
        record = self.get_annotation(annotation_id)
        if not record.annotation.strip():
            raise EmptyBody("annotation text is empty")
        if self.publisher is None:
            raise PublisherUnavailable("speech publisher not configured")

        logger.info(f"Generating TTS for annotation {annotation_id}")
        self._emit(record, "tts_started", 0, "Generating speech.")
        try:
            tts_url = self.publisher.publish_speech(record.annotation, record.id)
        except Exception as exc:
            self._emit(record, "tts_failed", 100, "Speech generation failed.", error=str(exc))
            raise

        if not self.database.update_annotation(annotation_id, {"tts_url": tts_url, "updated_at": utcnow()}):
            raise NotFound("annotation not found")
        logger.info(f"TTS for annotation {annotation_id} published to {tts_url}")

        record = self.get_annotation(annotation_id)
        self._emit(record, "tts_completed", 100, "Speech generated.")
        return record

    def upload_image(self, annotation_id: str, data: bytes, content_type: str) -> str:
        """Publish an image for an annotation (existing or about to be created) and return its URL."""
        if self.publisher is None:
            raise PublisherUnavailable("image publisher not configured")
        if not data:
            raise ValidationError("image file is empty")
        url = self.publisher.publish_image(data, annotation_id, content_type)
        logger.info(f"Image for {annotation_id} uploaded to {url}")
        return url

    def cleanup_assets(self, record: AnnotationRecord) -> None:
        """
        Best-effort removal of a deleted record's published assets.

        Only objects in the configured bucket are touched. Failures are logged
        and never raised.
        """
        if self.publisher is None:
            return
        for url in (record.tts_url, record.image):
            key = self.publisher.key_for_url(url)
            if key is None:
                continue
            try:
                self.publisher.delete_object(key)
            except APIError as exc:
                logger.warning(f"Cleanup of {key} for deleted annotation {record.id} failed: {exc}")

    def stats(self, user_id: str) -> AnnotationStats:
        counts = self.database.count_by_status(user_id)
        stats = AnnotationStats(**{status.value: counts.get(status.value, 0) for status in AnnotationStatus})
        stats.total = stats.processing + stats.completed + stats.failed
        return stats

    def check_services(self) -> Dict[str, Dict[str, Any]]:
        """Probe the generation and publishing backends."""
        status: Dict[str, Dict[str, Any]] = {}

        if isinstance(self.generator, OllamaClient):
            try:
                self.generator.check_connection()
            except APIError as exc:
                status["ollama"] = {"status": "Error", "error": str(exc)}
            else:
                try:
                    status["ollama"] = {"status": "OK", "models": self.generator.list_models()}
                except APIError as exc:
                    status["ollama"] = {"status": "Connected", "models": f"Error getting models: {exc}"}
        else:
            status["ollama"] = {"status": "Not Configured"}

        if self.publisher is None:
            status["aws"] = {"status": "Not Configured"}
        else:
            try:
                self.publisher.test_connection()
            except APIError as exc:
                status["aws"] = {"status": "Error", "error": str(exc)}
            else:
                status["aws"] = {"status": "OK", "services": "S3 and Polly"}

        return status
