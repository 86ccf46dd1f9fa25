"""
Study ingestion and refresh.

Glue between the stores, image normalization and the caption pipeline:
uploads are validated and normalized, optionally auto-titled / dated from
the first image, stored, captioned and summarized. Refresh reruns the
pipeline from stored bytes without a new upload.
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from .caption_pipeline import CaptionPipeline, SliceCaption, SliceInput, StudyCaptionResult, StudyContext
from .errors import InvalidInputError, MedChronosError
from .gemini_client import GeminiClient
from .imaging import NormalizedImage, is_valid_image_format, normalize
from .input_sanitization import sanitize_filename, sanitize_title
from .models import Image, Study, StudyProcessingResponse
from .providers import IMAGING_DATE_FIELD
from .retry import DEFAULT_RETRY_POLICY, RetryPolicy
from .stores import EntityStore, ObjectStore
from .structured_logging import StructuredLogger

logger = StructuredLogger(__name__)

UNTITLED_STUDY = "Untitled Study"
MANUAL_DATE_REQUIRED = "Could not extract date from image. Please enter the date manually."


@dataclass(frozen=True)
class ImageUpload:
    filename: str
    content_type: str
    data: bytes


def study_prefix(patient_id: str, study_id: Optional[str] = None) -> str:
    prefix = f"patients/{patient_id}"
    return f"{prefix}/studies/{study_id}" if study_id else prefix


def parse_imaging_datetime(value: str) -> datetime:
    """Parse YYYY-MM-DD or YYYY-MM-DDTHH:mm[:ss]."""
    try:
        return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except (AttributeError, ValueError) as e:
        raise InvalidInputError(f"Invalid imaging date: {value!r}") from e


class StudyService:
    def __init__(
        self,
        entities: EntityStore,
        objects: ObjectStore,
        pipeline: CaptionPipeline,
        general: Optional[GeminiClient] = None,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        image_size: int = 896,
        jpeg_quality: int = 90,
    ):
        self.entities = entities
        self.objects = objects
        self.pipeline = pipeline
        self.general = general
        self.retry_policy = retry_policy
        self.image_size = image_size
        self.jpeg_quality = jpeg_quality

    def _normalize(self, upload: ImageUpload) -> NormalizedImage:
        if not is_valid_image_format(upload.content_type):
            raise InvalidInputError(f"Invalid file type: {upload.content_type}")
        return normalize(upload.data, self.image_size, self.jpeg_quality)

    async def _auto_title(self, image_base64: str, modality: Optional[str]) -> str:
        try:
            title = await self.retry_policy.run(
                lambda: self.general.generate_study_title(image_base64, modality),
                label="generate_study_title",
            )
        except MedChronosError as e:
            logger.warning("Study title generation failed", error=str(e))
            return UNTITLED_STUDY
        return sanitize_title(title) or UNTITLED_STUDY

    async def _auto_date(self, image_base64: str) -> datetime:
        try:
            extracted = await self.retry_policy.run(
                lambda: self.general.extract_structured_field(image_base64, IMAGING_DATE_FIELD),
                label="extract_imaging_date",
            )
        except MedChronosError as e:
            logger.warning("Imaging date extraction failed", error=str(e))
            raise InvalidInputError(MANUAL_DATE_REQUIRED) from e
        if not extracted.succeeded:
            logger.info("Imaging date not found on image", confidence=extracted.confidence.value)
            raise InvalidInputError(MANUAL_DATE_REQUIRED)
        try:
            return parse_imaging_datetime(extracted.value)
        except InvalidInputError as e:
            raise InvalidInputError(MANUAL_DATE_REQUIRED) from e

    async def _auto_modality(self, image_base64: str) -> Optional[str]:
        try:
            return await self.retry_policy.run(
                lambda: self.general.extract_modality(image_base64),
                label="extract_modality",
            )
        except MedChronosError as e:
            # Modality is optional
            logger.warning("Modality extraction failed", error=str(e))
            return None

    async def _persist_result(self, study: Study, images: list[Image], result: StudyCaptionResult) -> StudyProcessingResponse:
        by_index = {caption.slice_index: caption for caption in result.captions}
        updated = []
        for image in images:
            caption = by_index.get(image.slice_index)
            if caption is not None and caption.tier is not None:
                image = image.model_copy(update={
                    "slice_caption": caption.raw_caption,
                    "enhanced_caption": caption.enhanced_caption,
                })
                await self.entities.update_image(image)
            updated.append(image)

        study = study.model_copy(update={"series_summary": result.series_summary})
        await self.entities.update_study(study)
        return StudyProcessingResponse(
            study=study,
            images=updated,
            state=result.state.value,
            summary_tier=result.summary_tier.value,
        )

    async def ingest(
        self,
        patient_id: str,
        uploads: Sequence[ImageUpload],
        title: Optional[str] = None,
        modality: Optional[str] = None,
        imaging_datetime: Optional[datetime] = None,
        include_codes: bool = False,
        auto_title: bool = False,
        auto_date: bool = False,
        auto_modality: bool = False,
    ) -> StudyProcessingResponse:
        """Create a study from uploaded images and caption it.

        Raises:
            NotFoundError: unknown patient
            InvalidInputError: missing fields, bad image, or a requested date
                extraction that failed (the caller must enter the date)
        """
        await self.entities.get_patient(patient_id)
        if not uploads:
            raise InvalidInputError("No files provided")
        title = sanitize_title(title or "")
        if not title and not auto_title:
            raise InvalidInputError("Missing required field: title (or auto_title)")
        if imaging_datetime is None and not auto_date:
            raise InvalidInputError("Missing required field: imaging_datetime (or auto_date)")
        if (auto_title or auto_date or auto_modality) and self.general is None:
            raise InvalidInputError("Automatic title/date/modality extraction is not available")

        normalized = [self._normalize(upload) for upload in uploads]
        first = normalized[0].base64

        if auto_modality and not modality:
            modality = await self._auto_modality(first)
        if auto_title and not title:
            title = await self._auto_title(first, modality)
        if auto_date and imaging_datetime is None:
            imaging_datetime = await self._auto_date(first)

        study = await self.entities.add_study(Study(
            patient_id=patient_id,
            title=title,
            modality=modality,
            imaging_datetime=imaging_datetime,
            include_codes=include_codes,
        ))
        logger.info("Study created", study_id=study.id, patient_id=patient_id, image_count=len(uploads))

        try:
            prefix = study_prefix(patient_id, study.id)
            refs = await asyncio.gather(*(
                self.objects.put(
                    image.data,
                    image.mime_type,
                    f"{prefix}/{index:04d}_{sanitize_filename(upload.filename)}.jpg",
                )
                for index, (upload, image) in enumerate(zip(uploads, normalized))
            ))
            images = await self.entities.add_images([
                Image(study_id=study.id, storage_ref=ref, slice_index=index)
                for index, ref in enumerate(refs)
            ])

            result = await self.pipeline.run(
                StudyContext(study.title, study.modality),
                [SliceInput(index, image.base64) for index, image in enumerate(normalized)],
            )
            return await self._persist_result(study, images, result)
        except Exception:
            logger.exception("Study processing failed, removing study", study_id=study.id)
            await self.entities.delete_study(study.id)
            await self.objects.delete_all(study_prefix(patient_id, study.id))
            raise

    async def _fetch(self, image: Image) -> Optional[str]:
        try:
            data = await self.objects.get(image.storage_ref)
            return normalize(data, self.image_size, self.jpeg_quality).base64
        except MedChronosError as e:
            logger.warning(
                "Could not fetch stored image, keeping existing captions",
                image_id=image.id,
                slice_index=image.slice_index,
                error=str(e),
            )
            return None

    async def refresh(self, study_id: str) -> StudyProcessingResponse:
        """Re-derive captions and summary from stored image bytes.

        Raises:
            NotFoundError: unknown study
            InvalidInputError: the study has no images
        """
        study = await self.entities.get_study(study_id)
        images = await self.entities.list_images(study_id)
        if not images:
            raise InvalidInputError("No images found in this study")

        fetched = await asyncio.gather(*(self._fetch(image) for image in images))
        slices = []
        retained = []
        for image, image_base64 in zip(images, fetched):
            if image_base64 is not None:
                slices.append(SliceInput(image.slice_index, image_base64))
            else:
                retained.append(SliceCaption(image.slice_index, image.slice_caption, image.display_caption, None))

        logger.info("Refreshing study", study_id=study_id, refetched=len(slices), retained=len(retained))
        result = await self.pipeline.run(StudyContext(study.title, study.modality), slices, retained)
        return await self._persist_result(study, images, result)

    async def delete_patient(self, patient_id: str) -> int:
        """Cascade-delete a patient and purge its stored objects."""
        await self.entities.delete_patient(patient_id)
        deleted = await self.objects.delete_all(study_prefix(patient_id))
        logger.info("Patient deleted", patient_id=patient_id, objects_deleted=deleted)
        return deleted
