"""Tests for study ingestion, refresh and patient deletion."""
import asyncio
from datetime import datetime, timezone

import pytest

from conftest import NO_WAIT, make_png
from medchronos.caption_pipeline import CaptionPipeline
from medchronos.errors import InvalidInputError, NotFoundError, TransientProviderError
from medchronos.fallback import FallbackChain
from medchronos.models import Patient
from medchronos.providers import Confidence, StructuredField
from medchronos.stores import LOCAL_SCHEME, InMemoryEntityStore, LocalObjectStore
from medchronos.study_service import (
    MANUAL_DATE_REQUIRED,
    UNTITLED_STUDY,
    ImageUpload,
    StudyService,
    parse_imaging_datetime,
)

DATE = datetime(2024, 2, 10, 9, 30, tzinfo=timezone.utc)


def _uploads(n=2):
    return [ImageUpload(f"slice{i}.png", "image/png", make_png(40 + i, 30)) for i in range(n)]


@pytest.fixture
def env(tmp_path, specialized, general):
    entities = InMemoryEntityStore()
    objects = LocalObjectStore(str(tmp_path))
    pipeline = CaptionPipeline(FallbackChain(specialized, general, NO_WAIT), general=general, retry_policy=NO_WAIT)
    service = StudyService(entities, objects, pipeline, general=general, retry_policy=NO_WAIT, image_size=64)
    patient = asyncio.run(entities.create_patient(Patient(name="Jane Doe", age=54, sex="F")))
    return service, patient, tmp_path


class TestIngest:
    """Test StudyService.ingest."""

    def test_creates_captioned_study(self, env):
        service, patient, tmp_path = env
        response = asyncio.run(service.ingest(patient.id, _uploads(2), title="Chest CT", imaging_datetime=DATE))

        assert response.state == "summarized"
        assert response.study.series_summary == "Summary of 2 slices"
        assert [i.slice_index for i in response.images] == [0, 1]
        assert all(i.slice_caption.startswith("medgemma caption") for i in response.images)
        assert all(i.enhanced_caption.startswith("Enhanced: ") for i in response.images)

        stored = asyncio.run(service.entities.list_images(response.study.id))
        assert stored[0].slice_caption == response.images[0].slice_caption
        for image in stored:
            assert image.storage_ref.startswith(LOCAL_SCHEME)
            assert (tmp_path / image.storage_ref[len(LOCAL_SCHEME):]).exists()

    def test_auto_fields_from_first_image(self, env, general):
        service, patient, _ = env
        response = asyncio.run(service.ingest(
            patient.id, _uploads(1), auto_title=True, auto_date=True, auto_modality=True,
        ))

        assert response.study.title == "Chest CT"
        assert response.study.modality == "CT"
        assert response.study.imaging_datetime == datetime(2024, 3, 1, tzinfo=timezone.utc)
        assert ("generate_study_title", "CT") in general.calls

    def test_explicit_values_win_over_auto(self, env, general):
        service, patient, _ = env
        response = asyncio.run(service.ingest(
            patient.id, _uploads(1), title="My title", imaging_datetime=DATE, auto_title=True, auto_date=True,
        ))
        assert response.study.title == "My title"
        assert general.count("generate_study_title") == 0
        assert general.count("extract_structured_field") == 0

    def test_failed_date_extraction_requires_manual_date(self, env, general):
        service, patient, _ = env
        general.field_outcome = StructuredField("imaging_date", None, Confidence.NONE)

        with pytest.raises(InvalidInputError) as exc:
            asyncio.run(service.ingest(patient.id, _uploads(1), title="CT", auto_date=True))
        assert str(exc.value) == MANUAL_DATE_REQUIRED
        assert asyncio.run(service.entities.list_studies(patient.id)) == []

    def test_failed_title_generation_uses_placeholder(self, env, general):
        service, patient, _ = env
        general.title_outcome = TransientProviderError("gemini", "HTTP 503")
        response = asyncio.run(service.ingest(patient.id, _uploads(1), auto_title=True, imaging_datetime=DATE))
        assert response.study.title == UNTITLED_STUDY

    def test_missing_title(self, env):
        service, patient, _ = env
        with pytest.raises(InvalidInputError):
            asyncio.run(service.ingest(patient.id, _uploads(1), imaging_datetime=DATE))

    def test_missing_date(self, env):
        service, patient, _ = env
        with pytest.raises(InvalidInputError):
            asyncio.run(service.ingest(patient.id, _uploads(1), title="CT"))

    def test_no_files(self, env):
        service, patient, _ = env
        with pytest.raises(InvalidInputError):
            asyncio.run(service.ingest(patient.id, [], title="CT", imaging_datetime=DATE))

    def test_bad_content_type(self, env):
        service, patient, _ = env
        upload = ImageUpload("report.pdf", "application/pdf", b"%PDF")
        with pytest.raises(InvalidInputError):
            asyncio.run(service.ingest(patient.id, [upload], title="CT", imaging_datetime=DATE))

    def test_unknown_patient(self, env):
        service, _, _ = env
        with pytest.raises(NotFoundError):
            asyncio.run(service.ingest("missing", _uploads(1), title="CT", imaging_datetime=DATE))

    def test_pipeline_crash_removes_study(self, env, monkeypatch):
        service, patient, tmp_path = env

        async def crash(*args, **kwargs):
            raise RuntimeError("pipeline crashed")

        monkeypatch.setattr(service.pipeline, "run", crash)
        with pytest.raises(RuntimeError):
            asyncio.run(service.ingest(patient.id, _uploads(2), title="CT", imaging_datetime=DATE))

        assert asyncio.run(service.entities.list_studies(patient.id)) == []
        assert not service.entities.images
        assert not any(tmp_path.rglob("*.jpg"))


class TestRefresh:
    """Test StudyService.refresh."""

    def test_recaptions_from_stored_images(self, env, specialized):
        service, patient, _ = env
        created = asyncio.run(service.ingest(patient.id, _uploads(2), title="CT", imaging_datetime=DATE))

        specialized.caption_default = "medgemma recaption"
        refreshed = asyncio.run(service.refresh(created.study.id))

        assert all(i.slice_caption.startswith("medgemma recaption") for i in refreshed.images)
        assert refreshed.study.id == created.study.id

    def test_unfetchable_image_keeps_caption(self, env, specialized):
        service, patient, tmp_path = env
        created = asyncio.run(service.ingest(patient.id, _uploads(2), title="CT", imaging_datetime=DATE))
        first = created.images[0]
        (tmp_path / first.storage_ref[len(LOCAL_SCHEME):]).unlink()

        specialized.caption_default = "medgemma recaption"
        refreshed = asyncio.run(service.refresh(created.study.id))

        assert refreshed.images[0].slice_caption == first.slice_caption
        assert refreshed.images[1].slice_caption.startswith("medgemma recaption")
        assert refreshed.state == "summarized"

    def test_unknown_study(self, env):
        service, _, _ = env
        with pytest.raises(NotFoundError):
            asyncio.run(service.refresh("missing"))


class TestDeletePatient:
    """Test StudyService.delete_patient."""

    def test_purges_objects(self, env):
        service, patient, tmp_path = env
        asyncio.run(service.ingest(patient.id, _uploads(3), title="CT", imaging_datetime=DATE))

        assert asyncio.run(service.delete_patient(patient.id)) == 3
        assert not (tmp_path / "patients" / patient.id).exists()
        with pytest.raises(NotFoundError):
            asyncio.run(service.entities.get_patient(patient.id))


class TestParseImagingDatetime:
    """Test parse_imaging_datetime."""

    def test_date_only(self):
        assert parse_imaging_datetime("2024-03-01") == datetime(2024, 3, 1)

    def test_date_and_time(self):
        assert parse_imaging_datetime("2024-03-01T14:05") == datetime(2024, 3, 1, 14, 5)

    def test_zulu(self):
        assert parse_imaging_datetime("2024-03-01T14:05:00Z").tzinfo == timezone.utc

    def test_invalid(self):
        with pytest.raises(InvalidInputError):
            parse_imaging_datetime("March first")
