"""
Entity and binary object stores.

The pipeline only depends on the EntityStore / ObjectStore protocols. The
in-memory entity store and the filesystem object store back the HTTP service
and the tests.
"""
import asyncio
import shutil
from pathlib import Path
from typing import Optional, Protocol

from .errors import InvalidInputError, NotFoundError
from .models import Chat, ChatMessage, Image, Patient, Report, Study
from .structured_logging import StructuredLogger

logger = StructuredLogger(__name__)

LOCAL_SCHEME = "local://"


class EntityStore(Protocol):
    async def create_patient(self, patient: Patient) -> Patient: ...
    async def get_patient(self, patient_id: str) -> Patient: ...
    async def delete_patient(self, patient_id: str) -> None: ...

    async def add_study(self, study: Study) -> Study: ...
    async def get_study(self, study_id: str) -> Study: ...
    async def update_study(self, study: Study) -> Study: ...
    async def delete_study(self, study_id: str) -> None: ...
    async def list_studies(self, patient_id: str) -> list[Study]: ...

    async def add_images(self, images: list[Image]) -> list[Image]: ...
    async def update_image(self, image: Image) -> Image: ...
    async def list_images(self, study_id: str) -> list[Image]: ...

    async def add_report(self, report: Report) -> Report: ...
    async def get_report(self, report_id: str) -> Report: ...
    async def latest_report(self, patient_id: str) -> Optional[Report]: ...

    async def create_chat(self, chat: Chat) -> Chat: ...
    async def get_chat(self, chat_id: str) -> Chat: ...
    async def update_chat(self, chat: Chat) -> Chat: ...
    async def add_message(self, message: ChatMessage) -> ChatMessage: ...
    async def list_messages(self, chat_id: str) -> list[ChatMessage]: ...


class ObjectStore(Protocol):
    async def put(self, data: bytes, content_type: str, path_hint: str) -> str: ...
    async def get(self, reference: str) -> bytes: ...
    async def delete_all(self, path_prefix: str) -> int: ...


class InMemoryEntityStore:
    """Dict-backed EntityStore. Patient deletion cascades to everything it owns."""

    def __init__(self):
        self.patients: dict[str, Patient] = {}
        self.studies: dict[str, Study] = {}
        self.images: dict[str, Image] = {}
        self.reports: dict[str, Report] = {}
        self.chats: dict[str, Chat] = {}
        self.messages: dict[str, ChatMessage] = {}

    @staticmethod
    def _lookup(table: dict, kind: str, key: str):
        try:
            return table[key]
        except KeyError:
            raise NotFoundError(kind, key) from None

    # --- Patients ---

    async def create_patient(self, patient: Patient) -> Patient:
        self.patients[patient.id] = patient
        return patient

    async def get_patient(self, patient_id: str) -> Patient:
        return self._lookup(self.patients, "patient", patient_id)

    async def delete_patient(self, patient_id: str) -> None:
        await self.get_patient(patient_id)
        for study in await self.list_studies(patient_id):
            await self.delete_study(study.id)
        for report_id in [r.id for r in self.reports.values() if r.patient_id == patient_id]:
            del self.reports[report_id]
        for chat_id in [c.id for c in self.chats.values() if c.patient_id == patient_id]:
            for message_id in [m.id for m in self.messages.values() if m.chat_id == chat_id]:
                del self.messages[message_id]
            del self.chats[chat_id]
        del self.patients[patient_id]

    # --- Studies and images ---

    async def add_study(self, study: Study) -> Study:
        await self.get_patient(study.patient_id)
        self.studies[study.id] = study
        return study

    async def get_study(self, study_id: str) -> Study:
        return self._lookup(self.studies, "study", study_id)

    async def update_study(self, study: Study) -> Study:
        await self.get_study(study.id)
        self.studies[study.id] = study
        return study

    async def delete_study(self, study_id: str) -> None:
        await self.get_study(study_id)
        for image_id in [i.id for i in self.images.values() if i.study_id == study_id]:
            del self.images[image_id]
        del self.studies[study_id]

    async def list_studies(self, patient_id: str) -> list[Study]:
        studies = [s for s in self.studies.values() if s.patient_id == patient_id]
        return sorted(studies, key=lambda s: s.imaging_datetime)

    async def add_images(self, images: list[Image]) -> list[Image]:
        for image in images:
            await self.get_study(image.study_id)
            existing = {i.slice_index for i in self.images.values() if i.study_id == image.study_id}
            if image.slice_index in existing:
                raise InvalidInputError(f"Duplicate slice_index {image.slice_index} in study {image.study_id}")
            self.images[image.id] = image
        return images

    async def update_image(self, image: Image) -> Image:
        self._lookup(self.images, "image", image.id)
        self.images[image.id] = image
        return image

    async def list_images(self, study_id: str) -> list[Image]:
        images = [i for i in self.images.values() if i.study_id == study_id]
        return sorted(images, key=lambda i: i.slice_index)

    # --- Reports ---

    async def add_report(self, report: Report) -> Report:
        await self.get_patient(report.patient_id)
        self.reports[report.id] = report
        return report

    async def get_report(self, report_id: str) -> Report:
        return self._lookup(self.reports, "report", report_id)

    async def latest_report(self, patient_id: str) -> Optional[Report]:
        reports = [r for r in self.reports.values() if r.patient_id == patient_id]
        return max(reports, key=lambda r: r.created_at) if reports else None

    # --- Chats ---

    async def create_chat(self, chat: Chat) -> Chat:
        await self.get_patient(chat.patient_id)
        self.chats[chat.id] = chat
        return chat

    async def get_chat(self, chat_id: str) -> Chat:
        return self._lookup(self.chats, "chat", chat_id)

    async def update_chat(self, chat: Chat) -> Chat:
        await self.get_chat(chat.id)
        self.chats[chat.id] = chat
        return chat

    async def add_message(self, message: ChatMessage) -> ChatMessage:
        await self.get_chat(message.chat_id)
        self.messages[message.id] = message
        return message

    async def list_messages(self, chat_id: str) -> list[ChatMessage]:
        messages = [m for m in self.messages.values() if m.chat_id == chat_id]
        return sorted(messages, key=lambda m: m.created_at)


class LocalObjectStore:
    """ObjectStore on the local filesystem. References look like local://<path>."""

    def __init__(self, base_dir: str):
        self.base_dir = Path(base_dir).resolve()

    def _path(self, relative: str) -> Path:
        path = (self.base_dir / relative.lstrip("/")).resolve()
        if path != self.base_dir and self.base_dir not in path.parents:
            raise InvalidInputError(f"Path escapes object store: {relative}")
        return path

    def _path_for_reference(self, reference: str) -> Path:
        if not reference.startswith(LOCAL_SCHEME):
            raise InvalidInputError(f"Not a local object reference: {reference}")
        return self._path(reference[len(LOCAL_SCHEME):])

    async def put(self, data: bytes, content_type: str, path_hint: str) -> str:
        path = self._path(path_hint)

        def _write():
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        await asyncio.to_thread(_write)
        logger.debug("Object stored", path=path_hint, content_type=content_type, size=len(data))
        return f"{LOCAL_SCHEME}{path.relative_to(self.base_dir).as_posix()}"

    async def get(self, reference: str) -> bytes:
        path = self._path_for_reference(reference)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            raise NotFoundError("object", reference) from None

    async def delete_all(self, path_prefix: str) -> int:
        target = self._path(path_prefix)
        if target == self.base_dir or not target.exists():
            return 0

        def _delete() -> int:
            if target.is_file():
                target.unlink()
                return 1
            count = sum(1 for p in target.rglob("*") if p.is_file())
            shutil.rmtree(target)
            return count

        deleted = await asyncio.to_thread(_delete)
        logger.info("Objects deleted", prefix=path_prefix, count=deleted)
        return deleted
