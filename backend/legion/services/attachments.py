"""Uploading message attachments to object storage."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Awaitable, Callable, Iterable, Sequence, TypeVar
from uuid import uuid4

from legion.config import Settings, get_settings
from legion.models import AttachmentKind
from legion.monitoring.metrics import upload_rollbacks_total
from legion.platform import BackendError, ChatBackend
from legion.schemas import AttachmentRead

logger = logging.getLogger(__name__)

RowT = TypeVar("RowT")


class AttachmentRejected(ValueError):
    """Raised when selected files fail validation before any upload."""

    def __init__(self, rejected: Sequence[str]) -> None:
        self.rejected = list(rejected)
        super().__init__("These files cannot be attached: " + ", ".join(self.rejected))


class UploadFailed(Exception):
    """Raised after a failed batch has been rolled back."""

    def __init__(self, message: str, *, file_name: str | None = None) -> None:
        super().__init__(message)
        self.file_name = file_name


@dataclass(slots=True)
class SelectedFile:
    """File picked in the compose box, held in memory until sent."""

    name: str
    data: bytes
    content_type: str | None = None

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str:
        return PurePosixPath(self.name).suffix.lower().lstrip(".")


@dataclass(slots=True)
class UploadedFile:
    """Object stored for one file of a batch."""

    storage_path: str
    file_name: str
    file_type: str | None
    file_size: int


@dataclass(slots=True)
class SelectionResult:
    accepted: list[SelectedFile] = field(default_factory=list)
    rejected: list[str] = field(default_factory=list)


class AttachmentUploadCoordinator:
    """Uploads a batch of files and links them to the message they belong to.

    A batch is all-or-nothing with respect to stored objects: whenever a step
    fails, every object uploaded for the batch is deleted before the error
    propagates.
    """

    def __init__(self, backend: ChatBackend, *, settings: Settings | None = None) -> None:
        self.backend = backend
        self.settings = settings or get_settings()

    def select_files(self, files: Iterable[SelectedFile]) -> SelectionResult:
        """Split ``files`` into accepted files and the names of rejected ones."""

        denied = set(self.settings.denied_upload_extensions)
        result = SelectionResult()
        for selected in files:
            if selected.extension in denied or selected.size > self.settings.max_upload_size:
                result.rejected.append(selected.name)
            else:
                result.accepted.append(selected)
        return result

    def require_acceptable(self, files: Sequence[SelectedFile]) -> list[SelectedFile]:
        result = self.select_files(files)
        if result.rejected:
            raise AttachmentRejected(result.rejected)
        return result.accepted

    @staticmethod
    def storage_path_for(owner_id: str, file_name: str) -> str:
        suffix = PurePosixPath(file_name).suffix.lower()
        return f"{owner_id}/{uuid4().hex}{suffix}"

    async def upload_batch(self, files: Sequence[SelectedFile], owner_id: str) -> list[UploadedFile]:
        """Upload ``files`` in order, deleting the whole batch if any upload fails."""

        uploaded: list[UploadedFile] = []
        for selected in files:
            path = self.storage_path_for(owner_id, selected.name)
            try:
                await self.backend.upload_file(path, selected.data, selected.content_type)
            except BackendError as exc:
                await self._rollback(uploaded, stage="upload")
                raise UploadFailed(
                    f"Failed to upload {selected.name}: {exc.message}", file_name=selected.name
                ) from exc
            uploaded.append(
                UploadedFile(
                    storage_path=path,
                    file_name=selected.name,
                    file_type=selected.content_type,
                    file_size=selected.size,
                )
            )
        return uploaded

    async def send_with_attachments(
        self,
        files: Sequence[SelectedFile],
        owner_id: str,
        create_row: Callable[[], Awaitable[RowT]],
        kind: AttachmentKind,
    ) -> tuple[RowT, list[AttachmentRead]]:
        """
        Upload ``files``, create the message row, then link the attachments.

        Args:
            files: Accepted files in selection order
            owner_id: Id of the sending user, used as the storage folder
            create_row: Creates the message or direct message; called only
                after every upload succeeded
            kind: Which foreign key the attachment rows carry

        Returns:
            The created row and its attachment records

        Raises:
            UploadFailed: If an upload failed; no row was created
            BackendError: If creating the row or the attachment records failed;
                the uploaded objects have been deleted
        """
        uploaded = await self.upload_batch(files, owner_id)

        try:
            row = await create_row()
        except BackendError:
            await self._rollback(uploaded, stage="message")
            raise

        if not uploaded:
            return row, []

        row_id = getattr(row, "id")
        records = [
            {
                "storage_path": item.storage_path,
                "file_name": item.file_name,
                "file_type": item.file_type,
                "file_size": item.file_size,
                kind.foreign_key: row_id,
            }
            for item in uploaded
        ]
        try:
            attachments = await self.backend.insert_attachments(records)
        except BackendError:
            await self._rollback(uploaded, stage="attachments")
            raise
        return row, attachments

    async def _rollback(self, uploaded: Sequence[UploadedFile], *, stage: str) -> None:
        if not uploaded:
            return
        upload_rollbacks_total.inc(stage=stage)
        paths = [item.storage_path for item in uploaded]
        try:
            await self.backend.delete_files(paths)
        except BackendError:
            logger.exception("Failed to delete %d orphaned upload(s) after %s failure", len(paths), stage)
