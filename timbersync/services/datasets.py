from __future__ import annotations

import csv
from dataclasses import dataclass
from datetime import datetime
import io
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from timbersync.core.config import get_settings
from timbersync.core.errors import ConflictError, InfrastructureError, NotFoundError, ValidationFailure
from timbersync.domain.models import Dataset, DatasetRow
from timbersync.domain.principal import Principal
from timbersync.services.entitlements import readable_categories


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DatasetSummary:
    id: str
    filename: str
    category: str
    uploaded_at: datetime | None
    uploaded_by: str | None
    record_count: int


def parse_csv(content: bytes) -> list[dict[str, Any]]:
    """Decode an uploaded CSV into ordered header->value rows.

    A UTF-8 byte order mark is tolerated; other encodings are rejected.
    """
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ValidationFailure("CSV files must be UTF-8 encoded") from exc
    reader = csv.DictReader(io.StringIO(text))
    if not reader.fieldnames:
        raise ValidationFailure("CSV file has no header row")
    try:
        # Short rows get None for missing columns; extra cells are kept under "_extra".
        return [
            {key if key is not None else "_extra": value for key, value in row.items()}
            for row in reader
        ]
    except csv.Error as exc:
        raise ValidationFailure(f"Malformed CSV: {exc}") from exc


async def upload_dataset(
    session: AsyncSession,
    *,
    filename: str,
    content: bytes,
    category: str | None = None,
    uploaded_by: str | None = None,
) -> tuple[Dataset, int]:
    # The file row and all data rows land in one transaction or not at all.
    settings = get_settings()
    filename = (filename or "").strip()
    if not filename:
        raise ValidationFailure("No file uploaded")
    if len(content) > settings.upload_max_bytes:
        raise ValidationFailure(f"File exceeds the {settings.upload_max_bytes} byte upload limit")
    category = (category or "").strip() or settings.default_dataset_category
    rows = parse_csv(content)
    try:
        duplicate = await session.execute(
            select(Dataset.id).where(Dataset.filename == filename, Dataset.category == category)
        )
        if duplicate.first() is not None:
            raise ConflictError(
                f'File "{filename}" already exists in category "{category}"',
                field="filename",
                value=filename,
            )
        dataset = Dataset(id=uuid4().hex, filename=filename, category=category, uploaded_by=uploaded_by)
        session.add(dataset)
        await session.flush()
        session.add_all(
            DatasetRow(file_id=dataset.id, position=position, row_data=row)
            for position, row in enumerate(rows)
        )
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError(
            f'File "{filename}" already exists in category "{category}"',
            field="filename",
            value=filename,
        ) from exc
    except SQLAlchemyError as exc:
        await session.rollback()
        raise InfrastructureError("Failed to upload file") from exc
    logger.info("dataset_uploaded dataset_id=%s category=%s rows=%s", dataset.id, category, len(rows))
    return dataset, len(rows)


async def list_categories(session: AsyncSession, principal: Principal) -> list[str]:
    categories = await readable_categories(session, principal)
    if categories is not None:
        return categories
    try:
        result = await session.execute(select(Dataset.category).distinct().order_by(Dataset.category))
    except SQLAlchemyError as exc:
        raise InfrastructureError("Failed to fetch categories") from exc
    return [row[0] for row in result.all()]


async def _summaries(session: AsyncSession, principal: Principal, *filters) -> list[DatasetSummary]:
    categories = await readable_categories(session, principal)
    if categories is not None and not categories:
        return []
    counts = (
        select(DatasetRow.file_id, func.count(DatasetRow.id).label("record_count"))
        .group_by(DatasetRow.file_id)
        .subquery()
    )
    query = select(Dataset, counts.c.record_count).outerjoin(counts, counts.c.file_id == Dataset.id)
    if categories is not None:
        query = query.where(Dataset.category.in_(categories))
    for clause in filters:
        query = query.where(clause)
    query = query.order_by(Dataset.uploaded_at.desc(), Dataset.filename)
    try:
        result = await session.execute(query)
    except SQLAlchemyError as exc:
        raise InfrastructureError("Failed to fetch datasets") from exc
    return [
        DatasetSummary(
            id=dataset.id,
            filename=dataset.filename,
            category=dataset.category,
            uploaded_at=dataset.uploaded_at,
            uploaded_by=dataset.uploaded_by,
            record_count=int(record_count or 0),
        )
        for dataset, record_count in result.all()
    ]


async def list_datasets(
    session: AsyncSession, principal: Principal, *, category: str | None = None
) -> list[DatasetSummary]:
    filters = [Dataset.category == category] if category else []
    return await _summaries(session, principal, *filters)


async def search_datasets(session: AsyncSession, principal: Principal, term: str) -> list[DatasetSummary]:
    term = (term or "").strip()
    if not term:
        raise ValidationFailure("Search term required")
    pattern = f"%{term}%"
    return await _summaries(
        session,
        principal,
        or_(Dataset.filename.ilike(pattern), Dataset.category.ilike(pattern)),
    )


async def find_dataset(
    session: AsyncSession, filename: str, *, category: str | None = None
) -> Dataset:
    # Filenames are unique per category; without one the latest upload wins.
    query = select(Dataset).where(Dataset.filename == filename)
    if category:
        query = query.where(Dataset.category == category)
    query = query.order_by(Dataset.uploaded_at.desc()).limit(1)
    try:
        result = await session.execute(query)
    except SQLAlchemyError as exc:
        raise InfrastructureError("Failed to fetch data") from exc
    dataset = result.scalar_one_or_none()
    if dataset is None:
        raise NotFoundError("File not found", resource="dataset", identity=filename)
    return dataset


async def get_dataset(session: AsyncSession, dataset_id: str) -> Dataset:
    try:
        dataset = await session.get(Dataset, dataset_id)
    except SQLAlchemyError as exc:
        raise InfrastructureError("Failed to fetch dataset") from exc
    if dataset is None:
        raise NotFoundError("File not found", resource="dataset", identity=dataset_id)
    return dataset


async def load_rows(session: AsyncSession, dataset: Dataset) -> list[dict[str, Any]]:
    try:
        result = await session.execute(
            select(DatasetRow.row_data)
            .where(DatasetRow.file_id == dataset.id)
            .order_by(DatasetRow.position, DatasetRow.id)
        )
    except SQLAlchemyError as exc:
        raise InfrastructureError("Failed to fetch data") from exc
    return [row[0] for row in result.all()]


async def delete_dataset(session: AsyncSession, dataset: Dataset) -> None:
    dataset_id = dataset.id
    try:
        await session.execute(delete(DatasetRow).where(DatasetRow.file_id == dataset_id))
        await session.execute(delete(Dataset).where(Dataset.id == dataset_id))
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise InfrastructureError("Failed to delete dataset") from exc
    logger.info("dataset_deleted dataset_id=%s", dataset_id)
