from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from forumai.core.config import Settings, get_settings
from forumai.core.errors import ValidationError
from forumai.persistence.repos import options as options_repo


logger = logging.getLogger(__name__)

OPTION_CHUNK_SIZE = "indexing.chunk_size"
OPTION_OVERLAP_PERCENT = "indexing.overlap_percent"
OPTION_BATCH_SIZE = "indexing.batch_size"
OPTION_IMAGE_INDEXING = "indexing.image_indexing"
OPTION_AUTO_INDEXING = "indexing.auto_indexing"

_FIELD_KEYS = {
    "chunk_size": OPTION_CHUNK_SIZE,
    "overlap_percent": OPTION_OVERLAP_PERCENT,
    "batch_size": OPTION_BATCH_SIZE,
    "image_indexing": OPTION_IMAGE_INDEXING,
    "auto_indexing": OPTION_AUTO_INDEXING,
}
INDEXING_OPTION_KEYS = tuple(_FIELD_KEYS.values())


class IndexingOptions(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    chunk_size: int
    overlap_percent: int
    batch_size: int
    image_indexing: bool = False
    auto_indexing: bool = True


def _check_range(field: str, value: int, low: int, high: int) -> None:
    if not low <= value <= high:
        raise ValidationError(f"{field} must be between {low} and {high}, got {value}", field=field)


def validate_chunk_params(chunk_size: int, overlap_percent: int, settings: Settings | None = None) -> None:
    # Range-check chunking values against configured bounds.
    settings = settings or get_settings()
    _check_range("chunk_size", int(chunk_size), settings.chunk_size_min, settings.chunk_size_max)
    _check_range("overlap_percent", int(overlap_percent), settings.overlap_percent_min, settings.overlap_percent_max)


def validate_indexing_options(options: IndexingOptions, settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    validate_chunk_params(options.chunk_size, options.overlap_percent, settings)
    _check_range("batch_size", options.batch_size, settings.batch_size_min, settings.batch_size_max)


def default_indexing_options(settings: Settings | None = None) -> IndexingOptions:
    # Defaults come from settings until an admin saves options.
    settings = settings or get_settings()
    return IndexingOptions(
        chunk_size=settings.chunk_size_default,
        overlap_percent=settings.overlap_percent_default,
        batch_size=settings.batch_size_default,
        image_indexing=settings.image_indexing_default,
        auto_indexing=settings.auto_indexing_default,
    )


async def load_indexing_options(session: AsyncSession) -> IndexingOptions:
    # Read stored options merged over defaults.
    defaults = default_indexing_options().model_dump()
    stored = await options_repo.get_options(session, INDEXING_OPTION_KEYS)
    values = {field: stored.get(key, defaults[field]) for field, key in _FIELD_KEYS.items()}
    try:
        options = IndexingOptions.model_validate(values)
        validate_indexing_options(options)
    except (PydanticValidationError, ValidationError) as exc:
        # A corrupted stored option falls back to defaults rather than blocking every operation.
        logger.warning("indexing_options_invalid_fallback error=%s", exc)
        return default_indexing_options()
    return options


async def save_indexing_options(session: AsyncSession, changes: dict[str, Any]) -> IndexingOptions:
    """Validate the merged options first, then write every change or none."""
    unknown = sorted(set(changes) - set(_FIELD_KEYS))
    if unknown:
        raise ValidationError(f"unknown indexing options: {', '.join(unknown)}", field=unknown[0])
    current = await load_indexing_options(session)
    try:
        merged = IndexingOptions.model_validate({**current.model_dump(), **changes})
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        field = str(first["loc"][0]) if first.get("loc") else None
        raise ValidationError(f"invalid indexing option: {first['msg']}", field=field) from exc
    validate_indexing_options(merged)
    await options_repo.set_options(
        session,
        {_FIELD_KEYS[field]: getattr(merged, field) for field in changes},
    )
    await session.commit()
    logger.info("indexing_options_saved fields=%s", ",".join(sorted(changes)))
    return merged
