"""
Sequence catalog - read access to sequences and steps, seeding, and admin edits.
Steps are immutable at runtime except through update_sequence_step().
"""
import logging
import uuid
from typing import Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from nurture.exceptions import NotFoundError
from nurture.models.sequence import Sequence, SequenceStep
from nurture.schemas.sequence_catalog import SequenceDefinition, StepUpdate
from nurture.utils.logging import short_id
from nurture.utils.templates import DEFAULT_SEQUENCES

logger = logging.getLogger(__name__)


async def get_sequence_by_slug(db: AsyncSession, slug: str) -> Optional[Sequence]:
    result = await db.execute(select(Sequence).where(Sequence.slug == slug))
    return result.scalar_one_or_none()


async def require_sequence(db: AsyncSession, slug: str) -> Sequence:
    """Like get_sequence_by_slug() but raises NotFoundError."""
    sequence = await get_sequence_by_slug(db, slug)
    if not sequence:
        raise NotFoundError(f"Sequence not found: {slug}")
    return sequence


async def get_sequence_steps(
    db: AsyncSession,
    sequence_id: uuid.UUID,
    active_only: bool = False,
) -> list[SequenceStep]:
    query = select(SequenceStep).where(SequenceStep.sequence_id == sequence_id)
    if active_only:
        query = query.where(SequenceStep.is_active == True)  # noqa: E712
    result = await db.execute(query.order_by(SequenceStep.step_order))
    return list(result.scalars().all())


async def get_step(db: AsyncSession, step_id: uuid.UUID) -> Optional[SequenceStep]:
    return await db.get(SequenceStep, step_id)


async def list_sequences(db: AsyncSession) -> list[tuple[Sequence, list[SequenceStep]]]:
    """All sequences with their steps, ordered by name."""
    result = await db.execute(select(Sequence).order_by(Sequence.name))
    sequences = result.scalars().all()
    out = []
    for sequence in sequences:
        out.append((sequence, await get_sequence_steps(db, sequence.id)))
    return out


async def seed_catalog(db: AsyncSession, definitions: Optional[list[dict]] = None) -> int:
    """
    Insert the default sequences and their steps if missing.
    Existing sequences and steps are left untouched (admin edits survive reseeding).
    Returns the number of steps inserted. Caller commits.
    """
    inserted = 0
    for raw in definitions if definitions is not None else DEFAULT_SEQUENCES:
        definition = SequenceDefinition(**raw)

        sequence = await get_sequence_by_slug(db, definition.slug)
        if not sequence:
            sequence = Sequence(
                name=definition.name,
                slug=definition.slug,
                description=definition.description,
                trigger_type=definition.trigger_type,
                is_active=definition.is_active,
            )
            db.add(sequence)
            await db.flush()
            logger.info("Seeded sequence %s", definition.slug)

        existing = {s.step_order for s in await get_sequence_steps(db, sequence.id)}
        for step in definition.steps:
            if step.step_order in existing:
                continue
            db.add(SequenceStep(sequence_id=sequence.id, **step.model_dump()))
            inserted += 1

    await db.flush()
    return inserted


async def update_sequence_step(
    db: AsyncSession,
    step_id: uuid.UUID,
    updates: StepUpdate,
) -> SequenceStep:
    """Apply an administrative edit to a step. Caller commits."""
    step = await get_step(db, step_id)
    if not step:
        raise NotFoundError(f"Sequence step not found: {step_id}")

    for field, value in updates.model_dump(exclude_unset=True).items():
        setattr(step, field, value)

    await db.flush()
    logger.info("Sequence step %s updated: %s", short_id(step_id),
                ", ".join(updates.model_dump(exclude_unset=True).keys()))
    return step
