from datetime import timedelta

import pytest

from flowrun.persistence.repositories.dataclip_repository import DataclipRepository
from flowrun.service.dataclip_service import EXPIRABLE_TYPES, build_dataclip
from flowrun.utils.timefmt import utcnow


@pytest.mark.asyncio
async def test_mark_wiped_only_once(db_session, project):
    repo = DataclipRepository(db_session)
    clip = await repo.create(build_dataclip(project.id, {"a": 1}, "http_request", request={"headers": {}}))

    first = utcnow()
    assert await repo.mark_wiped(clip.id, first) is True
    assert await repo.mark_wiped(clip.id, first + timedelta(minutes=5)) is False
    await db_session.commit()

    wiped = await repo.reload(clip.id)
    assert wiped.body is None
    assert wiped.request is None
    assert wiped.wiped_at == first


@pytest.mark.asyncio
async def test_wipe_older_than_skips_named_and_recent_clips(db_session, project):
    repo = DataclipRepository(db_session)
    old = build_dataclip(project.id, {"old": True}, "step_result")
    old.inserted_at = utcnow() - timedelta(days=30)
    named = build_dataclip(project.id, {"keep": True}, "saved_input", name="fixture")
    named.inserted_at = utcnow() - timedelta(days=30)
    recent = build_dataclip(project.id, {"new": True}, "http_request")
    for clip in (old, named, recent):
        await repo.add(clip)
    await db_session.commit()

    now = utcnow()
    count = await repo.wipe_older_than(project.id, now - timedelta(days=7), EXPIRABLE_TYPES, now)
    await db_session.commit()

    assert count == 1
    assert (await repo.reload(old.id)).wiped_at is not None
    assert (await repo.reload(named.id)).body == {"keep": True}
    assert (await repo.reload(recent.id)).wiped_at is None


@pytest.mark.asyncio
async def test_find_by_sha256_ignores_wiped(db_session, project):
    repo = DataclipRepository(db_session)
    clip = await repo.create(build_dataclip(project.id, {"x": 1}, "saved_input"))

    assert (await repo.find_by_sha256(project.id, clip.sha256)).id == clip.id

    await repo.mark_wiped(clip.id, utcnow())
    await db_session.commit()
    assert await repo.find_by_sha256(project.id, clip.sha256) is None
