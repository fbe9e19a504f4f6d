import pytest

import crud
from errors import NotFound
from helpers import cast_vote, create_candidate, create_election, create_user
from schemas import Collection
from vote_statistics import find_reference_election, get_vote_statistics


@pytest.mark.anyio
async def test_ongoing_election_wins_over_closed(db):
    await create_election(db, period_start=2024, period_end=2025, status="closed")
    await create_election(db, period_start=2025, period_end=2026, status="ongoing")
    old = await create_candidate(db, await create_user(db, "c-old"), period=(2024, 2025))
    new = await create_candidate(db, await create_user(db, "c-new"), period=(2025, 2026))
    await cast_vote(db, await create_user(db, "v1"), old)
    await cast_vote(db, await create_user(db, "v2"), new)

    stats = await get_vote_statistics(db, 1, False)

    assert (stats["period_start"], stats["period_end"]) == (2025, 2026)
    assert [row["candidate_id"] for row in stats["data"]] == [new["_id"]]
    assert stats["total_votes"] == 1


@pytest.mark.anyio
async def test_falls_back_to_latest_closed_election(db):
    await create_election(db, period_start=2022, period_end=2023, status="closed")
    await create_election(db, period_start=2023, period_end=2024, status="closed")
    await create_election(db, period_start=2026, period_end=2027, status="upcoming")

    election = await find_reference_election(db)

    assert election["period_end"] == 2024


@pytest.mark.anyio
async def test_no_suitable_election(db):
    await create_election(db, status="upcoming")

    with pytest.raises(NotFound):
        await get_vote_statistics(db, 1)


@pytest.mark.anyio
async def test_tallies_match_live_vote_count(db):
    await create_election(db)
    first = await create_candidate(db, await create_user(db, "c1"), candidate_number=2)
    second = await create_candidate(db, await create_user(db, "c2"), candidate_number=1)
    inactive = await create_candidate(db, await create_user(db, "c3"), candidate_number=3, status="inactive")

    for nis in ("v1", "v2", "v3"):
        await cast_vote(db, await create_user(db, nis), first)
    withdrawn = await cast_vote(db, await create_user(db, "v4"), second)
    await cast_vote(db, await create_user(db, "v5"), second)
    await crud.soft_delete(db, Collection.VOTES, str(withdrawn["_id"]))

    stats = await get_vote_statistics(db, 1)

    assert [(row["candidate_number"], row["voters"]) for row in stats["data"]] == [(1, 1), (2, 3)]
    assert inactive["_id"] not in [row["candidate_id"] for row in stats["data"]]
    live_votes = await db.collection(Collection.VOTES).count_documents(
        {"position_id": 1, "period_start": 2025, "period_end": 2026, "deleted_at": {"$exists": False}}
    )
    assert stats["total_votes"] == live_votes == 4


@pytest.mark.anyio
async def test_non_voters(db):
    await create_election(db)
    candidate = await create_candidate(db, await create_user(db, "cand"))
    voted = await create_user(db, "voted", gender="L")
    waiting = await create_user(db, "waiting", gender="P", **{"class": "XI"})
    await create_user(db, "sleeping", status="inactive")
    await create_user(db, "boss", role="admin")
    gone = await create_user(db, "gone")
    await crud.soft_delete(db, Collection.USERS, str(gone["_id"]))
    await cast_vote(db, voted, candidate)

    stats = await get_vote_statistics(db, 1, not_votes=True)

    nis = sorted(user["nis"] for user in stats["non_voters"])
    assert nis == ["cand", "waiting"]
    assert stats["total_non_voters"] == 2
    waiting_row = next(user for user in stats["non_voters"] if user["nis"] == "waiting")
    assert waiting_row["class"] == "XI"
    assert "password" not in waiting_row
