import asyncio
from typing import Any, Dict

from database import Database, live_filter
from errors import NotFound
from schemas import Collection

NON_VOTER_FIELDS = {"nis": 1, "nama_lengkap": 1, "class": 1, "gender": 1}


async def find_reference_election(db: Database) -> Dict[str, Any]:
    """Latest-ending ongoing election, else the latest-ending closed one."""
    elections = db.collection(Collection.ELECTIONS)
    for election_status in ("ongoing", "closed"):
        cursor = elections.find(live_filter(status=election_status)).sort("period_end", -1).limit(1)
        found = await cursor.to_list(length=1)
        if found:
            return found[0]
    raise NotFound("No suitable election found for statistics")


async def get_vote_statistics(db: Database, position_id: int, not_votes: bool = False) -> Dict[str, Any]:
    election = await find_reference_election(db)
    period = {"period_start": election["period_start"], "period_end": election["period_end"]}
    votes = db.collection(Collection.VOTES)

    if not_votes:
        voted_user_ids = await votes.distinct("user_id", live_filter(position_id=position_id, **period))
        non_voters = await db.collection(Collection.USERS).find(
            live_filter(role="voter", status="active", _id={"$nin": voted_user_ids}),
            NON_VOTER_FIELDS,
        ).to_list(length=None)
        return {
            "position_id": position_id,
            **period,
            "non_voters": non_voters,
            "total_non_voters": len(non_voters),
        }

    candidates = await db.collection(Collection.CANDIDATES).find(
        live_filter(position_id=position_id, status="active", **period)
    ).sort("candidate_number", 1).to_list(length=None)

    counts = await asyncio.gather(
        *(
            votes.count_documents(live_filter(candidate_id=candidate["_id"], position_id=position_id, **period))
            for candidate in candidates
        )
    )

    data = [
        {
            "candidate_id": candidate["_id"],
            "candidate_number": candidate.get("candidate_number"),
            "name": candidate.get("name"),
            "voters": voters,
        }
        for candidate, voters in zip(candidates, counts)
    ]
    return {
        "position_id": position_id,
        **period,
        "total_votes": sum(counts),
        "data": data,
    }
