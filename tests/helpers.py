import crud
from schemas import Collection

PASSWORD = "secret123"


async def create_user(db, nis, **fields):
    data = {"nis": nis, "password": PASSWORD, "nama_lengkap": f"User {nis}", **fields}
    return await crud.create(db, Collection.USERS, data)


async def create_position(db, position_id=1, name="Ketua", **fields):
    return await crud.create(db, Collection.POSITIONS, {"position_id": position_id, "name": name, **fields})


async def create_election(db, period_start=2025, period_end=2026, status="ongoing", **fields):
    data = {"period_start": period_start, "period_end": period_end, "status": status, **fields}
    return await crud.create(db, Collection.ELECTIONS, data)


async def create_candidate(db, user, candidate_number=1, position_id=1, period=(2025, 2026), **fields):
    data = {
        "position_id": position_id,
        "candidate_number": candidate_number,
        "period_start": period[0],
        "period_end": period[1],
        "user_id": str(user["_id"]),
        "name": user["nama_lengkap"],
        "profile": "Ready to serve",
        **fields,
    }
    return await crud.create(db, Collection.CANDIDATES, data)


async def cast_vote(db, user, candidate):
    data = {
        "user_id": str(user["_id"]),
        "candidate_id": str(candidate["_id"]),
        "position_id": candidate["position_id"],
        "period_start": candidate["period_start"],
        "period_end": candidate["period_end"],
    }
    return await crud.create(db, Collection.VOTES, data)
