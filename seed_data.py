#!/usr/bin/env python
"""
Seed script to create indexes and insert sample data for local development.

Usage:
    python seed_data.py
    python seed_data.py --indexes-only
"""

import argparse
import asyncio
import logging

import config
import crud
from database import Database
from errors import AppError, Conflict
from logging_config import configure_logging
from schemas import Collection

logger = logging.getLogger("seed_data")

USERS = [
    {"nis": "Admin", "password": "Admin123", "nama_lengkap": "Admin User", "role": "admin", "status": "active"},
    {"nis": "234567", "password": "voter123", "nama_lengkap": "John Doe", "role": "voter", "status": "active"},
    {"nis": "345678", "password": "voter123", "nama_lengkap": "Jane Smith", "role": "voter", "status": "active"},
]

POSITIONS = [
    {"position_id": 1, "name": "Ketua", "description": "Ketua Organisasi"},
    {"position_id": 2, "name": "Sekretaris", "description": "Sekretaris Organisasi"},
    {"position_id": 3, "name": "Bendahara", "description": "Bendahara Organisasi"},
]

ELECTIONS = [
    {
        "period_start": 2025,
        "period_end": 2026,
        "voting_start": "2025-01-01",
        "voting_end": "2025-01-31",
        "status": "upcoming",
    },
]

CANDIDATE_PROFILES = [
    {
        "profile": "Experienced leader with vision for change",
        "vision_mission": {
            "vision": "To create a better organization for everyone",
            "mission": "Listen first, then act",
        },
        "program_kerja": "1. Improve communication\n2. Increase participation\n3. Better events",
    },
    {
        "profile": "Fresh perspective with innovative ideas",
        "vision_mission": {
            "vision": "An open and creative organization",
            "mission": "Give every member a voice",
        },
        "program_kerja": "1. Monthly forums\n2. Digital suggestion box",
    },
]


async def insert_all(db: Database, collection: Collection, items, label):
    created = []
    for item in items:
        try:
            created.append(await crud.create(db, collection, item))
            logger.info("Created %s: %s", collection.value, item[label])
        except Conflict:
            logger.info("%s already exists: %s", collection.value, item[label])
        except AppError as exc:
            logger.error("Failed to create %s %s: %s", collection.value, item[label], exc.message)
    return created


async def seed(indexes_only: bool = False) -> None:
    db = Database()
    await db.connect()
    try:
        await db.ensure_indexes()
        if indexes_only:
            return

        await insert_all(db, Collection.USERS, USERS, "nis")
        await insert_all(db, Collection.POSITIONS, POSITIONS, "name")
        await insert_all(db, Collection.ELECTIONS, ELECTIONS, "period_start")

        voters = await db.collection(Collection.USERS).find({"role": "voter"}).to_list(length=len(CANDIDATE_PROFILES))
        candidates = [
            {
                "position_id": 1,
                "candidate_number": number,
                "period_start": 2025,
                "period_end": 2026,
                "user_id": str(voter["_id"]),
                "name": voter["nama_lengkap"],
                **profile,
            }
            for number, (voter, profile) in enumerate(zip(voters, CANDIDATE_PROFILES), start=1)
        ]
        await insert_all(db, Collection.CANDIDATES, candidates, "name")
    finally:
        db.close()


def main():
    parser = argparse.ArgumentParser(description="Create indexes and sample data")
    parser.add_argument("--indexes-only", action="store_true", help="only create the collection indexes")
    args = parser.parse_args()

    configure_logging(config.LOG_LEVEL)
    asyncio.run(seed(indexes_only=args.indexes_only))


if __name__ == "__main__":
    main()
