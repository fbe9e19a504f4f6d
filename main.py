import json
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import Body, Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, StrictStr

import config
import crud
import query
import vote_statistics
from auth import authenticate, get_admin_user, get_current_user
from database import Database, get_database
from errors import Forbidden, ValidationFailed, register_exception_handlers
from logging_config import configure_logging
from schemas import Collection, CollectionSpec, get_collection_spec


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(config.LOG_LEVEL)
    db = Database()
    await db.connect()
    await db.ensure_indexes()
    app.state.db = db
    yield
    db.close()


# Initialize FastAPI
app = FastAPI(title="PEMIYOS Voting API", version="1.0.0", lifespan=lifespan)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Pagination"],
)

register_exception_handlers(app)


# Request Models
class LoginRequest(BaseModel):
    nis: StrictStr
    password: StrictStr


class FlushRequest(BaseModel):
    collections: List[str]


# Response helpers
def success_response(
    data: Any = None, message: str = "Success", pagination: Optional[dict] = None, status_code: int = 200
):
    content = {"data": data, "message": message}
    headers = None
    if pagination is not None:
        content["pagination"] = pagination
        headers = {"X-Pagination": json.dumps(pagination)}
    return JSONResponse(
        content=jsonable_encoder(content, custom_encoder={ObjectId: str}),
        status_code=status_code,
        headers=headers,
    )


def public(spec: CollectionSpec, document: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in document.items() if key not in spec.hidden_fields}


def resolve_collection(collection_name: str) -> CollectionSpec:
    return get_collection_spec(collection_name)


def query_params(request: Request) -> Dict[str, Any]:
    grouped = defaultdict(list)
    for key, value in request.query_params.multi_items():
        grouped[key].append(value)
    return {key: values[0] if len(values) == 1 else values for key, values in grouped.items()}


def require_body(data: Any) -> None:
    if not data:
        raise ValidationFailed("Request body is required")


def is_admin(user: Dict[str, Any]) -> bool:
    return user.get("role") == "admin"


def authorize_write(spec: CollectionSpec, current_user: Dict[str, Any]) -> None:
    """Voters may only write ballots; every other collection is admin-managed."""
    if spec.name != Collection.VOTES and not is_admin(current_user):
        raise Forbidden("Admin access required")


def claim_ballot(data: Any, current_user: Dict[str, Any]) -> Any:
    """A voter's ballot is always cast as themself."""
    if is_admin(current_user) or not isinstance(data, dict):
        return data
    own_id = str(current_user["_id"])
    ballot = {**data, "user_id": data.get("user_id", own_id)}
    if str(ballot["user_id"]) != own_id:
        raise Forbidden("Voters can only cast their own vote")
    return ballot


# Routes
@app.get("/")
async def root():
    return {"message": "PEMIYOS Voting System API"}


@app.get("/health")
async def health():
    return success_response(
        {"status": "ok", "timestamp": datetime.now(timezone.utc), "version": app.version},
        "Service is healthy",
    )


# Authentication routes
@app.post("/api/auth/login")
async def login(credentials: LoginRequest, db: Database = Depends(get_database)):
    if not credentials.nis or not credentials.password:
        raise ValidationFailed("NIS and password are required")
    result = await authenticate(db, credentials.nis, credentials.password)
    return success_response(result, "Login successful")


@app.get("/api/auth/profile")
async def get_profile(current_user: dict = Depends(get_current_user)):
    return success_response(current_user, "Profile retrieved successfully")


# Statistics routes
@app.get("/api/statistic/votes/{position_id}")
async def get_vote_stats(
    position_id: str,
    not_votes: bool = False,
    db: Database = Depends(get_database),
    current_user: dict = Depends(get_current_user),
):
    try:
        position = int(position_id)
    except ValueError:
        raise ValidationFailed("Invalid position_id")
    result = await vote_statistics.get_vote_statistics(db, position, not_votes)
    return success_response(result)


# Admin maintenance
@app.delete("/api/flush")
async def flush_collections(
    payload: FlushRequest,
    db: Database = Depends(get_database),
    admin_user: dict = Depends(get_admin_user),
):
    result = await crud.flush_delete(db, payload.collections)
    return success_response(result["details"], result["message"])


# Generic collection routes
@app.get("/api/{collection_name}")
async def get_all(
    request: Request,
    spec: CollectionSpec = Depends(resolve_collection),
    db: Database = Depends(get_database),
    current_user: dict = Depends(get_current_user),
):
    result = await query.find_all(db, spec.name, query_params(request))
    if "count" in result:
        return success_response(result, "Count retrieved successfully")

    rows = [public(spec, row) for row in result["data"]]
    return success_response(rows, "Data retrieved successfully", result.get("pagination"))


@app.post("/api/{collection_name}/bulk")
async def bulk_create(
    items: List[Dict[str, Any]] = Body(...),
    spec: CollectionSpec = Depends(resolve_collection),
    db: Database = Depends(get_database),
    current_user: dict = Depends(get_current_user),
):
    require_body(items)
    authorize_write(spec, current_user)
    if spec.name == Collection.VOTES:
        items = [claim_ballot(item, current_user) for item in items]
    result = await crud.bulk_create(db, spec.name, items)
    return success_response(result, result["message"])


@app.get("/api/{collection_name}/{id}")
async def get_by_id(
    id: str,
    spec: CollectionSpec = Depends(resolve_collection),
    db: Database = Depends(get_database),
    current_user: dict = Depends(get_current_user),
):
    document = await query.find_by_id(db, spec.name, id)
    return success_response(public(spec, document), "Data retrieved successfully")


@app.post("/api/{collection_name}")
async def create(
    data: Dict[str, Any] = Body(...),
    spec: CollectionSpec = Depends(resolve_collection),
    db: Database = Depends(get_database),
    current_user: dict = Depends(get_current_user),
):
    require_body(data)
    authorize_write(spec, current_user)
    if spec.name == Collection.VOTES:
        data = claim_ballot(data, current_user)

    document = await crud.create(db, spec.name, data)
    return success_response(public(spec, document), "Data created successfully", status_code=201)


@app.put("/api/{collection_name}/{id}")
async def update(
    id: str,
    data: Dict[str, Any] = Body(...),
    spec: CollectionSpec = Depends(resolve_collection),
    db: Database = Depends(get_database),
    current_user: dict = Depends(get_current_user),
):
    require_body(data)
    authorize_write(spec, current_user)
    if spec.name == Collection.VOTES and not is_admin(current_user):
        ballot = await query.find_by_id(db, spec.name, id)
        if str(ballot.get("user_id")) != str(current_user["_id"]):
            raise Forbidden("Voters can only change their own vote")
        data = claim_ballot(data, current_user)
    document = await crud.update(db, spec.name, id, data)
    return success_response(public(spec, document), "Data updated successfully")


@app.delete("/api/{collection_name}/{id}")
async def soft_delete(
    id: str,
    spec: CollectionSpec = Depends(resolve_collection),
    db: Database = Depends(get_database),
    admin_user: dict = Depends(get_admin_user),
):
    result = await crud.soft_delete(db, spec.name, id)
    return success_response(None, result["message"])


@app.delete("/api/{collection_name}/{id}/hard")
async def hard_delete(
    id: str,
    spec: CollectionSpec = Depends(resolve_collection),
    db: Database = Depends(get_database),
    admin_user: dict = Depends(get_admin_user),
):
    result = await crud.hard_delete(db, spec.name, id)
    return success_response(None, result["message"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=config.HOST, port=config.PORT)
