from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from functools import lru_cache
from typing import Optional
import logging
import os

from google.cloud import firestore

from petradar import __version__
from petradar.common.errors import PetRadarError
from petradar.common.schemas import MatchUpdate, StatusUpdate, UserRegistration, UserUpdate
from petradar.config import Settings, load_settings
from petradar.pet_db import (
    ImageUpload, LostReportFields, MatchingOrchestrator, MatchService, PetStore,
    ReportService, SightingFields,
)
from petradar.pet_db.geo import distance, within_radius
from petradar.services.notifications import NotificationDispatcher
from petradar.services.push import ExpoPushGateway
from petradar.services.similarity import SimilaritySearchClient
from petradar.services.storage import ObjectStore

# Basic logging setup
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.FileHandler(os.getenv("LOG_FILE", "activity.log")),
        logging.StreamHandler()
    ]
)

logger = logging.getLogger(__name__)

app = FastAPI(title="PetRadar API", version=__version__)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─── dependencies ───────────────────────────────────────────────

@lru_cache
def get_settings() -> Settings:
    return load_settings()


@lru_cache
def get_firestore() -> firestore.Client:
    return firestore.Client(project=get_settings().project_id)


def get_store() -> PetStore:
    return PetStore(get_firestore())


@lru_cache
def get_object_store() -> ObjectStore:
    settings = get_settings()
    return ObjectStore(settings.storage_bucket, project_id=settings.project_id)


@lru_cache
def get_similarity() -> SimilaritySearchClient:
    settings = get_settings()
    return SimilaritySearchClient(settings.similarity_api_url, timeout=settings.similarity_timeout)


@lru_cache
def get_push_gateway() -> ExpoPushGateway:
    settings = get_settings()
    return ExpoPushGateway(settings.expo_push_url, access_token=settings.expo_access_token)


def get_dispatcher(store: PetStore = Depends(get_store),
                   gateway: ExpoPushGateway = Depends(get_push_gateway)) -> NotificationDispatcher:
    return NotificationDispatcher(store, gateway)


def get_orchestrator(store: PetStore = Depends(get_store),
                     object_store: ObjectStore = Depends(get_object_store),
                     similarity: SimilaritySearchClient = Depends(get_similarity),
                     dispatcher: NotificationDispatcher = Depends(get_dispatcher)) -> MatchingOrchestrator:
    return MatchingOrchestrator(store, object_store, similarity, dispatcher)


def get_match_service(store: PetStore = Depends(get_store),
                      dispatcher: NotificationDispatcher = Depends(get_dispatcher)) -> MatchService:
    return MatchService(store, dispatcher)


def get_report_service(store: PetStore = Depends(get_store),
                       object_store: ObjectStore = Depends(get_object_store),
                       similarity: SimilaritySearchClient = Depends(get_similarity)) -> ReportService:
    return ReportService(store, object_store, similarity)


def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    # Token verification happens at the gateway; it forwards the caller id.
    if not x_user_id:
        raise HTTPException(status_code=401, detail="User not authenticated")
    return x_user_id


@app.exception_handler(PetRadarError)
async def handle_petradar_error(request: Request, exc: PetRadarError):
    level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(level, f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": str(exc)})


def _geo_filter(lat: Optional[float], lng: Optional[float], radius: Optional[float]):
    if lat is None or lng is None or radius is None:
        return None
    return within_radius("location", lng, lat, radius)


def _listing(items, lat, lng, near, limit, offset):
    data = []
    measure = distance("location", lng, lat) if near is not None else None
    for item in items:
        row = item.as_json()
        if measure is not None:
            row["distance_meters"] = measure(item.to_dict())
        data.append(row)
    return {
        "success": True,
        "data": data,
        "pagination": {"limit": limit, "offset": offset, "count": len(data)},
    }


async def _read_upload(image: Optional[UploadFile]) -> Optional[ImageUpload]:
    if image is None:
        return None
    return ImageUpload(
        data=await image.read(),
        content_type=image.content_type or "",
        filename=image.filename or "pet.jpg",
    )


# ─── routes ─────────────────────────────────────────────────────

@app.get("/")
async def root():
    return {"message": "PetRadar API is running"}


@app.get("/api/health")
def health(similarity: SimilaritySearchClient = Depends(get_similarity)):
    info = {"backend": "running", "similarity": "unknown"}
    try:
        info["similarity"] = similarity.health_check().get("status", "ok")
    except PetRadarError as e:
        info["similarity"] = f"error: {str(e)[:80]}"
    return info


# users

@app.post("/api/users", status_code=201)
def register_user(body: UserRegistration, user_id: str = Depends(get_current_user_id),
                  store: PetStore = Depends(get_store)):
    user = store.ensure_user(user_id, body.email, body.full_name)
    return {"success": True, "data": {"user_id": user.id, "email": user.email, "full_name": user.full_name}}


@app.put("/api/users/me")
def update_me(body: UserUpdate, user_id: str = Depends(get_current_user_id),
              store: PetStore = Depends(get_store)):
    user = store.update_user(user_id, body.model_dump(exclude_unset=True))
    return {"success": True, "data": {
        "user_id": user.id,
        "email": user.email,
        "full_name": user.full_name,
        "phone_number": user.phone_number,
        "has_push_token": bool(user.push_token),
    }}


@app.post("/api/users/me/test-notification")
def test_notification(user_id: str = Depends(get_current_user_id),
                      dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    result = dispatcher.send_test(user_id)
    return {"success": result.delivered, "reason": result.reason}


# sightings

@app.post("/api/sighting-reports", status_code=201)
async def create_sighting(
        sighting_date: Optional[str] = Form(None),
        description: Optional[str] = Form(None),
        latitude: Optional[float] = Form(None),
        longitude: Optional[float] = Form(None),
        location_text: Optional[str] = Form(None),
        image: Optional[UploadFile] = File(None),
        user_id: str = Depends(get_current_user_id),
        orchestrator: MatchingOrchestrator = Depends(get_orchestrator)):
    fields = SightingFields(
        sighting_date=sighting_date,
        description=description,
        latitude=latitude,
        longitude=longitude,
        location_text=location_text,
    )
    upload = await _read_upload(image)
    logger.info(f"Creating sighting for {user_id}, location: {latitude is not None and longitude is not None}")
    result = await run_in_threadpool(orchestrator.handle_new_sighting, user_id, fields, upload)
    return {"success": True, "data": result.as_json()}


@app.get("/api/sighting-reports")
def list_sightings(status: Optional[str] = None, lat: Optional[float] = None,
                   lng: Optional[float] = None, radius: Optional[float] = None,
                   date_from: Optional[str] = None, date_to: Optional[str] = None,
                   limit: int = 50, offset: int = 0, store: PetStore = Depends(get_store)):
    near = _geo_filter(lat, lng, radius)
    sightings = store.list_sightings(status=status, date_from=date_from, date_to=date_to,
                                     near=near, limit=limit, offset=offset)
    return _listing(sightings, lat, lng, near, limit, offset)


@app.patch("/api/sighting-reports/{sighting_id}/status")
def update_sighting_status(sighting_id: str, body: StatusUpdate,
                           user_id: str = Depends(get_current_user_id),
                           reports: ReportService = Depends(get_report_service)):
    sighting = reports.set_sighting_status(user_id, sighting_id, body.status)
    return {"success": True, "data": sighting.as_json()}


@app.delete("/api/sighting-reports/{sighting_id}")
def delete_sighting(sighting_id: str, user_id: str = Depends(get_current_user_id),
                    reports: ReportService = Depends(get_report_service)):
    reports.delete_sighting(user_id, sighting_id)
    return {"success": True, "message": "Sighting deleted"}


# lost reports

@app.post("/api/lost-reports", status_code=201)
async def create_lost_report(
        pet_name: Optional[str] = Form(None),
        species: Optional[str] = Form(None),
        lost_date: Optional[str] = Form(None),
        breed: Optional[str] = Form(None),
        description: Optional[str] = Form(None),
        latitude: Optional[float] = Form(None),
        longitude: Optional[float] = Form(None),
        last_seen_location_text: Optional[str] = Form(None),
        image: Optional[UploadFile] = File(None),
        user_id: str = Depends(get_current_user_id),
        orchestrator: MatchingOrchestrator = Depends(get_orchestrator)):
    fields = LostReportFields(
        pet_name=pet_name,
        species=species,
        lost_date=lost_date,
        breed=breed,
        description=description,
        latitude=latitude,
        longitude=longitude,
        last_seen_location_text=last_seen_location_text,
    )
    upload = await _read_upload(image)
    result = await run_in_threadpool(orchestrator.handle_new_lost_report, user_id, fields, upload)
    return {"success": True, "data": result.as_json()}


@app.get("/api/lost-reports")
def list_lost_reports(status: Optional[str] = None, species: Optional[str] = None,
                      lat: Optional[float] = None, lng: Optional[float] = None,
                      radius: Optional[float] = None, date_from: Optional[str] = None,
                      date_to: Optional[str] = None, limit: int = 50, offset: int = 0,
                      store: PetStore = Depends(get_store)):
    near = _geo_filter(lat, lng, radius)
    reports = store.list_lost_reports(status=status, species=species, date_from=date_from,
                                      date_to=date_to, near=near, limit=limit, offset=offset)
    return _listing(reports, lat, lng, near, limit, offset)


@app.patch("/api/lost-reports/{report_id}/status")
def update_report_status(report_id: str, body: StatusUpdate,
                         user_id: str = Depends(get_current_user_id),
                         reports: ReportService = Depends(get_report_service)):
    report = reports.set_report_status(user_id, report_id, body.status)
    return {"success": True, "data": report.as_json()}


@app.delete("/api/lost-reports/{report_id}")
def delete_lost_report(report_id: str, user_id: str = Depends(get_current_user_id),
                       reports: ReportService = Depends(get_report_service)):
    reports.delete_report(user_id, report_id)
    return {"success": True, "message": "Lost report deleted"}


# matches

@app.get("/api/matches")
def list_my_matches(status: Optional[str] = None, limit: int = 50, offset: int = 0,
                    user_id: str = Depends(get_current_user_id),
                    matches: MatchService = Depends(get_match_service)):
    items = matches.list_for_owner(user_id, status, limit, offset)
    return {
        "success": True,
        "data": [m.as_json() for m in items],
        "pagination": {"limit": limit, "offset": offset, "count": len(items)},
    }


@app.get("/api/matches/{match_id}")
def get_match(match_id: str, user_id: str = Depends(get_current_user_id),
              matches: MatchService = Depends(get_match_service)):
    return {"success": True, "data": matches.get_detail(user_id, match_id)}


@app.patch("/api/matches/{match_id}/status")
def update_match_status(match_id: str, body: StatusUpdate,
                        user_id: str = Depends(get_current_user_id),
                        matches: MatchService = Depends(get_match_service)):
    match = matches.update_status(user_id, match_id, body.status)
    return {"success": True, "data": match.as_json()}


@app.put("/api/matches/{match_id}")
def update_match(match_id: str, body: MatchUpdate,
                 user_id: str = Depends(get_current_user_id),
                 matches: MatchService = Depends(get_match_service)):
    match = matches.update(user_id, match_id, score=body.score, status=body.status)
    return {"success": True, "data": match.as_json()}


@app.delete("/api/matches/{match_id}")
def delete_match(match_id: str, user_id: str = Depends(get_current_user_id),
                 matches: MatchService = Depends(get_match_service)):
    matches.delete(user_id, match_id)
    return {"success": True, "message": "Match deleted"}


if __name__ == "__main__":
    import argparse
    import uvicorn

    parser = argparse.ArgumentParser(description='PetRadar API Server')
    parser.add_argument('--port', type=int, default=8000, help='Port to run the server on')
    args = parser.parse_args()

    uvicorn.run(app, host="0.0.0.0", port=args.port)
