# scripts/seed_firestore.py

import os
from dotenv import load_dotenv
from google.cloud import firestore

from petradar.pet_db import LostReportFields, PetStore, SightingFields

# ─── Bootstrap ────────────────────────────────────────────────────
load_dotenv()  # expects PROJECT_ID and GOOGLE_APPLICATION_CREDENTIALS in your .env
PROJECT_ID = os.getenv("PROJECT_ID")
if not PROJECT_ID:
    raise RuntimeError("PROJECT_ID must be set in your .env")

store = PetStore(firestore.Client(project=PROJECT_ID))

# ─── Demo data (no photos: those go through the API) ─────────────
users = [
    {"id": "demo-owner-1", "email": "alice@example.com", "full_name": "Alice"},
    {"id": "demo-owner-2", "email": "bob@example.com", "full_name": "Bob"},
    {"id": "demo-reporter", "email": "carol@example.com", "full_name": "Carol"},
]

lost_reports = [
    ("demo-owner-1", LostReportFields(
        pet_name="Luna", species="dog", breed="Beagle", lost_date="2025-06-01",
        description="Tricolour beagle with a red collar",
        latitude=40.4199835, longitude=-3.6887262,
        last_seen_location_text="Puerta de Alcalá, Madrid")),
    ("demo-owner-2", LostReportFields(
        pet_name="Milo", species="cat", lost_date="2025-06-10",
        description="Grey tabby, very shy",
        latitude=40.4202928, longitude=-3.7056479,
        last_seen_location_text="Gran Vía, Madrid")),
]

sightings = [
    ("demo-reporter", SightingFields(
        sighting_date="2025-06-15", description="Small beagle wandering near the park",
        latitude=40.4187041, longitude=-3.6951157,
        location_text="Calle de Alcalá, Madrid")),
]


if __name__ == "__main__":
    print("=== Seeding PetRadar Firestore ===")
    for user in users:
        store.ensure_user(user["id"], user["email"], user["full_name"])
        print(f"✅ user {user['id']}")
    for owner_id, fields in lost_reports:
        report = store.create_lost_report(owner_id, fields)
        print(f"✅ lost report {report.id} ({fields.pet_name})")
    for reporter_id, fields in sightings:
        sighting = store.create_sighting(reporter_id, fields)
        print(f"✅ sighting {sighting.id}")
    print("All demo documents written.")
