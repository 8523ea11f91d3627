import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[2]
DB_PATH = Path(os.getenv("FIRE_DISPATCH_DB", str(BASE_DIR / "fire_dispatch.db")))
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-change-me")
TOKEN_EXPIRE_HOURS = int(os.getenv("TOKEN_EXPIRE_HOURS", "24"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

ASSIGNMENT_STRATEGY = os.getenv("ASSIGNMENT_STRATEGY", "local")
ASSIGNMENT_SERVICE_URL = os.getenv("ASSIGNMENT_SERVICE_URL", "")
ASSIGNMENT_TIMEOUT = float(os.getenv("ASSIGNMENT_TIMEOUT", "5"))
ASSIGN_WITHOUT_COORDINATES = os.getenv("ASSIGN_WITHOUT_COORDINATES", "0") == "1"

GOOGLE_MAPS_API_KEY = os.getenv("GOOGLE_MAPS_API_KEY", "")
GEOCODE_URL = os.getenv("GEOCODE_URL", "https://maps.googleapis.com/maps/api/geocode/json")
GEOCODE_TIMEOUT = float(os.getenv("GEOCODE_TIMEOUT", "1.5"))
DEVICE_GEOCODE_TIMEOUT = float(os.getenv("DEVICE_GEOCODE_TIMEOUT", "1.0"))
GEOCODE_CACHE_SIZE = int(os.getenv("GEOCODE_CACHE_SIZE", "512"))
LANDMARK_RADIUS_KM = float(os.getenv("LANDMARK_RADIUS_KM", "5"))
