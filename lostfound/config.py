import os

from dotenv import load_dotenv

load_dotenv()


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY", "248749f487934")
    ALGORITHM = "HS256"
    MONGODB_URL = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
    DATABASE_NAME = os.getenv("DATABASE_NAME", "lost_found")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Listings
    PAGE_SIZE = int(os.getenv("PAGE_SIZE", "20"))

    # Radii in km. Lost listings search a tighter area than found listings.
    LOST_NEARBY_RADIUS_KM = float(os.getenv("LOST_NEARBY_RADIUS_KM", "5"))
    FOUND_NEARBY_RADIUS_KM = float(os.getenv("FOUND_NEARBY_RADIUS_KM", "10"))
    LOST_NOTIFY_RADIUS_KM = float(os.getenv("LOST_NOTIFY_RADIUS_KM", "10"))
    FOUND_NOTIFY_RADIUS_KM = float(os.getenv("FOUND_NOTIFY_RADIUS_KM", "10"))

    # Notification fan-out
    FANOUT_CONCURRENCY = int(os.getenv("FANOUT_CONCURRENCY", "50"))
    FANOUT_TIMEOUT_SECONDS = float(os.getenv("FANOUT_TIMEOUT_SECONDS", "3"))

    @classmethod
    def nearby_radius(cls, kind: str) -> float:
        return cls.LOST_NEARBY_RADIUS_KM if kind == "lost" else cls.FOUND_NEARBY_RADIUS_KM

    @classmethod
    def notify_radius(cls, kind: str) -> float:
        return cls.LOST_NOTIFY_RADIUS_KM if kind == "lost" else cls.FOUND_NOTIFY_RADIUS_KM
