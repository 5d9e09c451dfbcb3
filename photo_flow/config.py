import os
from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()


class Settings(BaseModel):
    DATA_DIR: str = os.getenv("DATA_DIR", "./photo_flow/data")
    BACKEND_URL: str = os.getenv("BACKEND_URL", "http://localhost:3000")
    LOGIN_URL: str = os.getenv("LOGIN_URL", "http://localhost:3000/login")
    # origin the result pages are shared from
    PUBLIC_BASE_URL: str = os.getenv("PUBLIC_BASE_URL", "http://localhost:3000")
    BACKEND_TIMEOUT_SECONDS: float = float(os.getenv("BACKEND_TIMEOUT_SECONDS", "30"))

    # camera
    CAMERA_FRONT_INDEX: int = int(os.getenv("CAMERA_FRONT_INDEX", "0"))
    CAMERA_BACK_INDEX: int = int(os.getenv("CAMERA_BACK_INDEX", "1"))
    CAMERA_WIDTH: int = int(os.getenv("CAMERA_WIDTH", "1080"))
    CAMERA_HEIGHT: int = int(os.getenv("CAMERA_HEIGHT", "1920"))
    CAMERA_TOGGLE_DEBOUNCE_SECONDS: float = float(os.getenv("CAMERA_TOGGLE_DEBOUNCE_SECONDS", "0.1"))
    JPEG_QUALITY: int = int(os.getenv("JPEG_QUALITY", "90"))
    # bake the front-camera mirror into uploaded bytes
    MIRROR_COMPOSITE: bool = os.getenv("MIRROR_COMPOSITE", "0") == "1"

    # upload / analysis
    ANALYSIS_TIMEOUT_SECONDS: float = float(os.getenv("ANALYSIS_TIMEOUT_SECONDS", "10"))

    # generation screen
    POLL_INTERVAL_SECONDS: float = float(os.getenv("POLL_INTERVAL_SECONDS", "2.0"))
    COUNTDOWN_SECONDS_PER_PHOTO: float = float(os.getenv("COUNTDOWN_SECONDS_PER_PHOTO", "10"))
    COUNTDOWN_TICK_SECONDS: float = float(os.getenv("COUNTDOWN_TICK_SECONDS", "0.1"))
    CAROUSEL_INTERVAL_SECONDS: float = float(os.getenv("CAROUSEL_INTERVAL_SECONDS", "3.0"))
    MESSAGE_INTERVAL_SECONDS: float = float(os.getenv("MESSAGE_INTERVAL_SECONDS", "6.0"))

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
