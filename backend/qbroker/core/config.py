# qbroker/core/config.py
from dotenv import load_dotenv
import os

load_dotenv()

class Settings:
    APP_NAME: str = os.getenv("APP_NAME", "qbroker")
    APP_ENV: str = os.getenv("APP_ENV", "development")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    MONGO_URI: str = os.getenv("MONGO_URI", "mongodb://localhost:27017")
    MONGO_DB: str = os.getenv("MONGO_DB", "borderline")
    QUERY_COLLECTION: str = os.getenv("QUERY_COLLECTION", "queries")
    OUTPUT_BUCKET: str = os.getenv("OUTPUT_BUCKET", "query_outputs")
    # applied to every outbound call made by an adapter
    HTTP_TIMEOUT_SECONDS: float = float(os.getenv("HTTP_TIMEOUT_SECONDS", "30"))
    TS171_CLIENT_ID: str = os.getenv("TS171_CLIENT_ID", "glowingbear-js")
    TS171_CLIENT_SECRET: str = os.getenv("TS171_CLIENT_SECRET", "")
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "*")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

settings = Settings()
