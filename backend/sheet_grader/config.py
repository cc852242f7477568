import os

from dotenv import load_dotenv


load_dotenv()


def get_settings() -> dict:
    return {
        "DATABASE_URL": os.getenv("DATABASE_URL", "sqlite:///./app.db"),
        "GOOGLE_API_KEY": os.getenv("GOOGLE_API_KEY", ""),
        "VISION_MODEL": os.getenv("VISION_MODEL", "gemini-2.5-flash-lite"),
        "CORRECTION_DEFAULT_REASON": os.getenv(
            "CORRECTION_DEFAULT_REASON", "Manual correction by teacher"
        ),
        "LOG_LEVEL": os.getenv("LOG_LEVEL", "INFO"),
        "CORS_ORIGINS": os.getenv("CORS_ORIGINS", "http://localhost:3000"),
    }
