"""
Wattle Configuration
Supports AWS Parameter Store for production secrets
"""
import json
import os

import boto3


def get_parameter(name: str, default: str = "") -> str:
    """Get parameter from AWS Parameter Store or environment"""
    # Environment variable takes precedence
    env_key = name.upper().replace("-", "_").replace("/", "_")
    if env_key in os.environ:
        return os.environ[env_key]

    if os.environ.get("USE_PARAMETER_STORE"):
        try:
            ssm = boto3.client("ssm", region_name=os.environ.get("AWS_REGION", "us-west-2"))
            path = os.environ.get("PARAMETER_STORE_PATH", "/wattle/prod/")
            response = ssm.get_parameter(Name=f"{path}{name}", WithDecryption=True)
            return response["Parameter"]["Value"]
        except Exception as e:
            print(f"Warning: Could not load {name} from Parameter Store: {e}")

    return default


def static_tokens(raw: str) -> dict:
    """Parse STATIC_AUTH_TOKENS, a JSON object or token:uid pairs separated by commas"""
    raw = (raw or "").strip()
    if not raw:
        return {}
    if raw.startswith("{"):
        return json.loads(raw)
    pairs = [p.split(":", 1) for p in raw.split(",") if ":" in p]
    return {token.strip(): uid.strip() for token, uid in pairs}


class Config:
    """Base configuration"""
    # Flask
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-change-in-production")
    MAX_CONTENT_LENGTH = int(os.environ.get("MAX_CONTENT_LENGTH", 50 * 1024 * 1024))
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # OpenAI
    OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY", "")
    OPENAI_MODEL = os.environ.get("OPENAI_MODEL", "gpt-4o")
    OPENAI_TRANSCRIBE_MODEL = os.environ.get("OPENAI_TRANSCRIBE_MODEL", "whisper-1")
    OPENAI_TTS_MODEL = os.environ.get("OPENAI_TTS_MODEL", "tts-1")
    OPENAI_TIMEOUT = float(os.environ.get("OPENAI_TIMEOUT", 60))

    # Firebase
    FIREBASE_PROJECT_ID = os.environ.get("FIREBASE_PROJECT_ID", "")
    FIREBASE_CREDENTIALS = os.environ.get("FIREBASE_CREDENTIALS", "")
    FIREBASE_STORAGE_BUCKET = os.environ.get("FIREBASE_STORAGE_BUCKET", "")

    # Backends
    DOCUMENT_STORE = os.environ.get("DOCUMENT_STORE", "firestore")
    BLOB_STORAGE = os.environ.get("BLOB_STORAGE", "firebase")
    AUTH_BACKEND = os.environ.get("AUTH_BACKEND", "firebase")
    AUTH_CLOCK_SKEW = int(os.environ.get("AUTH_CLOCK_SKEW", 60))
    STATIC_AUTH_TOKENS = static_tokens(os.environ.get("STATIC_AUTH_TOKENS", ""))

    # FHIR
    FHIR_DEFAULT_COUNT = int(os.environ.get("FHIR_DEFAULT_COUNT", 100))

    # Uploads and analysis throttling
    UPLOAD_MAX_FILES = int(os.environ.get("UPLOAD_MAX_FILES", 20))
    UPLOAD_BATCH_SIZE = int(os.environ.get("UPLOAD_BATCH_SIZE", 1))
    UPLOAD_BATCH_DELAY = float(os.environ.get("UPLOAD_BATCH_DELAY", 0.1))
    ANALYSIS_MAX_FILES = int(os.environ.get("ANALYSIS_MAX_FILES", 9))
    ANALYSIS_BATCH_SIZE = int(os.environ.get("ANALYSIS_BATCH_SIZE", 3))
    ANALYSIS_BATCH_DELAY = float(os.environ.get("ANALYSIS_BATCH_DELAY", 1.0))
    HOLISTIC_MAX_RECORDS = int(os.environ.get("HOLISTIC_MAX_RECORDS", 10))
    BACKGROUND_ANALYSIS = True

    # App Version
    APP_VERSION = os.environ.get("APP_VERSION", "2026.10")
    BUILD_TIME = os.environ.get("BUILD_TIME", "")
    GIT_COMMIT = os.environ.get("GIT_COMMIT", "")


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    TESTING = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "DEBUG")


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    TESTING = False

    # Override with Parameter Store in production
    SECRET_KEY = get_parameter("secret-key", Config.SECRET_KEY)
    OPENAI_API_KEY = get_parameter("openai-api-key", Config.OPENAI_API_KEY)
    FIREBASE_CREDENTIALS = get_parameter("firebase-credentials", Config.FIREBASE_CREDENTIALS)


class TestingConfig(Config):
    """Testing configuration"""
    DEBUG = True
    TESTING = True
    SECRET_KEY = "test-secret-key"
    DOCUMENT_STORE = "memory"
    BLOB_STORAGE = "memory"
    AUTH_BACKEND = "static"
    STATIC_AUTH_TOKENS = {"test-token": "user-1", "other-token": "user-2"}
    OPENAI_API_KEY = "test-key"
    UPLOAD_BATCH_DELAY = 0
    ANALYSIS_BATCH_DELAY = 0
    BACKGROUND_ANALYSIS = False


config = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
    "default": DevelopmentConfig,
}
