import os
from dotenv import load_dotenv

load_dotenv()

SERVICE_NAME = os.environ.get("SERVICE_NAME", "doc-intake-review-api")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
REDIS_OWNER_TTL_SEC = int(os.environ.get("REDIS_OWNER_TTL_SEC", "900"))

REGISTRATION_SERVICE_URL = os.environ.get("REGISTRATION_SERVICE_URL", "http://localhost:8081/api")
EXTRACTION_SERVICE_URL = os.environ.get("EXTRACTION_SERVICE_URL", "http://localhost:8082/api")
PROFILE_SERVICE_URL = os.environ.get("PROFILE_SERVICE_URL", "http://localhost:8083/api")
SERVICE_API_TOKEN = os.environ.get("SERVICE_API_TOKEN", "")
HTTP_TIMEOUT_SEC = float(os.environ.get("HTTP_TIMEOUT_SEC", "30"))
TRANSFER_TIMEOUT_SEC = float(os.environ.get("TRANSFER_TIMEOUT_SEC", "300"))
TRANSFER_CHUNK_BYTES = int(os.environ.get("TRANSFER_CHUNK_BYTES", str(256 * 1024)))

MAX_UPLOAD_FILE_SIZE_MB = int(os.environ.get("MAX_UPLOAD_FILE_SIZE_MB", "10"))
MAX_UPLOAD_FILE_SIZE_BYTES = MAX_UPLOAD_FILE_SIZE_MB * 1024 * 1024
MAX_BULK_CSV_SIZE_MB = int(os.environ.get("MAX_BULK_CSV_SIZE_MB", "5"))
MAX_BULK_CSV_SIZE_BYTES = MAX_BULK_CSV_SIZE_MB * 1024 * 1024

BATCH_CONCURRENCY = int(os.environ.get("BATCH_CONCURRENCY", "4"))

EXTRACTION_POLL_MAX_ATTEMPTS = int(os.environ.get("EXTRACTION_POLL_MAX_ATTEMPTS", "30"))
EXTRACTION_POLL_INTERVAL_MS = int(os.environ.get("EXTRACTION_POLL_INTERVAL_MS", "2000"))
EXTRACTION_POLL_TRANSPORT_RETRIES = int(os.environ.get("EXTRACTION_POLL_TRANSPORT_RETRIES", "3"))
EXTRACTION_POLL_TRANSPORT_DELAY_MS = int(os.environ.get("EXTRACTION_POLL_TRANSPORT_DELAY_MS", "250"))

CONFIDENCE_HIGH_THRESHOLD = float(os.environ.get("CONFIDENCE_HIGH_THRESHOLD", "95"))
CONFIDENCE_MEDIUM_THRESHOLD = float(os.environ.get("CONFIDENCE_MEDIUM_THRESHOLD", "80"))
