from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # --- Runtime ---
    ENV: str = "dev"  # dev|prod
    CASAMATCH_DB_URL: str = "sqlite+aiosqlite:///./casamatch.db"

    # --- Worker / orchestrator ---
    WORKER_POLL_INTERVAL_S: float = 30.0
    STALE_JOB_MINUTES: int = 30
    SWEEP_BATCH_SIZE: int = 500
    SWEEP_SOURCES: list[str] = ["immobiliare", "idealista"]
    SWEEP_CITY: str = "Milano"
    JOB_ERROR_CAP: int = 50
    DEDUP_AFTER_IMPORT: bool = True

    # checkpoint writes: attempts + exponential backoff (base * 2**(n-1), capped)
    CHECKPOINT_MAX_ATTEMPTS: int = 5
    CHECKPOINT_BACKOFF_BASE_S: float = 0.5
    CHECKPOINT_BACKOFF_CAP_S: float = 8.0

    # --- Outbound HTTP (shared by all clients) ---
    HTTP_TIMEOUT_S: float = 30.0
    HTTP_MAX_RETRIES: int = 2
    HTTP_BACKOFF_BASE_S: float = 0.5
    HTTP_RATE_LIMIT_RPS: float = 0.0  # 0 = off
    HTTP_CIRCUIT_FAIL_THRESHOLD: int = 8
    HTTP_CIRCUIT_RESET_S: float = 60.0

    # --- Geocoding (Nominatim usage policy: max 1 req/s) ---
    GEOCODE_ON_IMPORT: bool = True
    GEOCODE_MIN_INTERVAL_S: float = 1.1
    GEOCODE_COUNTRY: str = "Italy"
    NOMINATIM_BASE_URL: str = "https://nominatim.openstreetmap.org"
    NOMINATIM_USER_AGENT: str = "CasaMatch/1.0 (+contact: ops@example.com)"

    # --- Images ---
    IMAGE_HASH_THRESHOLD: int = 5
    IMAGE_HASH_SIZE: int = 8  # 8x8 -> 64 bit pHash
    DEDUP_IMAGE_HASHING: bool = True

    # --- Classification / dedup ---
    MULTI_AGENCY_MIN_AGENCIES: int = 7
    DEDUP_SCORE_THRESHOLD: int = 70
    DEDUP_DISTANCE_M: float = 500.0
    DEDUP_ADDRESS_MIN_RATIO: float = 65.0

    # --- Contact ledger ---
    CONTACT_MIN_DAYS: int = 30
    PHONE_COUNTRY_CODE: str = "39"
    PHONE_LOCAL_DIGITS: int = 10

    # --- Matching ---
    MATCH_SCORE_THRESHOLD: int = 50
    MATCH_AI_GATE: int = 60
    MATCH_AI_ENABLED: bool = False
    MATCH_PRICE_TOLERANCE: float = 0.10
    MATCH_SIZE_TOLERANCE: float = 0.10
    MATCH_MIN_BUYER_RATING: int = 4
    MATCH_POINT_RADIUS_M: float = 2000.0

    # --- External scorer (OpenAI-compatible chat completions) ---
    SCORER_API_KEY: str | None = None
    SCORER_BASE_URL: str = "https://api.openai.com/v1"
    SCORER_MODEL: str = "gpt-4o-mini"

    # --- Listing sources ---
    LISTINGS_FIXTURES_DIR: str = "data/listings"
    APIFY_TOKEN: str | None = None
    APIFY_BASE_URL: str = "https://api.apify.com/v2"
    APIFY_WAIT_S: int = 240
    # portal name -> actor id
    APIFY_ACTORS: dict[str, str] = {
        "immobiliare": "igolaizola~immobiliare-it-scraper",
        "idealista": "igolaizola~idealista-scraper",
    }


settings = Settings()
